"""ExecutionAgent - runs one authorized batch of transfers end to end.

Lifecycle of a batch::

    WAITING --(credential ok)--> EXECUTING --(all items attempted)--> SENT
        \\--(credential or connect error)--> FAILED

Items run strictly in order. A failing item is recorded and the loop moves
on; only a credential or connection failure stops a batch before it
starts. Finished batches stay in the active registry for
``retention_seconds`` and are then evicted; their results live on as
history records.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

from batch_transfer_agent.config import AgentSettings
from batch_transfer_agent.core import notifications
from batch_transfer_agent.core.interfaces import (
    ChainClient,
    ChatLog,
    ContactDirectory,
    GlobalRegistry,
    NotificationService,
    PersistenceStore,
    WalletCredential,
)
from batch_transfer_agent.core.message_bus import PROGRESS_TOPIC, MessageBus
from batch_transfer_agent.core.notifications import notify_quietly
from batch_transfer_agent.core.recipients import UNKNOWN_RECIPIENT, is_address, resolve
from batch_transfer_agent.core.transfer import TransferController
from batch_transfer_agent.storage.models import (
    BatchAgent,
    ExecutionResult,
    HistoryRecord,
    IntentType,
    Signer,
    TaskStatus,
    TransferRequest,
)
from batch_transfer_agent.wallet.keystore import CredentialError, WalletAuthorization

logger = logging.getLogger("batch_transfer_agent.agent")

CANCELLED_ERROR = "Cancelled before execution"

ProgressCallback = Callable[[BatchAgent], Union[Awaitable[None], None]]


class BatchAlreadyExecutedError(Exception):
    """``execute`` was called with a batch that already ran (or is running)."""


class CancellationToken:
    """Cooperative stop signal, checked before each item."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None

    def cancel(self, reason: str = "Cancelled by user") -> None:
        self._cancelled = True
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ExecutionAgent:
    """Owns the in-memory state of every batch it runs."""

    def __init__(
        self,
        chain: ChainClient,
        store: PersistenceStore,
        notifier: NotificationService | None = None,
        contacts: ContactDirectory | None = None,
        registry: GlobalRegistry | None = None,
        chat_log: ChatLog | None = None,
        bus: MessageBus | None = None,
        settings: AgentSettings | None = None,
        native_token: str = "VCN",
        user_id: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.store = store
        self.notifier = notifier
        self.contacts = contacts
        self.registry = registry
        self.chat_log = chat_log
        self.bus = bus or MessageBus()
        self.settings = settings or AgentSettings()
        self.native_token = native_token.upper()
        self.user_id = user_id
        self._sleep = sleep
        self.controller = TransferController(
            chain,
            store,
            notifier,
            settings=self.settings,
            native_token=self.native_token,
            sleep=sleep,
            clock=clock,
        )
        self.agents: dict[str, BatchAgent] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._evictions: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def list_agents(self, include_hidden: bool = False) -> list[BatchAgent]:
        return [a for a in self.agents.values() if include_hidden or not a.hidden_from_desk]

    def get_agent(self, batch_id: str) -> Optional[BatchAgent]:
        return self.agents.get(batch_id)

    def cancel(self, batch_id: str, reason: str = "Cancelled by user") -> bool:
        """Ask a running batch to stop before its next item."""
        agent = self.agents.get(batch_id)
        token = self._tokens.get(batch_id)
        if agent is None or token is None or agent.is_terminal:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for batch {batch_id}")
        return True

    def dismiss(self, batch_id: str) -> None:
        agent = self.agents.get(batch_id)
        if agent is None:
            raise ValueError(f"Batch {batch_id} not found.")
        agent.hidden_from_desk = True

    async def close(self) -> None:
        for task in self._evictions.values():
            task.cancel()
        self._evictions.clear()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        batch: list[TransferRequest] | BatchAgent,
        credential: WalletCredential,
        authorization: WalletAuthorization,
        interval_seconds: float | None = None,
        user_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Optional[BatchAgent]:
        """Run *batch* and return its final state, or ``None`` for an empty batch.

        Raises
        ------
        BatchAlreadyExecutedError
            If *batch* is a ``BatchAgent`` that is running or finished.
        CredentialError
            If the wallet cannot be decrypted, whatever the credential raised.
        Exception
            Whatever ``chain.connect`` raised. In both cases the agent is
            recorded as ``FAILED`` before the error propagates.
        """
        if isinstance(batch, BatchAgent):
            if batch.is_terminal or batch.status == TaskStatus.EXECUTING:
                raise BatchAlreadyExecutedError(
                    f"Batch {batch.id} is already {batch.status.value}; create a new batch to resend."
                )
            agent = batch
            if user_id:
                agent.user_id = user_id
        else:
            if not batch:
                logger.info("Empty batch, nothing to execute")
                return None
            agent = BatchAgent.create(batch, user_id=user_id or self.user_id)

        if not agent.transactions:
            logger.info("Empty batch, nothing to execute")
            return None

        interval = self.settings.interval_seconds if interval_seconds is None else interval_seconds
        token = cancel_token or CancellationToken()
        self.agents[agent.id] = agent
        self._tokens[agent.id] = token
        logger.info(f"Batch {agent.id} started: {agent.total_count} transfer(s)")

        try:
            signer = await self._unlock(credential, authorization)
        except CredentialError as e:
            await self._fail_start(agent, "the wallet could not be unlocked", e, on_progress)
            raise

        agent.status = TaskStatus.EXECUTING
        await self._publish(agent, on_progress)
        try:
            await self.chain.connect(signer)
        except Exception as e:
            await self._fail_start(agent, "the network connection failed", e, on_progress)
            raise

        try:
            await self._run_items(agent, signer, interval, token, on_progress)
        finally:
            await self.chain.disconnect()

        agent.complete()
        await self._publish(agent, on_progress)
        await self._finish(agent)
        return agent

    async def _unlock(self, credential: WalletCredential, authorization: WalletAuthorization) -> Signer:
        try:
            secret = await asyncio.to_thread(
                credential.decrypt, authorization.encrypted, authorization.password
            )
            return await asyncio.to_thread(credential.derive_signer, secret)
        except CredentialError:
            raise
        except Exception as e:
            raise CredentialError(str(e)) from e

    async def _fail_start(
        self,
        agent: BatchAgent,
        what: str,
        error: Exception,
        on_progress: ProgressCallback | None,
    ) -> None:
        """Nothing was attempted: mark every item failed and report once."""
        logger.error(f"Batch {agent.id} failed to start: {error}")
        agent.fail(str(error))
        await self._publish(agent, on_progress)
        await self._append_chat(
            f"Batch transfer could not start: {what} ({error}). "
            f"None of the {agent.total_count} transfer(s) were sent."
        )
        await notify_quietly(
            self.notifier,
            agent.user_id,
            notifications.batch_failed(str(error), agent.total_count, agent.id),
        )
        self._schedule_eviction(agent)

    async def _run_items(
        self,
        agent: BatchAgent,
        signer: Signer,
        interval: float,
        token: CancellationToken,
        on_progress: ProgressCallback | None,
    ) -> None:
        last = len(agent.transactions) - 1
        for index, tx in enumerate(agent.transactions):
            if token.cancelled:
                logger.info(f"Batch {agent.id} cancelled with {last - index + 1} item(s) left")
                for remaining in agent.transactions[index:]:
                    agent.record(ExecutionResult(success=False, error=CANCELLED_ERROR, tx=remaining))
                await self._publish(agent, on_progress)
                return

            result, recipient_user = await self._execute_item(agent, tx, signer)
            agent.record(result)
            await self._publish(agent, on_progress)

            if result.success and result.tx.intent == IntentType.SEND:
                await notify_quietly(
                    self.notifier,
                    recipient_user,
                    notifications.transfer_received(
                        result.tx.amount, result.tx.token_symbol, signer.address, result.hash
                    ),
                )

            if index < last:
                await self._sleep(interval)

    async def _execute_item(
        self,
        agent: BatchAgent,
        tx: TransferRequest,
        signer: Signer,
    ) -> tuple[ExecutionResult, str | None]:
        resolved = await resolve(tx.recipient or tx.recipient_raw, self.contacts, self.registry)
        if not resolved.resolved or not is_address(resolved.address):
            logger.error(f"Batch {agent.id}: could not resolve recipient '{tx.recipient_raw}'")
            return (
                ExecutionResult(
                    success=False,
                    error=f"Could not resolve recipient '{tx.recipient_raw}'",
                    tx=tx,
                ),
                None,
            )
        # An unknown address keeps an empty name so reports show the address.
        name = "" if resolved.name == UNKNOWN_RECIPIENT else resolved.name
        tx = tx.model_copy(update={"recipient": resolved.address, "display_name": tx.display_name or name})

        try:
            if tx.intent == IntentType.SCHEDULE:
                receipt = await self.controller.schedule(
                    tx.recipient,
                    tx.amount,
                    tx.delay_seconds,
                    agent.user_id,
                    token=tx.token_symbol,
                    recipient_name=tx.display_name,
                    sender_address=signer.address,
                )
            else:
                receipt = await self.controller.send_now(tx.recipient, tx.amount, tx.token_symbol)
        except Exception as e:
            logger.error(f"Batch {agent.id}: {tx.intent.value} of {tx.amount} {tx.token_symbol} to {tx.label} failed: {e}")
            return ExecutionResult(success=False, error=str(e), tx=tx), None

        logger.info(f"Batch {agent.id}: {tx.amount} {tx.token_symbol} to {tx.label} ok ({receipt.hash})")
        result = ExecutionResult(success=True, hash=receipt.hash, schedule_id=receipt.schedule_id, tx=tx)
        return result, resolved.user_id

    async def _finish(self, agent: BatchAgent) -> None:
        records = [HistoryRecord.from_result(r, agent.user_id, agent.id) for r in agent.results]
        try:
            await self.store.save_history(records)
        except Exception as e:
            logger.error(f"Batch {agent.id}: failed to persist history: {e}")

        token = self._batch_token(agent)
        sent_total = sum(
            (r.tx.amount_decimal for r in agent.results if r.success), Decimal("0")
        )
        if agent.failed_count == 0:
            notification = notifications.multi_send_complete(
                sent_total, token, agent.success_count, agent.id
            )
        else:
            notification = notifications.multi_send_partial(
                agent.success_count, agent.failed_count, sent_total, token, agent.id
            )
        await notify_quietly(self.notifier, agent.user_id, notification)
        await self._append_chat(build_report(agent))
        logger.info(
            f"Batch {agent.id} finished: {agent.success_count} sent, {agent.failed_count} failed"
        )
        self._schedule_eviction(agent)

    def _batch_token(self, agent: BatchAgent) -> str:
        symbols = {tx.token_symbol for tx in agent.transactions}
        return symbols.pop() if len(symbols) == 1 else self.native_token

    # ------------------------------------------------------------------
    # Side channels
    # ------------------------------------------------------------------

    async def _publish(self, agent: BatchAgent, on_progress: ProgressCallback | None) -> None:
        await self.bus.emit(PROGRESS_TOPIC, agent.to_dict(), source=agent.id)
        if on_progress is None:
            return
        try:
            outcome = on_progress(agent)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback failed for batch {agent.id}: {e}")

    async def _append_chat(self, content: str) -> None:
        if self.chat_log is None:
            return
        try:
            await self.chat_log.append("assistant", content)
        except Exception as e:
            logger.warning(f"Could not write to conversation log: {e}")

    def _schedule_eviction(self, agent: BatchAgent) -> None:
        previous = self._evictions.pop(agent.id, None)
        if previous is not None:
            previous.cancel()
        self._evictions[agent.id] = asyncio.get_running_loop().create_task(
            self._evict_later(agent.id)
        )

    async def _evict_later(self, batch_id: str) -> None:
        await self._sleep(self.settings.retention_seconds)
        self.agents.pop(batch_id, None)
        self._tokens.pop(batch_id, None)
        self._evictions.pop(batch_id, None)
        logger.debug(f"Batch {batch_id} evicted from the active queue")


def build_report(agent: BatchAgent) -> str:
    """Human-readable completion report appended to the conversation."""
    lines = [
        f"Batch transfer complete ({agent.id}): "
        f"{agent.success_count} of {agent.total_count} succeeded, {agent.failed_count} failed.",
    ]
    for number, result in enumerate(agent.results, start=1):
        tx = result.tx
        verb = "scheduled" if tx.intent == IntentType.SCHEDULE else "sent"
        if result.success:
            detail = f"{verb}, tx {result.hash}" if result.hash else verb
        else:
            detail = f"failed: {result.error}"
        lines.append(f"{number}. {tx.label}: {tx.amount} {tx.token_symbol} {detail}")
    return "\n".join(lines)
