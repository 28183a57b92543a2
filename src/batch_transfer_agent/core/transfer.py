"""Single and scheduled transfers over a connected chain client."""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable

from batch_transfer_agent.config import AgentSettings
from batch_transfer_agent.core import notifications
from batch_transfer_agent.core.interfaces import ChainClient, NotificationService, PersistenceStore
from batch_transfer_agent.core.notifications import notify_quietly
from batch_transfer_agent.storage.models import ScheduledTask, TxReceipt

logger = logging.getLogger("batch_transfer_agent.transfer")


class TransferError(Exception):
    """A send or schedule failed on every available path."""

    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    GASLESS_FAILED = "GASLESS_FAILED"
    UNSUPPORTED_TOKEN = "UNSUPPORTED_TOKEN"
    UNKNOWN = "UNKNOWN"

    def __init__(self, message: str, code: str = UNKNOWN) -> None:
        super().__init__(message)
        self.code = code


class TopUpError(Exception):
    """The admin top-up for a legacy schedule failed or never arrived."""


def is_insufficient_funds(exc: BaseException | None) -> bool:
    if exc is None:
        return False
    if getattr(exc, "code", None) == TransferError.INSUFFICIENT_FUNDS:
        return True
    return "insufficient funds" in str(exc).lower()


def classify_failure(
    exc: BaseException,
    amount: str,
    token: str,
    gasless_exc: BaseException | None = None,
) -> TransferError:
    """Pick the most telling error when the standard (and maybe relay) path failed."""
    if is_insufficient_funds(exc) or is_insufficient_funds(gasless_exc):
        return TransferError(
            f"Insufficient funds to send {amount} {token} including network fees.",
            code=TransferError.INSUFFICIENT_FUNDS,
        )
    if gasless_exc is not None:
        return TransferError(
            f"Gasless relay failed ({gasless_exc}) and standard send failed ({exc})",
            code=TransferError.GASLESS_FAILED,
        )
    return TransferError(f"Transfer failed: {exc}", code=TransferError.UNKNOWN)


class TransferController:
    """One-shot sends and time-locked transfers.

    The chain client must already be connected to the sender's signer.
    """

    def __init__(
        self,
        chain: ChainClient,
        store: PersistenceStore,
        notifier: NotificationService | None = None,
        settings: AgentSettings | None = None,
        native_token: str = "VCN",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain
        self.store = store
        self.notifier = notifier
        self.settings = settings or AgentSettings()
        self.native_token = native_token.upper()
        self._sleep = sleep
        self._clock = clock

    async def send_now(self, recipient: str, amount: str, token: str) -> TxReceipt:
        """Send immediately. The native token goes gasless first, then standard."""
        token = token.upper()
        gasless_exc: BaseException | None = None

        if token == self.native_token:
            try:
                return await self.chain.send_gasless(recipient, amount)
            except Exception as e:
                gasless_exc = e
                logger.warning(f"Gasless send to {recipient} failed, falling back to standard: {e}")

        try:
            return await self.chain.send_standard(recipient, amount, token)
        except Exception as e:
            raise classify_failure(e, amount, token, gasless_exc) from e

    async def schedule(
        self,
        recipient: str,
        amount: str,
        delay_seconds: int,
        user_id: str,
        token: str | None = None,
        recipient_name: str = "",
        sender_address: str | None = None,
    ) -> TxReceipt:
        """Create a time-locked transfer and persist it as a WAITING task.

        Tries the paymaster first; the legacy contract path makes sure the
        sender can pay for the lock, asking for an admin top-up if needed.
        Only the native token can be time-locked.

        Once the chain has accepted the lock the receipt is returned even if
        the task row could not be saved, so the caller never repeats it.
        """
        token = (token or self.native_token).upper()
        if token != self.native_token:
            raise TransferError(
                f"Scheduled transfers support only {self.native_token}, not {token}",
                code=TransferError.UNSUPPORTED_TOKEN,
            )
        try:
            receipt = await self.chain.schedule_gasless(recipient, amount, delay_seconds, user_id)
        except Exception as gasless_exc:
            logger.warning(f"Gasless schedule failed, using the time-lock contract: {gasless_exc}")
            if sender_address:
                await self._ensure_legacy_funds(sender_address, amount)
            try:
                receipt = await self.chain.schedule_legacy(recipient, amount, delay_seconds)
            except Exception as e:
                raise classify_failure(e, amount, token, gasless_exc) from e

        unlock_time = int(self._clock()) + delay_seconds
        task = ScheduledTask(
            schedule_id=receipt.schedule_id,
            user_id=user_id,
            recipient=recipient,
            recipient_name=recipient_name,
            amount=amount,
            token=token,
            unlock_time=unlock_time,
            creation_tx=receipt.hash,
        )
        try:
            await self.store.save_scheduled_transfer(task)
        except Exception as e:
            logger.error(
                f"Time-lock {receipt.schedule_id} ({receipt.hash}) is on chain but was not saved: {e}"
            )
        await notify_quietly(
            self.notifier,
            user_id,
            notifications.transfer_scheduled(amount, token, recipient, unlock_time, receipt.schedule_id),
        )
        return receipt

    async def _ensure_legacy_funds(self, address: str, amount: str) -> None:
        needed = Decimal(amount)
        balance = await self.chain.get_native_balance(address)
        if balance >= needed:
            return

        shortfall = needed - balance + Decimal(self.settings.topup_margin)
        logger.info(f"Balance {balance} below {needed}, requesting admin top-up of {shortfall}")
        try:
            await self.chain.admin_top_up(address, str(shortfall))
        except Exception as e:
            raise TopUpError(f"Admin top-up failed: {e}") from e

        await self._sleep(self.settings.topup_settle_seconds)
        for attempt in range(1, self.settings.balance_poll_attempts + 1):
            balance = await self.chain.get_native_balance(address)
            if balance >= needed:
                logger.info(f"Top-up arrived after {attempt} poll(s)")
                return
            if attempt < self.settings.balance_poll_attempts:
                await self._sleep(self.settings.balance_poll_backoff_seconds)
        raise TopUpError(f"Top-up did not arrive: balance {balance} is still below {needed}")
