"""Scheduler runner - executes time-locked transfers once they unlock."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from batch_transfer_agent.config import SchedulerSettings
from batch_transfer_agent.core import notifications
from batch_transfer_agent.core.interfaces import ChainClient, ContactDirectory, NotificationService
from batch_transfer_agent.core.notifications import notify_quietly
from batch_transfer_agent.storage.models import ScheduledTask, ScheduleStatus

logger = logging.getLogger("batch_transfer_agent.scheduler")

RECOVERED_ERROR = "RECOVERED: Runner lock expired"


@dataclass
class TickReport:
    recovered: list[str] = field(default_factory=list)
    executed: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.executed) + len(self.rescheduled) + len(self.failed)


class SchedulerRunner:
    """Moves WAITING time-locks to SENT or FAILED.

    Each tick recovers tasks whose runner lock expired, then locks and
    executes every due task. Transient failures back off for ``3^n``
    minutes plus up to a minute of jitter.
    """

    def __init__(
        self,
        chain: ChainClient,
        store,
        notifier: NotificationService | None = None,
        contacts: ContactDirectory | None = None,
        settings: SchedulerSettings | None = None,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[], float] = lambda: random.uniform(0, 60),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.store = store
        self.notifier = notifier
        self.contacts = contacts
        self.settings = settings or SchedulerSettings()
        self._clock = clock
        self._jitter = jitter
        self._sleep = sleep

    async def tick(self, now: int | None = None) -> TickReport:
        now = int(self._clock()) if now is None else now
        report = TickReport()

        for task in await self.store.list_stuck_tasks(now, self.settings.batch_size):
            await self.store.update_scheduled_task(
                task.id,
                status=ScheduleStatus.WAITING,
                lock_expires_at=None,
                last_error=RECOVERED_ERROR,
            )
            report.recovered.append(task.id)
            logger.warning(f"Recovered scheduled task {task.id} from an expired lock")

        due = await self.store.list_due_tasks(now, self.settings.batch_size)
        if not due:
            logger.debug("No scheduled transfers due")
            return report

        logger.info(f"Processing {len(due)} due scheduled transfer(s)")
        for task in due:
            lock_until = now + self.settings.lock_timeout_seconds
            if not await self.store.try_lock_task(task.id, now, lock_until):
                report.skipped.append(task.id)
                continue
            await self._execute(task, now, report)

        return report

    async def _execute(self, task: ScheduledTask, now: int, report: TickReport) -> None:
        try:
            if not task.schedule_id:
                raise ValueError("Task has no on-chain schedule id")
            receipt = await self.chain.execute_scheduled(task.schedule_id)
        except Exception as e:
            await self._handle_failure(task, str(e), now, report)
            return

        await self.store.update_scheduled_task(
            task.id,
            status=ScheduleStatus.SENT,
            executed_tx=receipt.hash,
            lock_expires_at=None,
            last_error=None,
        )
        report.executed.append(task.id)
        logger.info(f"Scheduled task {task.id} executed: {receipt.hash}")

        await notify_quietly(
            self.notifier,
            task.user_id,
            notifications.timelock_executed(task.amount, task.token, task.recipient, receipt.hash),
        )
        recipient_user = await self._recipient_user(task.recipient)
        await notify_quietly(
            self.notifier,
            recipient_user,
            notifications.transfer_received(task.amount, task.token, task.user_id, receipt.hash),
        )

    async def _handle_failure(self, task: ScheduledTask, reason: str, now: int, report: TickReport) -> None:
        status = ScheduleStatus.WAITING
        next_retry_at = task.next_retry_at

        if "Time still locked" in reason:
            report.rescheduled.append(task.id)
        elif "already executed" in reason or "Invalid status" in reason:
            status = ScheduleStatus.SENT
            report.executed.append(task.id)
        elif task.retry_count >= self.settings.max_retries:
            status = ScheduleStatus.FAILED
            report.failed.append(task.id)
        else:
            attempt = task.retry_count + 1
            next_retry_at = now + int(3 ** attempt * 60 + self._jitter())
            report.rescheduled.append(task.id)

        await self.store.update_scheduled_task(
            task.id,
            status=status,
            last_error=reason,
            retry_count=task.retry_count + 1,
            next_retry_at=next_retry_at,
            lock_expires_at=None,
        )
        logger.error(f"Scheduled task {task.id} failed ({status.value}): {reason}")

        if status == ScheduleStatus.FAILED:
            await notify_quietly(
                self.notifier,
                task.user_id,
                notifications.timelock_failed(task.amount, task.token, task.recipient, reason),
            )

    async def _recipient_user(self, address: str) -> str | None:
        if self.contacts is None:
            return None
        try:
            contact = await self.contacts.lookup(address)
        except Exception as e:
            logger.warning(f"Recipient lookup failed for {address}: {e}")
            return None
        return contact.email if contact else None

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Tick every ``interval_seconds`` until *stop* is set."""
        stop = stop or asyncio.Event()
        logger.info(f"Scheduler started, interval {self.settings.interval_seconds}s")
        while not stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
            await self._sleep(self.settings.interval_seconds)
        logger.info("Scheduler stopped")
