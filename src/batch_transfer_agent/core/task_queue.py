"""The agent desk: one sorted list over batches, time-locks and bridges."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from batch_transfer_agent.storage.models import (
    BatchAgent,
    BridgeTask,
    ScheduledTask,
    ScheduleStatus,
    TaskKind,
    TaskStatus,
    UnifiedTask,
)

logger = logging.getLogger("batch_transfer_agent.task_queue")

BRIDGE_STATUS_MAP: dict[str, TaskStatus] = {
    "PENDING": TaskStatus.WAITING,
    "SUBMITTED": TaskStatus.WAITING,
    "COMMITTED": TaskStatus.WAITING,
    "LOCKED": TaskStatus.WAITING,
    "PROCESSING": TaskStatus.EXECUTING,
    "COMPLETED": TaskStatus.SENT,
    "FINALIZED": TaskStatus.SENT,
    "FULFILLED": TaskStatus.SENT,
    "FAILED": TaskStatus.FAILED,
    "REFUNDED": TaskStatus.FAILED,
    "EXPIRED": TaskStatus.FAILED,
}

SCHEDULE_STATUS_MAP: dict[ScheduleStatus, TaskStatus] = {
    ScheduleStatus.WAITING: TaskStatus.WAITING,
    ScheduleStatus.EXECUTING: TaskStatus.EXECUTING,
    ScheduleStatus.SENT: TaskStatus.SENT,
    ScheduleStatus.FAILED: TaskStatus.FAILED,
    ScheduleStatus.CANCELLED: TaskStatus.FAILED,
    ScheduleStatus.EXPIRED: TaskStatus.FAILED,
}


def map_bridge_status(status: str) -> TaskStatus:
    mapped = BRIDGE_STATUS_MAP.get((status or "").upper())
    if mapped is None:
        logger.warning(f"Unknown bridge status '{status}', showing as WAITING")
        return TaskStatus.WAITING
    return mapped


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _short(address: str | None) -> str:
    if not address:
        return "?"
    return address if len(address) <= 14 else f"{address[:6]}...{address[-4:]}"


def from_batch(agent: BatchAgent) -> UnifiedTask:
    symbols = {tx.token_symbol for tx in agent.transactions}
    token = symbols.pop() if len(symbols) == 1 else "MIXED"
    return UnifiedTask(
        id=agent.id,
        kind=TaskKind.BATCH,
        status=agent.status,
        native_status=agent.status.value,
        summary=f"Batch of {agent.total_count} transfer(s)",
        amount=str(agent.total_amount),
        token=token,
        timestamp=_aware(agent.start_time),
        error=agent.error,
        progress_current=agent.current_count,
        progress_total=agent.total_count,
    )


def from_scheduled(task: ScheduledTask) -> UnifiedTask:
    unlock = datetime.fromtimestamp(task.unlock_time, tz=timezone.utc)
    return UnifiedTask(
        id=task.id,
        kind=TaskKind.TIMELOCK,
        status=SCHEDULE_STATUS_MAP[task.status],
        native_status=task.status.value,
        summary=(
            f"Send {task.amount} {task.token} to {task.recipient_name or _short(task.recipient)} "
            f"at {unlock.strftime('%Y-%m-%d %H:%M UTC')}"
        ),
        amount=task.amount,
        token=task.token,
        recipient=task.recipient,
        timestamp=_aware(task.created_at),
        error=task.last_error,
    )


def from_bridge(task: BridgeTask) -> UnifiedTask:
    return UnifiedTask(
        id=task.id,
        kind=TaskKind.BRIDGE,
        status=map_bridge_status(task.status),
        native_status=task.status.upper(),
        summary=f"Bridge {task.amount} {task.token} to {task.destination_chain or 'remote chain'}",
        amount=task.amount,
        token=task.token,
        recipient=task.recipient,
        timestamp=_aware(task.created_at),
        error=task.error,
    )


def project(
    scheduled: Iterable[ScheduledTask],
    bridges: Iterable[BridgeTask],
    batches: Iterable[BatchAgent],
) -> list[UnifiedTask]:
    """Merge the three sources, drop hidden records, newest first."""
    tasks = [from_scheduled(t) for t in scheduled if not t.hidden_from_desk]
    tasks += [from_bridge(t) for t in bridges if not t.hidden_from_desk]
    tasks += [from_batch(a) for a in batches if not a.hidden_from_desk]
    tasks.sort(key=lambda t: t.timestamp, reverse=True)
    return tasks


class TaskQueue:
    """Desk reads plus the cancel / dismiss / retry actions.

    Actions never execute anything: ``retry`` only puts a failed time-lock
    back in line for the scheduler.
    """

    def __init__(self, store, agent=None, user_id: str | None = None) -> None:
        self.store = store
        self.agent = agent
        self.user_id = user_id

    async def list_tasks(self) -> list[UnifiedTask]:
        scheduled = await self.store.list_scheduled_tasks(self.user_id)
        bridges = await self.store.list_bridge_tasks(self.user_id)
        batches = self.agent.list_agents() if self.agent is not None else []
        return project(scheduled, bridges, batches)

    async def _kind_of(self, task_id: str) -> TaskKind:
        if self.agent is not None and self.agent.get_agent(task_id) is not None:
            return TaskKind.BATCH
        if await self.store.get_scheduled_task(task_id) is not None:
            return TaskKind.TIMELOCK
        if await self.store.get_bridge_task(task_id) is not None:
            return TaskKind.BRIDGE
        raise ValueError(f"Task {task_id} not found.")

    async def cancel(self, task_id: str) -> None:
        kind = await self._kind_of(task_id)
        if kind != TaskKind.TIMELOCK:
            raise ValueError(f"Only waiting scheduled transfers can be cancelled ({task_id} is a {kind.value}).")
        await self.store.cancel_scheduled_task(task_id)

    async def dismiss(self, task_id: str) -> None:
        kind = await self._kind_of(task_id)
        if kind == TaskKind.BATCH:
            self.agent.dismiss(task_id)
        elif kind == TaskKind.TIMELOCK:
            await self.store.dismiss_scheduled_task(task_id)
        else:
            await self.store.dismiss_bridge_task(task_id)
        logger.info(f"Dismissed {kind.value} task {task_id}")

    async def retry(self, task_id: str) -> None:
        kind = await self._kind_of(task_id)
        if kind != TaskKind.TIMELOCK:
            raise ValueError(f"Only failed scheduled transfers can be retried ({task_id} is a {kind.value}).")
        task = await self.store.get_scheduled_task(task_id)
        if SCHEDULE_STATUS_MAP[task.status] != TaskStatus.FAILED:
            raise ValueError(f"Task {task_id} is {task.status.value}; only failed tasks can be retried.")
        await self.store.retry_scheduled_task(task_id)
