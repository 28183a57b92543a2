"""SQLite-backed persistence for scheduled tasks, history, contacts and chat."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from batch_transfer_agent.storage.database import Database
from batch_transfer_agent.storage.models import (
    BridgeTask,
    Contact,
    HistoryRecord,
    ScheduledTask,
    ScheduleStatus,
)

logger = logging.getLogger("batch_transfer_agent.storage")

_SCHEDULE_COLUMNS = (
    "id", "schedule_id", "user_id", "recipient", "recipient_name", "amount",
    "token", "unlock_time", "creation_tx", "status", "hidden_from_desk",
    "retry_count", "next_retry_at", "lock_expires_at", "last_error",
    "executed_tx", "created_at",
)

# Columns the scheduler may touch through update_scheduled_task().
_MUTABLE_SCHEDULE_COLUMNS = {
    "status", "retry_count", "next_retry_at", "lock_expires_at",
    "last_error", "executed_tx", "hidden_from_desk",
}


class SqliteTransferStore:
    """Persistence for the agent desk: time-lock tasks, bridges and history.

    Nothing here physically deletes a record; dismissing only sets
    ``hidden_from_desk``.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Scheduled transfers
    # ------------------------------------------------------------------

    async def save_scheduled_transfer(self, task: ScheduledTask) -> str:
        row = task.model_dump(mode="json")
        row["status"] = task.status.value
        row["hidden_from_desk"] = int(task.hidden_from_desk)
        placeholders = ", ".join("?" for _ in _SCHEDULE_COLUMNS)
        await self.db.execute(
            f"INSERT INTO scheduled_transfers ({', '.join(_SCHEDULE_COLUMNS)}) "
            f"VALUES ({placeholders})",
            tuple(row[c] for c in _SCHEDULE_COLUMNS),
        )
        logger.info(
            f"Scheduled transfer saved: {task.amount} {task.token} to {task.recipient} "
            f"unlocks at {task.unlock_time} (id={task.id})"
        )
        return task.id

    async def get_scheduled_task(self, task_id: str) -> Optional[ScheduledTask]:
        row = await self.db.fetch_one(
            "SELECT * FROM scheduled_transfers WHERE id = ?", (task_id,)
        )
        return ScheduledTask.model_validate(row) if row else None

    async def list_scheduled_tasks(
        self,
        user_id: str | None = None,
        include_hidden: bool = False,
    ) -> list[ScheduledTask]:
        conditions: list[str] = []
        params: list[str] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if not include_hidden:
            conditions.append("hidden_from_desk = 0")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM scheduled_transfers {where} ORDER BY created_at DESC",
            tuple(params),
        )
        return [ScheduledTask.model_validate(r) for r in rows]

    async def list_due_tasks(self, now: int, limit: int = 50) -> list[ScheduledTask]:
        """WAITING tasks that are unlocked and past their retry time."""
        rows = await self.db.fetch_all(
            "SELECT * FROM scheduled_transfers "
            "WHERE status = ? AND unlock_time <= ? "
            "AND (next_retry_at IS NULL OR next_retry_at <= ?) "
            "ORDER BY unlock_time ASC LIMIT ?",
            (ScheduleStatus.WAITING.value, now, now, limit),
        )
        return [ScheduledTask.model_validate(r) for r in rows]

    async def list_stuck_tasks(self, now: int, limit: int = 50) -> list[ScheduledTask]:
        """EXECUTING tasks whose runner lock has expired."""
        rows = await self.db.fetch_all(
            "SELECT * FROM scheduled_transfers "
            "WHERE status = ? AND lock_expires_at IS NOT NULL AND lock_expires_at < ? "
            "LIMIT ?",
            (ScheduleStatus.EXECUTING.value, now, limit),
        )
        return [ScheduledTask.model_validate(r) for r in rows]

    async def try_lock_task(self, task_id: str, now: int, lock_until: int) -> bool:
        """Atomically move a WAITING task to EXECUTING. Returns False if lost."""
        cursor = await self.db.execute(
            "UPDATE scheduled_transfers SET status = ?, lock_expires_at = ? "
            "WHERE id = ? AND status = ? "
            "AND (lock_expires_at IS NULL OR lock_expires_at <= ?)",
            (
                ScheduleStatus.EXECUTING.value,
                lock_until,
                task_id,
                ScheduleStatus.WAITING.value,
                now,
            ),
        )
        return cursor.rowcount == 1

    async def update_scheduled_task(self, task_id: str, **fields) -> None:
        unknown = set(fields) - _MUTABLE_SCHEDULE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not fields:
            return
        values = []
        for value in fields.values():
            if isinstance(value, ScheduleStatus):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            values.append(value)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        await self.db.execute(
            f"UPDATE scheduled_transfers SET {assignments} WHERE id = ?",
            (*values, task_id),
        )

    async def update_scheduled_task_status(
        self,
        task_id: str,
        status: ScheduleStatus,
        error: str | None = None,
    ) -> None:
        await self._require_task(task_id)
        await self.update_scheduled_task(task_id, status=status, last_error=error)
        logger.info(f"Scheduled task {task_id} -> {ScheduleStatus(status).value}")

    async def cancel_scheduled_task(self, task_id: str) -> None:
        task = await self._require_task(task_id)
        if task.status != ScheduleStatus.WAITING:
            raise ValueError(
                f"Scheduled task {task_id} is '{task.status.value}', only WAITING tasks can be cancelled."
            )
        await self.update_scheduled_task(
            task_id, status=ScheduleStatus.CANCELLED, last_error="Cancelled by user"
        )
        logger.info(f"Scheduled task {task_id} cancelled.")

    async def dismiss_scheduled_task(self, task_id: str) -> None:
        await self._require_task(task_id)
        await self.update_scheduled_task(task_id, hidden_from_desk=True)

    async def retry_scheduled_task(self, task_id: str) -> None:
        await self._require_task(task_id)
        await self.update_scheduled_task(
            task_id,
            status=ScheduleStatus.WAITING,
            last_error=None,
            retry_count=0,
            next_retry_at=None,
            lock_expires_at=None,
        )
        logger.info(f"Scheduled task {task_id} reset to WAITING for retry.")

    async def _require_task(self, task_id: str) -> ScheduledTask:
        task = await self.get_scheduled_task(task_id)
        if task is None:
            raise ValueError(f"Scheduled task {task_id} not found.")
        return task

    # ------------------------------------------------------------------
    # Bridge tasks
    # ------------------------------------------------------------------

    async def save_bridge_task(self, task: BridgeTask) -> str:
        await self.db.execute(
            "INSERT INTO bridge_tasks "
            "(id, user_id, amount, token, destination_chain, recipient, status, "
            "tx_hash, error, hidden_from_desk, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.id,
                task.user_id,
                task.amount,
                task.token,
                task.destination_chain,
                task.recipient,
                task.status.upper(),
                task.tx_hash,
                task.error,
                int(task.hidden_from_desk),
                task.created_at.isoformat(),
            ),
        )
        return task.id

    async def get_bridge_task(self, task_id: str) -> Optional[BridgeTask]:
        row = await self.db.fetch_one("SELECT * FROM bridge_tasks WHERE id = ?", (task_id,))
        return BridgeTask.model_validate(row) if row else None

    async def list_bridge_tasks(
        self,
        user_id: str | None = None,
        include_hidden: bool = False,
    ) -> list[BridgeTask]:
        conditions: list[str] = []
        params: list[str] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if not include_hidden:
            conditions.append("hidden_from_desk = 0")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM bridge_tasks {where} ORDER BY created_at DESC",
            tuple(params),
        )
        return [BridgeTask.model_validate(r) for r in rows]

    async def dismiss_bridge_task(self, task_id: str) -> None:
        if await self.get_bridge_task(task_id) is None:
            raise ValueError(f"Bridge task {task_id} not found.")
        await self.db.execute(
            "UPDATE bridge_tasks SET hidden_from_desk = 1 WHERE id = ?", (task_id,)
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def save_history(self, records: list[HistoryRecord]) -> None:
        if not records:
            return
        await self.db.execute_many(
            "INSERT INTO transfer_history "
            "(id, batch_id, user_id, recipient, recipient_name, amount, token, "
            "intent, success, tx_hash, error, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    r.id,
                    r.batch_id,
                    r.user_id,
                    r.recipient,
                    r.recipient_name,
                    r.amount,
                    r.token,
                    r.intent.value,
                    int(r.success),
                    r.tx_hash,
                    r.error,
                    r.created_at.isoformat(),
                )
                for r in records
            ],
        )
        logger.info(f"Persisted {len(records)} history record(s).")

    async def list_history(
        self,
        user_id: str | None = None,
        batch_id: str | None = None,
        limit: int = 100,
    ) -> list[HistoryRecord]:
        conditions: list[str] = []
        params: list[str | int] = []
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if batch_id:
            conditions.append("batch_id = ?")
            params.append(batch_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM transfer_history {where} ORDER BY created_at DESC LIMIT ?",
            tuple(params + [limit]),
        )
        return [HistoryRecord.model_validate(r) for r in rows]


class ContactBook:
    """The user's address book; the local half of recipient resolution."""

    def __init__(self, db: Database, user_id: str = "") -> None:
        self.db = db
        self.user_id = user_id

    async def add(self, contact: Contact) -> Contact:
        cursor = await self.db.execute(
            "INSERT INTO contacts (user_id, name, address, internal_name, alias, email) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                contact.user_id or self.user_id,
                contact.name,
                contact.address,
                contact.internal_name,
                contact.alias,
                contact.email,
            ),
        )
        return contact.model_copy(update={"id": cursor.lastrowid, "user_id": contact.user_id or self.user_id})

    async def list_contacts(self) -> list[Contact]:
        rows = await self.db.fetch_all(
            "SELECT * FROM contacts WHERE user_id = ? ORDER BY name COLLATE NOCASE",
            (self.user_id,),
        )
        return [Contact.model_validate(r) for r in rows]

    async def lookup(self, name_or_address: str) -> Optional[Contact]:
        """Case-insensitive exact match on address, name, internal name or alias."""
        key = name_or_address.strip()
        if key.startswith("@"):
            key = key[1:]
        key = key.lower()
        if not key:
            return None
        row = await self.db.fetch_one(
            "SELECT * FROM contacts WHERE user_id = ? AND ("
            "lower(address) = ? OR lower(name) = ? "
            "OR lower(internal_name) = ? OR lower(alias) = ?) LIMIT 1",
            (self.user_id, key, key, key, key),
        )
        return Contact.model_validate(row) if row else None


class ConversationLog:
    """Chat-style log the agent appends its reports to."""

    def __init__(self, db: Database, user_id: str = "") -> None:
        self.db = db
        self.user_id = user_id

    async def append(self, role: str, content: str) -> None:
        await self.db.execute(
            "INSERT INTO conversations (user_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
            (self.user_id, role, content, datetime.now(timezone.utc).isoformat()),
        )

    async def recent(self, limit: int = 20) -> list[dict]:
        rows = await self.db.fetch_all(
            "SELECT role, content, timestamp FROM conversations WHERE user_id = ? "
            "ORDER BY id DESC LIMIT ?",
            (self.user_id, limit),
        )
        return list(reversed(rows))
