"""User notifications: the SQLite-backed service and message builders."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from batch_transfer_agent.storage.database import Database
from batch_transfer_agent.storage.models import Notification

logger = logging.getLogger("batch_transfer_agent.notifications")


class DatabaseNotifier:
    """``NotificationService`` that writes into the ``notifications`` table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def notify(self, user_id: str, notification: Notification) -> None:
        await self.db.execute(
            "INSERT INTO notifications (id, user_id, type, title, content, data_json, priority, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                uuid.uuid4().hex[:12],
                user_id,
                notification.type,
                notification.title,
                notification.content,
                json.dumps(notification.data, default=str),
                notification.priority,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        logger.info(f"Notification created: {notification.type} for {user_id}")

    async def list_for(self, user_id: str, unread_only: bool = False, limit: int = 50) -> list[dict]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND read = 0"
        rows = await self.db.fetch_all(sql + " ORDER BY created_at DESC LIMIT ?", (user_id, limit))
        for row in rows:
            row["data"] = json.loads(row.pop("data_json") or "{}")
        return rows


async def notify_quietly(notifier, user_id: str | None, notification: Notification) -> bool:
    """Deliver a notification, logging instead of raising on failure."""
    if notifier is None or not user_id:
        return False
    try:
        await notifier.notify(user_id, notification)
        return True
    except Exception as e:
        logger.warning(f"Notification '{notification.type}' for {user_id} failed: {e}")
        return False


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def _short(address: str | None) -> str:
    if not address:
        return "unknown"
    if len(address) <= 16:
        return address
    return f"{address[:8]}...{address[-6:]}"


def transfer_sent(amount: str, token: str, to: str, tx_hash: str | None = None) -> Notification:
    return Notification(
        type="transfer_sent",
        title="Transfer Sent",
        content=f"You sent {amount} {token} to {_short(to)}",
        data={"amount": amount, "token": token, "to": to, "tx_hash": tx_hash},
    )


def transfer_received(amount: str, token: str, sender: str, tx_hash: str | None = None) -> Notification:
    return Notification(
        type="transfer_received",
        title="Transfer Received",
        content=f"You received {amount} {token} from {_short(sender)}",
        data={"amount": amount, "token": token, "from": sender, "tx_hash": tx_hash},
    )


def transfer_scheduled(amount: str, token: str, to: str, unlock_time: int, schedule_id: str | None) -> Notification:
    unlock = datetime.fromtimestamp(unlock_time, tz=timezone.utc)
    return Notification(
        type="transfer_scheduled",
        title="Transfer Scheduled",
        content=f"{amount} {token} scheduled to {_short(to)} at {unlock.strftime('%Y-%m-%d %H:%M UTC')}",
        data={
            "amount": amount,
            "token": token,
            "to": to,
            "unlock_time": unlock_time,
            "schedule_id": schedule_id,
        },
    )


def timelock_executed(amount: str, token: str, to: str, tx_hash: str | None) -> Notification:
    return Notification(
        type="timelock_executed",
        title="Scheduled Transfer Executed",
        content=f"Successfully transferred {amount} {token} to {_short(to)}",
        data={"amount": amount, "token": token, "to": to, "tx_hash": tx_hash},
    )


def timelock_failed(amount: str, token: str, to: str, error: str) -> Notification:
    return Notification(
        type="timelock_failed",
        title="Scheduled Transfer Failed",
        content=f"Transfer of {amount} {token} to {_short(to)} failed: {error}",
        data={"amount": amount, "token": token, "to": to, "error": error},
        priority="high",
    )


def multi_send_complete(total_amount: Decimal, token: str, recipient_count: int, batch_id: str) -> Notification:
    return Notification(
        type="multi_send_complete",
        title="Multi-Send Complete",
        content=f"Successfully sent {total_amount} {token} to {recipient_count} recipients",
        data={"amount": str(total_amount), "token": token, "batch_id": batch_id},
    )


def multi_send_partial(
    success_count: int,
    failed_count: int,
    total_amount: Decimal,
    token: str,
    batch_id: str,
) -> Notification:
    return Notification(
        type="multi_send_partial",
        title="Multi-Send Partial Success",
        content=(
            f"{success_count} transfers succeeded, {failed_count} failed. "
            f"Total: {total_amount} {token}"
        ),
        data={
            "amount": str(total_amount),
            "token": token,
            "success": success_count,
            "failed": failed_count,
            "batch_id": batch_id,
        },
        priority="high",
    )


def batch_failed(reason: str, total_count: int, batch_id: str) -> Notification:
    return Notification(
        type="batch_failed",
        title="Batch Transfer Failed",
        content=f"None of the {total_count} transfers were attempted: {reason}",
        data={"batch_id": batch_id, "error": reason},
        priority="high",
    )
