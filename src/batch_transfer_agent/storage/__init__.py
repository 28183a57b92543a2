"""Storage layer -- async SQLite database, stores and Pydantic models."""

from batch_transfer_agent.storage.database import Database, get_database
from batch_transfer_agent.storage.models import (
    BatchAgent,
    BridgeTask,
    Contact,
    ExecutionResult,
    HistoryRecord,
    IntentType,
    Notification,
    ScheduledTask,
    ScheduleStatus,
    TaskKind,
    TaskStatus,
    TransferRequest,
    UnifiedTask,
)
from batch_transfer_agent.storage.store import ContactBook, ConversationLog, SqliteTransferStore

__all__ = [
    "Database",
    "get_database",
    "BatchAgent",
    "BridgeTask",
    "Contact",
    "ContactBook",
    "ConversationLog",
    "ExecutionResult",
    "HistoryRecord",
    "IntentType",
    "Notification",
    "ScheduledTask",
    "ScheduleStatus",
    "SqliteTransferStore",
    "TaskKind",
    "TaskStatus",
    "TransferRequest",
    "UnifiedTask",
]
