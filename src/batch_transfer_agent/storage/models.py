"""Pydantic models for transfer requests, batch agents and desk records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Common status vocabulary of the agent desk."""

    WAITING = "WAITING"
    EXECUTING = "EXECUTING"
    SENT = "SENT"
    FAILED = "FAILED"


class ScheduleStatus(str, Enum):
    """Persisted status of a time-lock task.

    ``CANCELLED`` and ``EXPIRED`` never reach the desk as-is; the
    projection folds them into ``FAILED``.
    """

    WAITING = "WAITING"
    EXECUTING = "EXECUTING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class IntentType(str, Enum):
    SEND = "send"
    SCHEDULE = "schedule"


class TaskKind(str, Enum):
    BATCH = "batch"
    TIMELOCK = "timelock"
    BRIDGE = "bridge"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_amount(value: Any) -> str:
    """Return *value* as a positive decimal string.

    Thousands separators are dropped (``"1,000.5"`` -> ``"1000.5"``); the
    digits are otherwise kept as written so ``"30.50"`` stays ``"30.50"``.

    Raises
    ------
    ValueError
        If the value is not a finite number greater than zero.
    """
    text = str(value).strip().replace(",", "")
    try:
        number = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value}'") from exc
    if not number.is_finite() or number <= 0:
        raise ValueError(f"Amount must be a positive number, got '{value}'")
    return text


# ---------------------------------------------------------------------------
# Transfer models
# ---------------------------------------------------------------------------

class Contact(BaseModel):
    """An address-book entry owned by the user."""

    id: Optional[int] = None
    user_id: str = ""
    name: str
    address: str
    internal_name: Optional[str] = None
    alias: Optional[str] = None
    email: Optional[str] = None


class ResolvedRecipient(BaseModel):
    address: str
    name: str
    user_id: Optional[str] = None
    resolved: bool = True


class TransferRequest(BaseModel):
    """One transfer line of a batch, before or after recipient resolution."""

    recipient_raw: str
    recipient: Optional[str] = None
    display_name: str = ""
    amount: str
    token_symbol: str = "VCN"
    intent: IntentType = IntentType.SEND
    delay_seconds: int = 0

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: Any) -> str:
        return normalize_amount(value)

    @field_validator("token_symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return value.strip().upper() or "VCN"

    @field_validator("delay_seconds")
    @classmethod
    def _non_negative_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("delay_seconds cannot be negative")
        return value

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(self.amount)

    @property
    def label(self) -> str:
        return self.display_name or self.recipient or self.recipient_raw


class ExecutionResult(BaseModel):
    """Outcome of one attempted transfer. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    success: bool
    hash: Optional[str] = None
    error: Optional[str] = None
    schedule_id: Optional[str] = None
    tx: TransferRequest


class TxReceipt(BaseModel):
    """What the chain client hands back for a submitted transaction."""

    hash: str
    schedule_id: Optional[str] = None


class Signer(BaseModel):
    """A derived signing account. Never persisted."""

    model_config = ConfigDict(frozen=True)

    address: str
    private_key: bytes = Field(repr=False)


# ---------------------------------------------------------------------------
# Batch agent
# ---------------------------------------------------------------------------

class BatchAgent(BaseModel):
    """In-memory state of one batch run."""

    id: str = Field(default_factory=_new_id)
    user_id: str = ""
    status: TaskStatus = TaskStatus.WAITING
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    current_count: int = 0
    start_time: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    transactions: list[TransferRequest] = Field(default_factory=list)
    results: list[ExecutionResult] = Field(default_factory=list)
    error: Optional[str] = None
    hidden_from_desk: bool = False

    @classmethod
    def create(cls, transactions: list[TransferRequest], user_id: str = "") -> BatchAgent:
        return cls(
            user_id=user_id,
            transactions=list(transactions),
            total_count=len(transactions),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.SENT, TaskStatus.FAILED)

    def record(self, result: ExecutionResult) -> None:
        self.results.append(result)
        if result.success:
            self.success_count += 1
        else:
            self.failed_count += 1
        self.current_count = len(self.results)

    def fail(self, reason: str) -> None:
        """Terminal initialization failure: nothing was attempted."""
        self.status = TaskStatus.FAILED
        self.error = reason
        self.success_count = 0
        self.failed_count = self.total_count
        self.completed_at = _utcnow()

    def complete(self) -> None:
        self.status = TaskStatus.SENT
        self.completed_at = _utcnow()

    @property
    def total_amount(self) -> Decimal:
        return sum((tx.amount_decimal for tx in self.transactions), Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "total": self.total_count,
            "success": self.success_count,
            "failed": self.failed_count,
            "current": self.current_count,
            "start_time": self.start_time.isoformat(),
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Persisted desk records
# ---------------------------------------------------------------------------

class ScheduledTask(BaseModel):
    """Maps to the ``scheduled_transfers`` table."""

    id: str = Field(default_factory=_new_id)
    schedule_id: Optional[str] = None
    user_id: str
    recipient: str
    recipient_name: str = ""
    amount: str
    token: str = "VCN"
    unlock_time: int
    creation_tx: Optional[str] = None
    status: ScheduleStatus = ScheduleStatus.WAITING
    hidden_from_desk: bool = False
    retry_count: int = 0
    next_retry_at: Optional[int] = None
    lock_expires_at: Optional[int] = None
    last_error: Optional[str] = None
    executed_tx: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class BridgeTask(BaseModel):
    """Maps to the ``bridge_tasks`` table. Status uses the bridge vocabulary."""

    id: str = Field(default_factory=_new_id)
    user_id: str
    amount: str
    token: str = "VCN"
    destination_chain: str = ""
    recipient: Optional[str] = None
    status: str = "PENDING"
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    hidden_from_desk: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class HistoryRecord(BaseModel):
    """Maps to the ``transfer_history`` table: one row per attempted item."""

    id: str = Field(default_factory=_new_id)
    batch_id: Optional[str] = None
    user_id: str
    recipient: Optional[str] = None
    recipient_name: str = ""
    amount: str
    token: str = "VCN"
    intent: IntentType = IntentType.SEND
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @classmethod
    def from_result(cls, result: ExecutionResult, user_id: str, batch_id: str | None = None) -> HistoryRecord:
        tx = result.tx
        return cls(
            batch_id=batch_id,
            user_id=user_id,
            recipient=tx.recipient,
            recipient_name=tx.display_name,
            amount=tx.amount,
            token=tx.token_symbol,
            intent=tx.intent,
            success=result.success,
            tx_hash=result.hash,
            error=result.error,
        )


class Notification(BaseModel):
    type: str
    title: str
    content: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: str = "normal"


class UnifiedTask(BaseModel):
    """One display-ready row of the agent desk."""

    id: str
    kind: TaskKind
    status: TaskStatus
    native_status: str
    summary: str
    amount: str = ""
    token: str = "VCN"
    recipient: Optional[str] = None
    timestamp: datetime
    error: Optional[str] = None
    progress_current: int = 0
    progress_total: int = 0
