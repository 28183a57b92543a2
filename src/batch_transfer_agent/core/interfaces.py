"""Collaborator interfaces of the execution agent.

The agent, the transfer controller, the scheduler and the desk only talk to
these protocols. Concrete implementations live in ``wallet/`` and
``storage/``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from batch_transfer_agent.storage.models import (
    BridgeTask,
    Contact,
    HistoryRecord,
    Notification,
    ResolvedRecipient,
    ScheduledTask,
    ScheduleStatus,
    Signer,
    TxReceipt,
)


@runtime_checkable
class WalletCredential(Protocol):
    """Turns the user's encrypted wallet into a signer.

    Both methods raise ``CredentialError`` on failure.
    """

    def decrypt(self, encrypted: dict, password: str) -> str: ...

    def derive_signer(self, secret: str) -> Signer: ...


@runtime_checkable
class ChainClient(Protocol):
    """Capability interface over the chain and the paymaster.

    Every send method returns a :class:`TxReceipt`; scheduling methods fill
    ``schedule_id``. Failures are raised as exceptions whose message carries
    the provider's error text.
    """

    async def connect(self, signer: Signer) -> str: ...

    async def disconnect(self) -> None: ...

    async def send_gasless(self, recipient: str, amount: str) -> TxReceipt: ...

    async def send_standard(self, recipient: str, amount: str, token: str) -> TxReceipt: ...

    async def schedule_gasless(
        self, recipient: str, amount: str, delay_seconds: int, user_ref: str
    ) -> TxReceipt: ...

    async def schedule_legacy(self, recipient: str, amount: str, delay_seconds: int) -> TxReceipt: ...

    async def get_native_balance(self, address: str) -> Decimal: ...

    async def admin_top_up(self, address: str, amount: str) -> TxReceipt: ...

    async def execute_scheduled(self, schedule_id: str) -> TxReceipt: ...


@runtime_checkable
class PersistenceStore(Protocol):
    async def save_scheduled_transfer(self, task: ScheduledTask) -> str: ...

    async def get_scheduled_task(self, task_id: str) -> Optional[ScheduledTask]: ...

    async def list_scheduled_tasks(
        self, user_id: str | None = None, include_hidden: bool = False
    ) -> list[ScheduledTask]: ...

    async def get_bridge_task(self, task_id: str) -> Optional[BridgeTask]: ...

    async def list_bridge_tasks(
        self, user_id: str | None = None, include_hidden: bool = False
    ) -> list[BridgeTask]: ...

    async def update_scheduled_task_status(
        self, task_id: str, status: ScheduleStatus, error: str | None = None
    ) -> None: ...

    async def cancel_scheduled_task(self, task_id: str) -> None: ...

    async def dismiss_scheduled_task(self, task_id: str) -> None: ...

    async def dismiss_bridge_task(self, task_id: str) -> None: ...

    async def retry_scheduled_task(self, task_id: str) -> None: ...

    async def save_history(self, records: list[HistoryRecord]) -> None: ...


@runtime_checkable
class NotificationService(Protocol):
    async def notify(self, user_id: str, notification: Notification) -> None: ...


@runtime_checkable
class ContactDirectory(Protocol):
    """Per-user address book. ``lookup`` accepts one leading "@" on a handle."""

    async def lookup(self, name_or_address: str) -> Optional[Contact]: ...

    async def list_contacts(self) -> list[Contact]: ...


@runtime_checkable
class GlobalRegistry(Protocol):
    async def resolve(self, token: str) -> Optional[ResolvedRecipient]: ...


@runtime_checkable
class ChatLog(Protocol):
    async def append(self, role: str, content: str) -> None: ...
