"""Shared fixtures and in-memory fakes for the agent's collaborators."""

from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio

from batch_transfer_agent.config import AgentSettings, SchedulerSettings
from batch_transfer_agent.core.agent import ExecutionAgent
from batch_transfer_agent.core.message_bus import MessageBus
from batch_transfer_agent.storage.database import Database
from batch_transfer_agent.storage.models import (
    Contact,
    ScheduleStatus,
    Signer,
    TxReceipt,
)
from batch_transfer_agent.wallet.keystore import CredentialError, WalletAuthorization

SENDER = "0x1111111111111111111111111111111111111111"
ALICE = "0xABCDEF0123456789ABCDEF0123456789ABCDEF01"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"


class FakeChain:
    """Records every call. ``failures`` maps a method name to an exception,
    or to a dict of recipient -> exception."""

    def __init__(self, balance: Decimal = Decimal("100")):
        self.calls: list[tuple] = []
        self.failures: dict = {}
        self.balances: list[Decimal] = [balance]
        self.connected: str | None = None
        self._n = 0

    def _maybe_fail(self, method: str, recipient: str | None = None) -> None:
        failure = self.failures.get(method)
        if isinstance(failure, dict):
            failure = failure.get(recipient)
        if failure is not None:
            raise failure

    def _hash(self, prefix: str) -> str:
        self._n += 1
        return f"0x{prefix}{self._n:04d}"

    @property
    def chain_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] not in ("connect", "disconnect")]

    async def connect(self, signer: Signer) -> str:
        self.calls.append(("connect", signer.address))
        self.connected = signer.address
        return signer.address

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.connected = None

    async def send_gasless(self, recipient, amount):
        self.calls.append(("send_gasless", recipient, amount))
        self._maybe_fail("send_gasless", recipient)
        return TxReceipt(hash=self._hash("ga"))

    async def send_standard(self, recipient, amount, token):
        self.calls.append(("send_standard", recipient, amount, token))
        self._maybe_fail("send_standard", recipient)
        return TxReceipt(hash=self._hash("st"))

    async def schedule_gasless(self, recipient, amount, delay_seconds, user_ref):
        self.calls.append(("schedule_gasless", recipient, amount, delay_seconds))
        self._maybe_fail("schedule_gasless", recipient)
        self._n += 1
        return TxReceipt(hash=self._hash("sg"), schedule_id=str(self._n))

    async def schedule_legacy(self, recipient, amount, delay_seconds):
        self.calls.append(("schedule_legacy", recipient, amount, delay_seconds))
        self._maybe_fail("schedule_legacy", recipient)
        self._n += 1
        return TxReceipt(hash=self._hash("sl"), schedule_id=str(self._n))

    async def get_native_balance(self, address):
        self.calls.append(("get_native_balance", address))
        if len(self.balances) > 1:
            return self.balances.pop(0)
        return self.balances[0]

    async def admin_top_up(self, address, amount):
        self.calls.append(("admin_top_up", address, amount))
        self._maybe_fail("admin_top_up")
        return TxReceipt(hash=self._hash("tu"))

    async def execute_scheduled(self, schedule_id):
        self.calls.append(("execute_scheduled", schedule_id))
        self._maybe_fail("execute_scheduled", schedule_id)
        return TxReceipt(hash=self._hash("ex"))


class FakeStore:
    def __init__(self):
        self.scheduled: dict = {}
        self.bridges: dict = {}
        self.history: list = []
        self.saved_count = 0
        self.fail_saves: Exception | None = None

    async def save_scheduled_transfer(self, task):
        if self.fail_saves is not None:
            raise self.fail_saves
        self.saved_count += 1
        self.scheduled[task.id] = task
        return task.id

    async def get_scheduled_task(self, task_id):
        return self.scheduled.get(task_id)

    async def list_scheduled_tasks(self, user_id=None, include_hidden=False):
        return [
            t for t in self.scheduled.values()
            if (not user_id or t.user_id == user_id) and (include_hidden or not t.hidden_from_desk)
        ]

    async def get_bridge_task(self, task_id):
        return self.bridges.get(task_id)

    async def list_bridge_tasks(self, user_id=None, include_hidden=False):
        return [
            t for t in self.bridges.values()
            if (not user_id or t.user_id == user_id) and (include_hidden or not t.hidden_from_desk)
        ]

    def _require(self, task_id):
        if task_id not in self.scheduled:
            raise ValueError(f"Scheduled task {task_id} not found.")
        return self.scheduled[task_id]

    async def update_scheduled_task_status(self, task_id, status, error=None):
        task = self._require(task_id)
        self.scheduled[task_id] = task.model_copy(update={"status": status, "last_error": error})

    async def cancel_scheduled_task(self, task_id):
        task = self._require(task_id)
        if task.status != ScheduleStatus.WAITING:
            raise ValueError("only WAITING tasks can be cancelled")
        self.scheduled[task_id] = task.model_copy(update={"status": ScheduleStatus.CANCELLED})

    async def dismiss_scheduled_task(self, task_id):
        task = self._require(task_id)
        self.scheduled[task_id] = task.model_copy(update={"hidden_from_desk": True})

    async def dismiss_bridge_task(self, task_id):
        task = self.bridges[task_id]
        self.bridges[task_id] = task.model_copy(update={"hidden_from_desk": True})

    async def retry_scheduled_task(self, task_id):
        task = self._require(task_id)
        self.scheduled[task_id] = task.model_copy(
            update={"status": ScheduleStatus.WAITING, "last_error": None}
        )

    async def save_history(self, records):
        self.history.extend(records)

    async def list_history(self, user_id=None, batch_id=None, limit=100):
        return [r for r in self.history if not batch_id or r.batch_id == batch_id][:limit]


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple] = []
        self.fail = fail

    async def notify(self, user_id, notification):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append((user_id, notification))

    def types(self) -> list[str]:
        return [n.type for _, n in self.sent]


class FakeCredential:
    def __init__(self, fail: bool = False):
        self.fail = fail

    def decrypt(self, encrypted, password):
        if self.fail or password != "pw":
            raise CredentialError("MAC mismatch")
        return "secret"

    def derive_signer(self, secret):
        return Signer(address=SENDER, private_key=b"\x01" * 32)


class FakeContacts:
    def __init__(self, contacts: list[Contact] | None = None):
        self.contacts = contacts or []

    async def list_contacts(self):
        return list(self.contacts)

    async def lookup(self, name_or_address):
        key = name_or_address.strip()
        key = (key[1:] if key.startswith("@") else key).lower()
        for c in self.contacts:
            names = [c.address, c.name, c.internal_name, c.alias]
            if key in [n.lower() for n in names if n]:
                return c
        return None


class FakeChatLog:
    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    async def append(self, role, content):
        self.messages.append((role, content))


@pytest.fixture
def settings():
    return AgentSettings(
        interval_seconds=0,
        retention_seconds=60,
        balance_poll_attempts=3,
        balance_poll_backoff_seconds=0,
        topup_settle_seconds=0,
    )


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(max_retries=3, batch_size=50, lock_timeout_seconds=120, interval_seconds=0)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def chat_log():
    return FakeChatLog()


@pytest.fixture
def contacts():
    return FakeContacts([
        Contact(name="Alice", address=ALICE, alias="ali", email="alice@example.com"),
        Contact(name="Bob Marley", address=BOB, internal_name="bobm"),
    ])


@pytest.fixture
def authorization():
    return WalletAuthorization(encrypted={"version": 3}, password="pw")


@pytest_asyncio.fixture
async def agent(chain, store, notifier, contacts, chat_log, settings):
    execution_agent = ExecutionAgent(
        chain,
        store,
        notifier=notifier,
        contacts=contacts,
        chat_log=chat_log,
        bus=MessageBus(),
        settings=settings,
        user_id="owner@example.com",
        clock=lambda: 1_700_000_000,
    )
    yield execution_agent
    await execution_agent.close()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "agent.db")
    await database.connect()
    yield database
    await database.close()
