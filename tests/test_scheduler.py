"""Tests for the time-lock scheduler runner against a real SQLite store."""

import asyncio

import pytest

from batch_transfer_agent.core.scheduler import RECOVERED_ERROR, SchedulerRunner
from batch_transfer_agent.storage.models import Contact, ScheduledTask, ScheduleStatus
from batch_transfer_agent.storage.store import SqliteTransferStore

from conftest import BOB, FakeContacts

NOW = 1_700_000_000


@pytest.fixture
def sqlite_store(db):
    return SqliteTransferStore(db)


@pytest.fixture
def runner(chain, sqlite_store, notifier, scheduler_settings):
    contacts = FakeContacts([Contact(name="Bob", address=BOB, email="bob@example.com")])
    return SchedulerRunner(
        chain,
        sqlite_store,
        notifier=notifier,
        contacts=contacts,
        settings=scheduler_settings,
        clock=lambda: NOW,
        jitter=lambda: 0,
    )


async def _save(store, **overrides):
    values = dict(user_id="owner", recipient=BOB, amount="5", unlock_time=NOW - 10, schedule_id="42")
    values.update(overrides)
    task = ScheduledTask(**values)
    await store.save_scheduled_transfer(task)
    return task


@pytest.mark.asyncio
async def test_due_task_is_executed(runner, chain, sqlite_store, notifier):
    task = await _save(sqlite_store)

    report = await runner.tick()

    assert report.executed == [task.id]
    assert chain.calls == [("execute_scheduled", "42")]
    done = await sqlite_store.get_scheduled_task(task.id)
    assert done.status == ScheduleStatus.SENT
    assert done.executed_tx
    assert done.lock_expires_at is None
    assert notifier.sent[0][0] == "owner"
    assert notifier.types() == ["timelock_executed", "transfer_received"]
    assert notifier.sent[1][0] == "bob@example.com"


@pytest.mark.asyncio
async def test_future_task_is_untouched(runner, chain, sqlite_store):
    task = await _save(sqlite_store, unlock_time=NOW + 600)

    report = await runner.tick()

    assert report.processed == 0
    assert chain.calls == []
    assert (await sqlite_store.get_scheduled_task(task.id)).status == ScheduleStatus.WAITING


@pytest.mark.asyncio
async def test_transient_failure_backs_off(runner, chain, sqlite_store):
    chain.failures["execute_scheduled"] = RuntimeError("nonce too low")
    task = await _save(sqlite_store)

    report = await runner.tick()

    assert report.rescheduled == [task.id]
    retried = await sqlite_store.get_scheduled_task(task.id)
    assert retried.status == ScheduleStatus.WAITING
    assert retried.retry_count == 1
    assert retried.next_retry_at == NOW + 3 * 60
    assert retried.last_error == "nonce too low"

    # Not due again until the backoff has passed.
    assert (await runner.tick()).processed == 0
    assert (await runner.tick(now=NOW + 180)).rescheduled == [task.id]
    again = await sqlite_store.get_scheduled_task(task.id)
    assert again.next_retry_at == NOW + 180 + 9 * 60


@pytest.mark.asyncio
async def test_retries_exhausted_marks_failed(runner, chain, sqlite_store, notifier):
    chain.failures["execute_scheduled"] = RuntimeError("execution reverted")
    task = await _save(sqlite_store, retry_count=3)

    report = await runner.tick()

    assert report.failed == [task.id]
    failed = await sqlite_store.get_scheduled_task(task.id)
    assert failed.status == ScheduleStatus.FAILED
    assert failed.retry_count == 4
    assert notifier.types() == ["timelock_failed"]
    assert notifier.sent[0][1].priority == "high"


@pytest.mark.asyncio
async def test_time_still_locked_stays_waiting(runner, chain, sqlite_store):
    chain.failures["execute_scheduled"] = RuntimeError("execution reverted: Time still locked")
    task = await _save(sqlite_store)

    await runner.tick()

    row = await sqlite_store.get_scheduled_task(task.id)
    assert row.status == ScheduleStatus.WAITING
    assert row.next_retry_at is None
    assert row.retry_count == 1


@pytest.mark.asyncio
async def test_already_executed_counts_as_sent(runner, chain, sqlite_store):
    chain.failures["execute_scheduled"] = RuntimeError("execution reverted: already executed")
    task = await _save(sqlite_store)

    report = await runner.tick()

    assert report.executed == [task.id]
    assert (await sqlite_store.get_scheduled_task(task.id)).status == ScheduleStatus.SENT


@pytest.mark.asyncio
async def test_missing_schedule_id_is_a_failure(runner, chain, sqlite_store):
    task = await _save(sqlite_store, schedule_id=None)

    report = await runner.tick()

    assert report.rescheduled == [task.id]
    assert chain.calls == []
    assert "schedule id" in (await sqlite_store.get_scheduled_task(task.id)).last_error


@pytest.mark.asyncio
async def test_expired_lock_is_recovered(runner, sqlite_store):
    task = await _save(sqlite_store, status=ScheduleStatus.EXECUTING, lock_expires_at=NOW - 1)

    report = await runner.tick()

    assert report.recovered == [task.id]
    assert report.executed == [task.id]
    row = await sqlite_store.get_scheduled_task(task.id)
    assert row.status == ScheduleStatus.SENT


@pytest.mark.asyncio
async def test_held_lock_is_left_alone(runner, chain, sqlite_store):
    await _save(sqlite_store, status=ScheduleStatus.EXECUTING, lock_expires_at=NOW + 60)

    report = await runner.tick()

    assert report.recovered == []
    assert chain.calls == []


@pytest.mark.asyncio
async def test_recovered_error_marker(runner, chain, sqlite_store):
    chain.failures["execute_scheduled"] = RuntimeError("nonce too low")
    await _save(sqlite_store, status=ScheduleStatus.EXECUTING, lock_expires_at=NOW - 1)
    update = sqlite_store.update_scheduled_task
    seen = []

    async def spy(task_id, **fields):
        seen.append(fields.get("last_error"))
        await update(task_id, **fields)

    sqlite_store.update_scheduled_task = spy
    await runner.tick()
    assert seen == [RECOVERED_ERROR, "nonce too low"]


@pytest.mark.asyncio
async def test_run_forever_stops(runner):
    stop = asyncio.Event()
    ticks = []
    original = runner.tick

    async def counting_tick(now=None):
        ticks.append(now)
        if len(ticks) == 2:
            stop.set()
        return await original(now)

    runner.tick = counting_tick
    await asyncio.wait_for(runner.run_forever(stop), timeout=5)
    assert len(ticks) == 2
