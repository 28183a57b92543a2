"""Tests for the ExecutionAgent batch lifecycle."""

import asyncio

import pytest

from batch_transfer_agent.core.agent import (
    CANCELLED_ERROR,
    BatchAlreadyExecutedError,
    CancellationToken,
    ExecutionAgent,
    build_report,
)
from batch_transfer_agent.core.message_bus import PROGRESS_TOPIC
from batch_transfer_agent.storage.models import IntentType, TaskStatus, TransferRequest
from batch_transfer_agent.wallet.keystore import CredentialError

from conftest import ALICE, BOB, CAROL, SENDER, FakeCredential


def _send(recipient, amount="10", name=""):
    return TransferRequest(recipient_raw=recipient, recipient=recipient, display_name=name, amount=amount)


@pytest.fixture
def batch():
    return [_send(ALICE, "10", "Alice"), _send(BOB, "20", "Bob"), _send(CAROL, "30", "Carol")]


@pytest.mark.asyncio
async def test_gasless_failure_on_one_item_falls_back(agent, chain, batch, authorization):
    chain.failures["send_gasless"] = {BOB: RuntimeError("relay down")}

    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.status == TaskStatus.SENT
    assert result.success_count == 3
    assert result.failed_count == 0
    assert result.current_count == result.total_count == 3
    assert result.results[1].hash.startswith("0xst")
    assert result.results[0].hash.startswith("0xga")
    assert chain.calls[0] == ("connect", SENDER)
    assert chain.calls[-1] == ("disconnect",)


@pytest.mark.asyncio
async def test_results_keep_input_order(agent, batch, authorization):
    result = await agent.execute(batch, FakeCredential(), authorization)
    assert [r.tx.recipient for r in result.results] == [ALICE, BOB, CAROL]


@pytest.mark.asyncio
async def test_credential_failure_marks_batch_failed(agent, chain, notifier, chat_log, batch, authorization):
    with pytest.raises(CredentialError):
        await agent.execute(batch, FakeCredential(fail=True), authorization)

    failed = agent.list_agents()[0]
    assert failed.status == TaskStatus.FAILED
    assert failed.failed_count == failed.total_count == 3
    assert failed.success_count == 0
    assert failed.error
    assert chain.calls == []
    assert notifier.types() == ["batch_failed"]
    assert "could not start" in chat_log.messages[0][1]


@pytest.mark.asyncio
async def test_empty_batch(agent, chain, authorization):
    assert await agent.execute([], FakeCredential(), authorization) is None
    assert chain.calls == []
    assert agent.list_agents() == []


@pytest.mark.asyncio
async def test_finished_batch_cannot_be_resubmitted(agent, batch, authorization):
    result = await agent.execute(batch, FakeCredential(), authorization)
    with pytest.raises(BatchAlreadyExecutedError):
        await agent.execute(result, FakeCredential(), authorization)


@pytest.mark.asyncio
async def test_failing_item_does_not_stop_the_batch(agent, chain, batch, notifier, authorization):
    chain.failures["send_gasless"] = {BOB: RuntimeError("relay down")}
    chain.failures["send_standard"] = {BOB: RuntimeError("insufficient funds for gas")}

    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.status == TaskStatus.SENT
    assert result.success_count == 2
    assert result.failed_count == 1
    assert "Insufficient funds" in result.results[1].error
    assert result.results[2].success
    assert notifier.types().count("multi_send_partial") == 1
    assert "multi_send_complete" not in notifier.types()


@pytest.mark.asyncio
async def test_unresolvable_recipient_is_recorded(agent, chain, authorization):
    batch = [TransferRequest(recipient_raw="nobody", amount="1"), _send(ALICE, "2")]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.results[0].success is False
    assert result.results[0].error == "Could not resolve recipient 'nobody'"
    assert result.results[1].success
    assert [c[0] for c in chain.chain_calls] == ["send_gasless"]


@pytest.mark.asyncio
async def test_names_resolve_through_contacts(agent, chain, authorization):
    batch = [TransferRequest(recipient_raw="ali", amount="1")]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.results[0].tx.recipient == ALICE
    assert result.results[0].tx.display_name == "Alice"
    assert chain.chain_calls[0] == ("send_gasless", ALICE, "1")


@pytest.mark.asyncio
async def test_schedule_item_persists_task(agent, store, authorization):
    batch = [
        TransferRequest(
            recipient_raw=BOB, recipient=BOB, amount="5", intent=IntentType.SCHEDULE, delay_seconds=300
        )
    ]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.success_count == 1
    assert result.results[0].schedule_id
    assert store.saved_count == 1
    task = next(iter(store.scheduled.values()))
    assert task.unlock_time == 1_700_000_000 + 300
    assert task.user_id == "owner@example.com"


@pytest.mark.asyncio
async def test_notifications_and_report(agent, notifier, chat_log, store, batch, authorization):
    result = await agent.execute(batch, FakeCredential(), authorization)

    # Only Alice has an email in the address book.
    received = [(user, n) for user, n in notifier.sent if n.type == "transfer_received"]
    assert [user for user, _ in received] == ["alice@example.com"]
    assert notifier.types().count("multi_send_complete") == 1
    aggregate = [n for _, n in notifier.sent if n.type == "multi_send_complete"][0]
    assert aggregate.data["amount"] == "60"
    assert aggregate.data["batch_id"] == result.id
    assert "to 3 recipients" in aggregate.content

    report = chat_log.messages[-1][1]
    assert report == build_report(result)
    assert report.startswith(f"Batch transfer complete ({result.id}): 3 of 3 succeeded")
    assert len(store.history) == 3
    assert all(r.batch_id == result.id for r in store.history)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_break_the_batch(chain, store, settings, batch, authorization):
    from conftest import FakeNotifier

    agent = ExecutionAgent(chain, store, notifier=FakeNotifier(fail=True), settings=settings)
    result = await agent.execute(batch, FakeCredential(), authorization)
    assert result.success_count == 3
    await agent.close()


@pytest.mark.asyncio
async def test_progress_is_published(agent, batch, authorization):
    seen = []

    async def on_progress(state):
        seen.append((state.status, state.current_count))

    result = await agent.execute(batch, FakeCredential(), authorization, on_progress=on_progress)

    assert seen[0] == (TaskStatus.EXECUTING, 0)
    assert (TaskStatus.EXECUTING, 2) in seen
    assert seen[-1] == (TaskStatus.SENT, 3)
    history = agent.bus.get_history(topic=PROGRESS_TOPIC)
    assert history[-1].payload["status"] == "SENT"
    assert history[-1].source == result.id


@pytest.mark.asyncio
async def test_sync_progress_callback_errors_are_ignored(agent, batch, authorization):
    def on_progress(state):
        raise RuntimeError("ui went away")

    result = await agent.execute(batch, FakeCredential(), authorization, on_progress=on_progress)
    assert result.success_count == 3


@pytest.mark.asyncio
async def test_cancellation_records_remaining_items(agent, chain, batch, authorization):
    token = CancellationToken()

    def on_progress(state):
        if state.current_count == 1:
            token.cancel()

    result = await agent.execute(
        batch, FakeCredential(), authorization, on_progress=on_progress, cancel_token=token
    )

    assert result.status == TaskStatus.SENT
    assert result.success_count == 1
    assert result.failed_count == 2
    assert result.success_count + result.failed_count == result.total_count
    assert [r.error for r in result.results[1:]] == [CANCELLED_ERROR, CANCELLED_ERROR]
    assert len(chain.chain_calls) == 1


@pytest.mark.asyncio
async def test_cancel_unknown_or_finished_batch(agent, batch, authorization):
    assert agent.cancel("missing") is False
    result = await agent.execute(batch, FakeCredential(), authorization)
    assert agent.cancel(result.id) is False


@pytest.mark.asyncio
async def test_interval_sleeps_between_items_only(chain, store, settings, batch, authorization):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    agent = ExecutionAgent(chain, store, settings=settings, sleep=fake_sleep)
    await agent.execute(batch, FakeCredential(), authorization, interval_seconds=7)
    assert sleeps.count(7) == 2
    await agent.close()


@pytest.mark.asyncio
async def test_dismiss_hides_and_evicts_after_retention(chain, store, settings, batch, authorization):
    agent = ExecutionAgent(chain, store, settings=settings.model_copy(update={"retention_seconds": 0.01}))
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert agent.get_agent(result.id) is result
    agent.dismiss(result.id)
    agent.dismiss(result.id)
    assert agent.list_agents() == []
    assert agent.list_agents(include_hidden=True) == [result]

    await asyncio.sleep(0.05)
    assert agent.get_agent(result.id) is None
    with pytest.raises(ValueError):
        agent.dismiss(result.id)
    await agent.close()


class BrokenKeystore:
    def decrypt(self, encrypted, password):
        raise ValueError("bad keystore json")

    def derive_signer(self, secret):
        raise AssertionError("never reached")


@pytest.mark.asyncio
async def test_any_unlock_error_fails_the_batch(chain, store, notifier, chat_log, settings, batch, authorization):
    agent = ExecutionAgent(
        chain,
        store,
        notifier=notifier,
        chat_log=chat_log,
        settings=settings.model_copy(update={"retention_seconds": 0.01}),
    )
    with pytest.raises(CredentialError, match="bad keystore json"):
        await agent.execute(batch, BrokenKeystore(), authorization)

    failed = agent.list_agents()[0]
    assert failed.status == TaskStatus.FAILED
    assert failed.failed_count == failed.total_count == 3
    assert notifier.types() == ["batch_failed"]
    assert "could not start" in chat_log.messages[0][1]
    assert chain.calls == []

    await asyncio.sleep(0.05)
    assert agent.get_agent(failed.id) is None
    await agent.close()


@pytest.mark.asyncio
async def test_connect_failure_fails_the_batch(agent, chain, notifier, chat_log, batch, authorization):
    async def refuse(signer):
        raise RuntimeError("rpc down")

    chain.connect = refuse
    with pytest.raises(RuntimeError, match="rpc down"):
        await agent.execute(batch, FakeCredential(), authorization)

    failed = agent.list_agents()[0]
    assert failed.status == TaskStatus.FAILED
    assert failed.success_count + failed.failed_count == failed.total_count
    assert failed.error == "rpc down"
    assert notifier.types() == ["batch_failed"]
    assert "network connection failed" in chat_log.messages[0][1]
    assert chain.chain_calls == []


@pytest.mark.asyncio
async def test_schedule_item_does_not_notify_recipient(agent, notifier, authorization):
    batch = [
        TransferRequest(
            recipient_raw=ALICE, recipient=ALICE, amount="5", intent=IntentType.SCHEDULE, delay_seconds=60
        )
    ]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.success_count == 1
    assert "transfer_received" not in notifier.types()
    assert [user for user, _ in notifier.sent] == ["owner@example.com", "owner@example.com"]
    assert notifier.types() == ["transfer_scheduled", "multi_send_complete"]


@pytest.mark.asyncio
async def test_non_native_schedule_item_fails_without_chain_call(agent, chain, store, authorization):
    batch = [
        TransferRequest(
            recipient_raw=BOB,
            recipient=BOB,
            amount="5",
            token_symbol="USDT",
            intent=IntentType.SCHEDULE,
            delay_seconds=300,
        ),
        _send(ALICE, "1"),
    ]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.results[0].success is False
    assert "only VCN" in result.results[0].error
    assert result.results[1].success
    assert [c[0] for c in chain.chain_calls] == ["send_gasless"]
    assert store.saved_count == 0


@pytest.mark.asyncio
async def test_scheduled_item_stays_successful_when_task_row_fails(agent, store, authorization):
    store.fail_saves = RuntimeError("db locked")
    batch = [
        TransferRequest(
            recipient_raw=BOB, recipient=BOB, amount="5", intent=IntentType.SCHEDULE, delay_seconds=300
        )
    ]
    result = await agent.execute(batch, FakeCredential(), authorization)

    assert result.results[0].success
    assert result.results[0].hash.startswith("0xsg")
    assert store.history[0].tx_hash == result.results[0].hash


@pytest.mark.asyncio
async def test_unknown_address_is_reported_by_address(agent, chat_log, authorization):
    result = await agent.execute([_send(CAROL, "3")], FakeCredential(), authorization)

    tx = result.results[0].tx
    assert tx.display_name == ""
    assert tx.label == CAROL
    assert f"1. {CAROL}: 3 VCN sent" in chat_log.messages[-1][1]
