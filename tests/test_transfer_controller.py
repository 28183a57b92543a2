"""Tests for single sends, scheduling and the legacy top-up path."""

from decimal import Decimal

import pytest

from batch_transfer_agent.core.transfer import (
    TopUpError,
    TransferController,
    TransferError,
    classify_failure,
    is_insufficient_funds,
)
from batch_transfer_agent.storage.models import ScheduleStatus

from conftest import BOB, SENDER

NOW = 1_700_000_000


@pytest.fixture
def controller(chain, store, notifier, settings):
    return TransferController(chain, store, notifier, settings=settings, clock=lambda: NOW)


def test_is_insufficient_funds():
    assert is_insufficient_funds(RuntimeError("Insufficient funds for gas * price + value"))
    assert is_insufficient_funds(TransferError("x", code=TransferError.INSUFFICIENT_FUNDS))
    assert not is_insufficient_funds(RuntimeError("nonce too low"))
    assert not is_insufficient_funds(None)


def test_classify_failure_prefers_insufficient_funds():
    err = classify_failure(RuntimeError("nonce too low"), "5", "VCN", RuntimeError("insufficient funds"))
    assert err.code == TransferError.INSUFFICIENT_FUNDS
    assert "5 VCN" in str(err)


def test_classify_failure_gasless_then_standard():
    err = classify_failure(RuntimeError("reverted"), "5", "VCN", RuntimeError("relay down"))
    assert err.code == TransferError.GASLESS_FAILED
    assert "relay down" in str(err)
    assert classify_failure(RuntimeError("reverted"), "5", "VCN").code == TransferError.UNKNOWN


@pytest.mark.asyncio
async def test_native_send_goes_gasless(controller, chain):
    receipt = await controller.send_now(BOB, "5", "vcn")
    assert receipt.hash.startswith("0xga")
    assert [c[0] for c in chain.calls] == ["send_gasless"]


@pytest.mark.asyncio
async def test_gasless_failure_falls_back_to_standard(controller, chain):
    chain.failures["send_gasless"] = RuntimeError("relay down")
    receipt = await controller.send_now(BOB, "5", "VCN")
    assert receipt.hash.startswith("0xst")
    assert [c[0] for c in chain.calls] == ["send_gasless", "send_standard"]


@pytest.mark.asyncio
async def test_other_tokens_skip_gasless(controller, chain):
    await controller.send_now(BOB, "5", "USDT")
    assert chain.calls == [("send_standard", BOB, "5", "USDT")]


@pytest.mark.asyncio
async def test_both_paths_fail_with_insufficient_funds(controller, chain):
    chain.failures["send_gasless"] = RuntimeError("relay down")
    chain.failures["send_standard"] = RuntimeError("insufficient funds for transfer")
    with pytest.raises(TransferError) as exc_info:
        await controller.send_now(BOB, "5", "VCN")
    assert exc_info.value.code == TransferError.INSUFFICIENT_FUNDS


@pytest.mark.asyncio
async def test_both_paths_fail(controller, chain):
    chain.failures["send_gasless"] = RuntimeError("relay down")
    chain.failures["send_standard"] = RuntimeError("execution reverted")
    with pytest.raises(TransferError) as exc_info:
        await controller.send_now(BOB, "5", "VCN")
    assert exc_info.value.code == TransferError.GASLESS_FAILED


@pytest.mark.asyncio
async def test_schedule_persists_one_waiting_task(controller, chain, store, notifier):
    receipt = await controller.schedule(BOB, "25", 300, "owner", recipient_name="Bob")

    assert store.saved_count == 1
    task = next(iter(store.scheduled.values()))
    assert task.unlock_time == NOW + 300
    assert task.status == ScheduleStatus.WAITING
    assert task.schedule_id == receipt.schedule_id
    assert task.creation_tx == receipt.hash
    assert task.recipient_name == "Bob"
    assert task.token == "VCN"
    assert notifier.types() == ["transfer_scheduled"]
    assert notifier.sent[0][0] == "owner"
    assert [c[0] for c in chain.calls] == ["schedule_gasless"]


@pytest.mark.asyncio
async def test_legacy_schedule_without_top_up(controller, chain, store):
    chain.failures["schedule_gasless"] = RuntimeError("paymaster rejected")
    await controller.schedule(BOB, "25", 60, "owner", sender_address=SENDER)

    methods = [c[0] for c in chain.calls]
    assert methods == ["schedule_gasless", "get_native_balance", "schedule_legacy"]
    assert store.saved_count == 1


@pytest.mark.asyncio
async def test_legacy_schedule_tops_up_then_polls(controller, chain, store):
    chain.failures["schedule_gasless"] = RuntimeError("paymaster rejected")
    chain.balances = [Decimal("10"), Decimal("10"), Decimal("40")]

    await controller.schedule(BOB, "25", 60, "owner", sender_address=SENDER)

    top_ups = [c for c in chain.calls if c[0] == "admin_top_up"]
    assert top_ups == [("admin_top_up", SENDER, "16")]
    assert store.saved_count == 1


@pytest.mark.asyncio
async def test_failed_top_up_schedules_nothing(controller, chain, store):
    chain.failures["schedule_gasless"] = RuntimeError("paymaster rejected")
    chain.failures["admin_top_up"] = RuntimeError("admin key missing")
    chain.balances = [Decimal("1")]

    with pytest.raises(TopUpError):
        await controller.schedule(BOB, "25", 60, "owner", sender_address=SENDER)
    assert store.saved_count == 0
    assert "schedule_legacy" not in [c[0] for c in chain.calls]


@pytest.mark.asyncio
async def test_top_up_that_never_arrives(controller, chain, store, settings):
    chain.failures["schedule_gasless"] = RuntimeError("paymaster rejected")
    chain.balances = [Decimal("1")]

    with pytest.raises(TopUpError, match="did not arrive"):
        await controller.schedule(BOB, "25", 60, "owner", sender_address=SENDER)
    polls = [c for c in chain.calls if c[0] == "get_native_balance"]
    assert len(polls) == 1 + settings.balance_poll_attempts
    assert store.saved_count == 0


@pytest.mark.asyncio
async def test_legacy_schedule_failure_is_classified(controller, chain, store):
    chain.failures["schedule_gasless"] = RuntimeError("paymaster rejected")
    chain.failures["schedule_legacy"] = RuntimeError("execution reverted")
    with pytest.raises(TransferError) as exc_info:
        await controller.schedule(BOB, "25", 60, "owner")
    assert exc_info.value.code == TransferError.GASLESS_FAILED
    assert store.saved_count == 0


@pytest.mark.asyncio
async def test_only_native_token_can_be_scheduled(controller, chain, store, notifier):
    with pytest.raises(TransferError) as exc_info:
        await controller.schedule(BOB, "5", 300, "owner", token="usdt")
    assert exc_info.value.code == TransferError.UNSUPPORTED_TOKEN
    assert chain.calls == []
    assert store.saved_count == 0
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_schedule_on_chain_survives_store_failure(controller, chain, store, notifier):
    store.fail_saves = RuntimeError("db locked")

    receipt = await controller.schedule(BOB, "5", 300, "owner")

    assert receipt.hash.startswith("0xsg")
    assert chain.calls == [("schedule_gasless", BOB, "5", 300)]
    assert store.scheduled == {}
    assert notifier.types() == ["transfer_scheduled"]
