"""Tests for the idempotent execution ledger."""

import asyncio
from datetime import timedelta

import pytest
from conftest import T0
from insiderguard.core.clock import utcnow
from insiderguard.domain.models import ActionType, ExecutionKey, ExecutionStatus
from insiderguard.execution.ledger import ExecutionLedger

KEY = ExecutionKey(1, "evt-1", 1)


@pytest.fixture
def ledger(session_factory):
    return ExecutionLedger(session_factory)


async def claim(ledger, key=KEY, action_type=ActionType.EMAIL_ALERT, scheduled_at=T0):
    return await ledger.try_claim(
        key,
        action_type=action_type,
        scheduled_at=scheduled_at,
        event_snapshot={"id": key.trigger_event_id},
    )


@pytest.mark.asyncio
async def test_first_claim_wins(ledger):
    assert await claim(ledger) is True
    assert await claim(ledger) is False

    record = await ledger.get(KEY)
    assert record.status == ExecutionStatus.PENDING
    assert record.scheduled_at == T0
    assert record.attempts == 1
    assert record.event_snapshot == {"id": "evt-1"}


@pytest.mark.asyncio
async def test_executed_record_cannot_be_reclaimed(ledger):
    await claim(ledger)
    assert await ledger.complete(KEY, ExecutionStatus.EXECUTED, result={"message_id": "m-1"})

    assert await claim(ledger) is False
    record = await ledger.get(KEY)
    assert record.status == ExecutionStatus.EXECUTED
    assert record.result == {"message_id": "m-1"}


@pytest.mark.asyncio
async def test_failed_record_is_reclaimed(ledger):
    await claim(ledger)
    await ledger.complete(KEY, ExecutionStatus.FAILED, error="DeliveryError: relay down")

    later = T0 + timedelta(minutes=5)
    assert await claim(ledger, scheduled_at=later) is True

    record = await ledger.get(KEY)
    assert record.status == ExecutionStatus.PENDING
    assert record.attempts == 2
    assert record.error is None
    assert record.scheduled_at == later


@pytest.mark.asyncio
async def test_complete_only_moves_pending(ledger):
    await claim(ledger)

    assert await ledger.complete(KEY, ExecutionStatus.FAILED, error="policy_deactivated") is True
    assert await ledger.complete(KEY, ExecutionStatus.EXECUTED) is False
    assert (await ledger.get(KEY)).status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_complete_rejects_pending_status(ledger):
    with pytest.raises(ValueError):
        await ledger.complete(KEY, ExecutionStatus.PENDING)


@pytest.mark.asyncio
async def test_complete_unknown_key(ledger):
    assert await ledger.complete(ExecutionKey(9, "nope", 1), ExecutionStatus.EXECUTED) is False


@pytest.mark.asyncio
async def test_fail_all(ledger):
    keys = [ExecutionKey(1, "evt-1", order) for order in (1, 2, 3)]
    for key in keys:
        await claim(ledger, key)
    await ledger.complete(keys[0], ExecutionStatus.EXECUTED)

    failed = await ledger.fail_all(keys, "scheduler_unavailable")

    assert failed == 2
    assert (await ledger.get(keys[0])).status == ExecutionStatus.EXECUTED
    assert (await ledger.get(keys[2])).error == "scheduler_unavailable"


@pytest.mark.asyncio
async def test_pending_in_schedule_order(ledger):
    await claim(ledger, ExecutionKey(1, "evt-1", 2), scheduled_at=T0 + timedelta(minutes=30))
    await claim(ledger, ExecutionKey(1, "evt-1", 1), scheduled_at=T0)
    await claim(ledger, ExecutionKey(2, "evt-1", 1), scheduled_at=T0 + timedelta(minutes=5))
    await ledger.complete(ExecutionKey(2, "evt-1", 1), ExecutionStatus.EXECUTED)

    pending = await ledger.pending()

    assert [str(r.key) for r in pending] == ["1:evt-1:1", "1:evt-1:2"]


@pytest.mark.asyncio
async def test_pending_due_before_and_limit(ledger):
    await claim(ledger, ExecutionKey(1, "evt-1", 1), scheduled_at=T0)
    await claim(ledger, ExecutionKey(1, "evt-1", 2), scheduled_at=T0 + timedelta(minutes=5))
    await claim(ledger, ExecutionKey(1, "evt-1", 3), scheduled_at=T0 + timedelta(minutes=30))

    due = await ledger.pending(due_before=T0 + timedelta(minutes=5))
    first = await ledger.pending(limit=1)

    assert [r.action_order for r in due] == [1, 2]
    assert [r.action_order for r in first] == [1]


@pytest.mark.asyncio
async def test_acquire_lease(ledger):
    await claim(ledger)
    lease = timedelta(minutes=5)

    assert await ledger.acquire(KEY, T0, lease) is True
    assert await ledger.acquire(KEY, T0 + timedelta(minutes=4), lease) is False
    assert await ledger.acquire(KEY, T0 + timedelta(minutes=5), lease) is True


@pytest.mark.asyncio
async def test_acquire_requires_pending(ledger):
    await claim(ledger)
    await ledger.complete(KEY, ExecutionStatus.EXECUTED)

    assert await ledger.acquire(KEY, T0, timedelta(minutes=5)) is False
    assert await ledger.acquire(ExecutionKey(9, "evt-9", 1), T0, timedelta(minutes=5)) is False


@pytest.mark.asyncio
async def test_reclaim_clears_lease(ledger):
    await claim(ledger)
    await ledger.acquire(KEY, T0, timedelta(hours=1))
    await ledger.complete(KEY, ExecutionStatus.FAILED, error="boom")

    assert await claim(ledger) is True
    assert await ledger.acquire(KEY, T0, timedelta(minutes=5)) is True


@pytest.mark.asyncio
async def test_concurrent_claims_yield_one_winner(ledger):
    results = await asyncio.gather(*(claim(ledger) for _ in range(5)))

    assert sorted(results) == [False, False, False, False, True]
    assert len(await ledger.records_for_policy(1)) == 1


@pytest.mark.asyncio
async def test_records_survive_and_count_any_status(ledger):
    await claim(ledger, ExecutionKey(1, "evt-1", 1))
    await claim(ledger, ExecutionKey(1, "evt-2", 1))
    await claim(ledger, ExecutionKey(2, "evt-1", 1))
    await ledger.complete(ExecutionKey(1, "evt-2", 1), ExecutionStatus.FAILED, error="x")

    since = utcnow() - timedelta(days=30)

    assert await ledger.recent_executions(1, since) == 2
    assert await ledger.recent_counts([1, 2, 3], since) == {1: 2, 2: 1}
    assert await ledger.recent_executions(1, utcnow() + timedelta(minutes=1)) == 0
    assert await ledger.recent_counts([], since) == {}


@pytest.mark.asyncio
async def test_records_for_policy_limit(ledger):
    for n in range(4):
        await claim(ledger, ExecutionKey(1, f"evt-{n}", 1))

    records = await ledger.records_for_policy(1, limit=2)

    assert len(records) == 2
