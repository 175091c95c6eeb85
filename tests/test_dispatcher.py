"""End-to-end dispatch tests: resolve, evaluate, schedule, execute."""

from datetime import timedelta

import pytest
from conftest import T0
from insiderguard.db.repositories import SqlIncidentStore
from insiderguard.dispatch.dispatcher import DispatchState, PolicyOutcomeStatus
from insiderguard.domain.models import ExecutionKey, ExecutionStatus, Policy, TriggerEvent
from insiderguard.policies.repository import PolicyRepository


async def save(session_factory, **fields):
    async with session_factory() as session:
        policy = await PolicyRepository(session).create(Policy(**fields))
        await session.commit()
    return policy


def violation(event_id="evt-1", user_id="alice", risk_score=85, severity="Critical", **subject):
    return TriggerEvent(
        id=event_id,
        subject={"user_id": user_id, "department": "Engineering", **subject},
        kind="violation_created",
        metrics={"risk_score": risk_score, "severity": severity, "recent_event_count": 4, "timestamp": T0},
    )


HIGH_RISK = dict(
    name="High risk critical violation",
    level="group",
    target_id="Engineering",
    priority=10,
    conditions=[
        {"type": "risk_score", "operator": "greater_than", "value": "70", "logical_operator": "AND"},
        {"type": "violation_severity", "operator": "equals", "value": "Critical"},
    ],
    actions=[
        {"type": "email_alert", "delay": 0, "config": {"recipients": ["soc@example.com"]}},
        {
            "type": "escalate_incident",
            "delay": 30,
            "config": {"escalation_level": "critical", "notify_management": True},
        },
    ],
)


@pytest.mark.asyncio
async def test_fired_policy_runs_actions_in_delay_order(runtime, session_factory, clock, mailer):
    policy = await save(session_factory, **HIGH_RISK)

    outcome = await runtime.dispatcher.dispatch(violation())

    assert outcome.state == DispatchState.COMPLETED
    [fired] = outcome.fired
    assert fired.policy_id == policy.id
    assert [(r.action_order, r.scheduled_at) for r in fired.records] == [
        (1, T0),
        (2, T0 + timedelta(minutes=30)),
    ]

    executed = await runtime.worker.run_pending()
    assert [(r.action_order, r.status) for r in executed] == [(1, ExecutionStatus.EXECUTED)]
    assert len(mailer.sent) == 1
    escalate_key = ExecutionKey(policy.id, "evt-1", 2)
    assert (await runtime.ledger.get(escalate_key)).status == ExecutionStatus.PENDING

    clock.advance(minutes=29)
    assert await runtime.worker.run_pending() == []

    clock.advance(minutes=1)
    executed = await runtime.worker.run_pending()
    assert [(r.action_order, r.status) for r in executed] == [(2, ExecutionStatus.EXECUTED)]

    [incident] = await SqlIncidentStore(session_factory).list_for_subject("alice")
    assert incident.severity == "Critical"
    assert len(mailer.sent) == 2
    assert mailer.sent[1]["recipients"] == ["ciso@example.com"]
    assert mailer.sent[1]["subject"] == "ESCALATED SECURITY INCIDENT - High risk critical violation"
    assert incident.id in mailer.sent[1]["body"]


@pytest.mark.asyncio
async def test_conditions_not_met(runtime, session_factory):
    await save(session_factory, **HIGH_RISK)

    outcome = await runtime.dispatcher.dispatch(violation(risk_score=50))

    assert outcome.state == DispatchState.COMPLETED
    assert [p.status for p in outcome.policies] == [PolicyOutcomeStatus.SKIPPED]
    assert outcome.fired == []
    assert len(runtime.queue) == 0


@pytest.mark.asyncio
async def test_no_applicable_policy_rejects(runtime, session_factory):
    await save(session_factory, **{**HIGH_RISK, "target_id": "Finance"})

    outcome = await runtime.dispatcher.dispatch(violation())

    assert outcome.state == DispatchState.REJECTED
    assert outcome.policies == []


@pytest.mark.asyncio
async def test_blank_subject_aborts(runtime, session_factory):
    await save(session_factory, name="Everyone", level="global")

    outcome = await runtime.dispatcher.dispatch(violation(user_id=" "))

    assert outcome.state == DispatchState.ABORTED
    assert outcome.error


@pytest.mark.asyncio
async def test_redelivered_event_does_not_fire_twice(runtime, session_factory, mailer):
    policy = await save(session_factory, **HIGH_RISK)

    await runtime.dispatcher.dispatch(violation())
    second = await runtime.dispatcher.dispatch(violation())

    assert second.fired[0].records == []
    await runtime.worker.run_pending()
    assert len(mailer.sent) == 1
    assert len(await runtime.ledger.records_for_policy(policy.id)) == 2


@pytest.mark.asyncio
async def test_policies_fire_in_priority_order(runtime, session_factory):
    low = await save(session_factory, name="Baseline", level="global", priority=1, actions=[{"type": "log_detailed_activity"}])
    high = await save(session_factory, **HIGH_RISK)
    user = await save(
        session_factory,
        name="Watch alice",
        level="user",
        target_id="alice",
        priority=10,
        actions=[{"type": "increase_monitoring"}],
    )

    outcome = await runtime.dispatcher.dispatch(violation())

    assert [p.policy_id for p in outcome.fired] == [user.id, high.id, low.id]


@pytest.mark.asyncio
async def test_deactivated_before_due_sends_nothing(runtime, session_factory, clock, mailer):
    policy = await save(session_factory, **HIGH_RISK)
    await runtime.dispatcher.dispatch(violation())
    await runtime.worker.run_pending()

    async with session_factory() as session:
        await PolicyRepository(session).set_active(policy.id, False)
        await session.commit()

    clock.advance(minutes=30)
    [record] = await runtime.worker.run_pending()

    assert record.status == ExecutionStatus.FAILED
    assert record.error == "policy_deactivated"
    assert await SqlIncidentStore(session_factory).list_for_subject("alice") == []
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_scheduling_failure_is_per_policy(runtime, session_factory):
    await save(session_factory, **HIGH_RISK)
    await save(session_factory, name="Baseline", level="global", actions=[{"type": "log_detailed_activity"}])
    runtime.queue.close()

    outcome = await runtime.dispatcher.dispatch(violation())

    assert outcome.state == DispatchState.COMPLETED
    assert [p.status for p in outcome.policies] == [
        PolicyOutcomeStatus.SCHEDULING_FAILED,
        PolicyOutcomeStatus.SCHEDULING_FAILED,
    ]
    assert outcome.policies[0].error.startswith("SchedulingError")


@pytest.mark.asyncio
async def test_manual_only_policy(runtime, session_factory):
    policy = await save(
        session_factory,
        name="Manual lockdown",
        level="global",
        requires_manual_trigger=True,
        actions=[{"type": "disable_access"}],
    )

    automatic = await runtime.dispatcher.dispatch(violation())
    manual = await runtime.dispatcher.dispatch(
        TriggerEvent(id="evt-m", subject={"user_id": "alice"}, kind="manual")
    )

    assert automatic.state == DispatchState.REJECTED
    assert [p.policy_id for p in manual.fired] == [policy.id]


@pytest.mark.asyncio
async def test_dispatch_manual_skips_conditions(runtime, session_factory):
    policy = await save(session_factory, **HIGH_RISK)
    event = TriggerEvent(id="evt-m", subject={"user_id": "bob"}, kind="manual")

    outcome = await runtime.dispatcher.dispatch_manual(policy, event)

    assert outcome.state == DispatchState.COMPLETED
    assert len(outcome.fired[0].records) == 2


@pytest.mark.asyncio
async def test_dispatch_many(runtime, session_factory):
    await save(session_factory, **HIGH_RISK)
    events = [violation(event_id=f"evt-{n}") for n in range(5)] + [violation(event_id="evt-low", risk_score=10)]

    outcomes = await runtime.dispatcher.dispatch_many(events)

    assert [o.trigger_event_id for o in outcomes] == [e.id for e in events]
    assert sum(len(o.fired) for o in outcomes) == 5
    assert len(runtime.queue) == 10
