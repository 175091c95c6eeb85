"""Tests for policy persistence."""

import pytest
from insiderguard.db.models import PolicyActionModel, PolicyConditionModel
from insiderguard.domain.models import Policy, PolicyLevel
from insiderguard.policies.repository import PolicyRepository, SqlPolicySource
from sqlalchemy import func, select

POLICY = Policy(
    name="Data hoarding",
    level="group",
    target_id="Finance",
    priority=5,
    conditions=[
        {"type": "data_access", "operator": "greater_than", "value": "500MB", "logical_operator": "OR"},
        {"type": "frequency", "operator": "greater_equal", "value": "10"},
    ],
    actions=[
        {"type": "increase_monitoring", "config": {"duration_hours": 12, "monitoring_level": "maximum"}},
        {"type": "email_alert", "delay": 15, "config": {"recipients": ["finance-sec@example.com"]}},
    ],
    created_by="admin",
)


async def count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_create_and_get_round_trip(session_factory):
    async with session_factory() as session:
        created = await PolicyRepository(session).create(POLICY)
        await session.commit()

    async with session_factory() as session:
        loaded = await PolicyRepository(session).get(created.id)

    assert loaded.id == created.id
    assert loaded.created_at is not None
    assert loaded.model_dump(exclude={"id", "created_at", "updated_at"}) == POLICY.model_dump(
        exclude={"id", "created_at", "updated_at"}
    )


@pytest.mark.asyncio
async def test_get_missing(session_factory):
    async with session_factory() as session:
        assert await PolicyRepository(session).get(404) is None


@pytest.mark.asyncio
async def test_update_replaces_children(session_factory):
    async with session_factory() as session:
        repo = PolicyRepository(session)
        created = await repo.create(POLICY)
        edited = POLICY.model_copy(
            update={"priority": 9, "actions": POLICY.actions[1:], "conditions": POLICY.conditions[:1]}
        )
        updated = await repo.update(created.id, Policy.model_validate(edited.model_dump()))
        await session.commit()

        assert updated.priority == 9
        assert [(a.order, a.type, a.delay) for a in updated.actions] == [(1, "email_alert", 15)]
        assert await count(session, PolicyActionModel) == 1
        assert await count(session, PolicyConditionModel) == 1


@pytest.mark.asyncio
async def test_update_missing(session_factory):
    async with session_factory() as session:
        assert await PolicyRepository(session).update(404, POLICY) is None


@pytest.mark.asyncio
async def test_toggle_and_list(session_factory):
    async with session_factory() as session:
        repo = PolicyRepository(session)
        first = await repo.create(POLICY)
        second = await repo.create(Policy(name="Everyone", level="global", priority=1))

        toggled = await repo.toggle(first.id)
        await session.commit()

        assert toggled.is_active is False
        assert [p.id for p in await repo.list()] == [first.id, second.id]
        assert [p.id for p in await repo.list(active=True)] == [second.id]
        assert [p.id for p in await repo.list(level=PolicyLevel.GROUP)] == [first.id]
        assert (await repo.toggle(first.id)).is_active is True
        assert await repo.toggle(404) is None


@pytest.mark.asyncio
async def test_delete_cascades(session_factory):
    async with session_factory() as session:
        repo = PolicyRepository(session)
        created = await repo.create(POLICY)
        await session.commit()

        assert await repo.delete(created.id) is True
        await session.commit()

        assert await repo.get(created.id) is None
        assert await count(session, PolicyConditionModel) == 0
        assert await count(session, PolicyActionModel) == 0
        assert await repo.delete(created.id) is False


@pytest.mark.asyncio
async def test_sql_policy_source(session_factory):
    async with session_factory() as session:
        repo = PolicyRepository(session)
        active = await repo.create(POLICY)
        inactive = await repo.create(Policy(name="Off", level="global", is_active=False))
        await session.commit()

    source = SqlPolicySource(session_factory)

    assert [p.id for p in await source.active_policies()] == [active.id]
    assert (await source.get(inactive.id)).name == "Off"
