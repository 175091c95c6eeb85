"""
Policy repository.

CRUD on security policies and their ordered conditions/actions. Domain
validation (target invariant, action config, contiguous ranks) happens on
the Policy model before anything reaches the database.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insiderguard.core.clock import utcnow
from insiderguard.db.models import PolicyActionModel, PolicyConditionModel, PolicyModel
from insiderguard.domain.models import DomainModel, Policy, PolicyLevel


class PolicyStats(DomainModel):
    conditions: int
    actions: int
    recent_executions: int


class PolicySummary(Policy):
    """Policy plus the counters shown by the management UI."""

    stats: PolicyStats


def _conditions_to_models(policy: Policy) -> list[PolicyConditionModel]:
    return [
        PolicyConditionModel(
            condition_type=c.type.value,
            operator=c.operator.value,
            value=c.value,
            logical_operator=c.logical_operator.value,
            order=c.order,
        )
        for c in policy.conditions
    ]


def _actions_to_models(policy: Policy) -> list[PolicyActionModel]:
    return [
        PolicyActionModel(
            action_type=a.type,
            config=a.config.model_dump(mode="json"),
            order=a.order,
            delay_minutes=a.delay,
            is_enabled=a.is_enabled,
        )
        for a in policy.actions
    ]


def to_domain(model: PolicyModel) -> Policy:
    return Policy.model_validate(
        {
            "id": model.id,
            "name": model.name,
            "description": model.description,
            "level": model.level,
            "target_id": model.target_id,
            "target_type": model.target_type,
            "priority": model.priority,
            "is_active": model.is_active,
            "requires_manual_trigger": model.requires_manual_trigger,
            "created_by": model.created_by,
            "created_at": model.created_at,
            "updated_at": model.updated_at,
            "conditions": [
                {
                    "type": c.condition_type,
                    "operator": c.operator,
                    "value": c.value,
                    "logical_operator": c.logical_operator,
                    "order": c.order,
                }
                for c in model.conditions
            ],
            "actions": [
                {
                    "type": a.action_type,
                    "config": a.config or {},
                    "order": a.order,
                    "delay": a.delay_minutes,
                    "is_enabled": a.is_enabled,
                }
                for a in model.actions
            ],
        }
    )


class PolicyRepository:
    """Persistence helpers for security policies."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _load(self, policy_id: int) -> PolicyModel | None:
        result = await self.session.execute(select(PolicyModel).where(PolicyModel.id == policy_id))
        return result.scalar_one_or_none()

    async def list(
        self, *, level: PolicyLevel | None = None, active: bool | None = None
    ) -> list[Policy]:
        stmt = select(PolicyModel)
        if level is not None:
            stmt = stmt.where(PolicyModel.level == level.value)
        if active is not None:
            stmt = stmt.where(PolicyModel.is_active == active)
        stmt = stmt.order_by(PolicyModel.priority.desc(), PolicyModel.id)
        result = await self.session.execute(stmt)
        return [to_domain(m) for m in result.scalars().all()]

    async def get(self, policy_id: int) -> Policy | None:
        model = await self._load(policy_id)
        return to_domain(model) if model else None

    async def create(self, policy: Policy, *, created_by: str | None = None) -> Policy:
        now = utcnow()
        model = PolicyModel(
            name=policy.name,
            description=policy.description,
            level=policy.level.value,
            target_id=policy.target_id,
            target_type=policy.target_type.value if policy.target_type else None,
            priority=policy.priority,
            is_active=policy.is_active,
            requires_manual_trigger=policy.requires_manual_trigger,
            created_by=created_by or policy.created_by,
            created_at=now,
            updated_at=now,
            conditions=_conditions_to_models(policy),
            actions=_actions_to_models(policy),
        )
        self.session.add(model)
        await self.session.flush()
        return to_domain(model)

    async def update(self, policy_id: int, policy: Policy) -> Policy | None:
        """Replace a policy's definition. Conditions and actions are rewritten as given."""
        model = await self._load(policy_id)
        if model is None:
            return None

        model.name = policy.name
        model.description = policy.description
        model.level = policy.level.value
        model.target_id = policy.target_id
        model.target_type = policy.target_type.value if policy.target_type else None
        model.priority = policy.priority
        model.is_active = policy.is_active
        model.requires_manual_trigger = policy.requires_manual_trigger
        model.updated_at = utcnow()
        model.conditions = _conditions_to_models(policy)
        model.actions = _actions_to_models(policy)
        await self.session.flush()
        return to_domain(model)

    async def delete(self, policy_id: int) -> bool:
        model = await self._load(policy_id)
        if model is None:
            return False
        await self.session.delete(model)
        await self.session.flush()
        return True

    async def set_active(self, policy_id: int, active: bool) -> Policy | None:
        model = await self._load(policy_id)
        if model is None:
            return None
        model.is_active = active
        model.updated_at = utcnow()
        await self.session.flush()
        return to_domain(model)

    async def toggle(self, policy_id: int) -> Policy | None:
        model = await self._load(policy_id)
        if model is None:
            return None
        return await self.set_active(policy_id, not model.is_active)


class SqlPolicySource:
    """PolicySource reading committed policies, one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def active_policies(self) -> list[Policy]:
        async with self._session_factory() as session:
            return await PolicyRepository(session).list(active=True)

    async def get(self, policy_id: int) -> Policy | None:
        async with self._session_factory() as session:
            return await PolicyRepository(session).get(policy_id)
