"""Selects and ranks the policies that apply to an event's subject."""

from __future__ import annotations

from typing import Iterable, Protocol

import structlog

from insiderguard.core.errors import ResolutionError
from insiderguard.domain.models import EventKind, Policy, PolicyLevel, Subject, TargetType

logger = structlog.get_logger()

# Lower sorts first on equal priority
LEVEL_SPECIFICITY: dict[PolicyLevel, int] = {
    PolicyLevel.USER: 0,
    PolicyLevel.GROUP: 1,
    PolicyLevel.GLOBAL: 2,
}


class PolicySource(Protocol):
    async def active_policies(self) -> list[Policy]: ...

    async def get(self, policy_id: int) -> Policy | None: ...


class InMemoryPolicySource:
    """Policy source over a fixed list of policies."""

    def __init__(self, policies: Iterable[Policy]) -> None:
        self._policies = {p.id: p for p in policies if p.id is not None}

    async def active_policies(self) -> list[Policy]:
        return [p for p in self._policies.values() if p.is_active]

    async def get(self, policy_id: int) -> Policy | None:
        return self._policies.get(policy_id)


def applies_to(policy: Policy, subject: Subject) -> bool:
    if policy.level == PolicyLevel.GLOBAL:
        return True
    if policy.level == PolicyLevel.USER:
        return policy.target_id == subject.user_id
    if policy.target_type == TargetType.ROLE:
        return subject.role is not None and policy.target_id == subject.role
    return subject.department is not None and policy.target_id == subject.department


def select_applicable(
    policies: Iterable[Policy], subject: Subject, event_kind: EventKind
) -> list[Policy]:
    """Active policies scoped to the subject; manual-only policies need a manual event."""
    return [
        p
        for p in policies
        if p.is_active
        and applies_to(p, subject)
        and (not p.requires_manual_trigger or event_kind == EventKind.MANUAL)
    ]


def rank_policies(policies: Iterable[Policy]) -> list[Policy]:
    """Priority descending, then user > group > global, then id ascending."""
    return sorted(
        policies,
        key=lambda p: (-p.priority, LEVEL_SPECIFICITY[p.level], p.id if p.id is not None else 0),
    )


class PolicyResolver:
    """Resolves the ordered list of applicable policies for a subject."""

    def __init__(self, source: PolicySource) -> None:
        self._source = source

    async def resolve(self, subject: Subject, event_kind: EventKind) -> list[Policy]:
        if not subject.user_id or not subject.user_id.strip():
            raise ResolutionError("event subject has no user id")

        try:
            policies = await self._source.active_policies()
        except Exception as exc:
            raise ResolutionError(
                "policy lookup failed",
                details={"subject_id": subject.user_id, "cause": type(exc).__name__},
            ) from exc

        ranked = rank_policies(select_applicable(policies, subject, event_kind))
        logger.debug(
            "policies_resolved",
            subject_id=subject.user_id,
            event_kind=event_kind.value,
            policy_ids=[p.id for p in ranked],
        )
        return ranked

    async def get(self, policy_id: int) -> Policy | None:
        return await self._source.get(policy_id)
