"""Tests for policy selection and ranking."""

from unittest.mock import AsyncMock

import pytest
from insiderguard.core.errors import ResolutionError
from insiderguard.domain.models import EventKind, Policy, Subject
from insiderguard.policies.resolver import (
    InMemoryPolicySource,
    PolicyResolver,
    applies_to,
    rank_policies,
    select_applicable,
)

ALICE = Subject(user_id="alice", department="Engineering", role="admin")


def make_policy(policy_id, level="global", priority=0, **kwargs):
    return Policy(id=policy_id, name=f"policy-{policy_id}", level=level, priority=priority, **kwargs)


class TestAppliesTo:
    def test_global_applies_to_everyone(self):
        assert applies_to(make_policy(1), Subject(user_id="bob"))

    def test_department_match(self):
        policy = make_policy(1, level="group", target_id="Engineering")

        assert applies_to(policy, ALICE)
        assert not applies_to(policy, Subject(user_id="bob", department="Finance"))
        assert not applies_to(policy, Subject(user_id="bob"))

    def test_role_match(self):
        policy = make_policy(1, level="group", target_id="admin", target_type="role")

        assert applies_to(policy, ALICE)
        # A department with the same name as the role does not count
        assert not applies_to(policy, Subject(user_id="bob", department="admin"))

    def test_user_match(self):
        policy = make_policy(1, level="user", target_id="alice")

        assert applies_to(policy, ALICE)
        assert not applies_to(policy, Subject(user_id="bob", department="Engineering"))


class TestSelectApplicable:
    def test_inactive_excluded(self):
        policies = [make_policy(1), make_policy(2, is_active=False)]

        assert [p.id for p in select_applicable(policies, ALICE, EventKind.VIOLATION_CREATED)] == [1]

    def test_manual_only_policies_need_manual_event(self):
        policies = [make_policy(1), make_policy(2, requires_manual_trigger=True)]

        automatic = select_applicable(policies, ALICE, EventKind.RISK_UPDATED)
        manual = select_applicable(policies, ALICE, EventKind.MANUAL)

        assert [p.id for p in automatic] == [1]
        assert [p.id for p in manual] == [1, 2]


class TestRanking:
    def test_priority_descending(self):
        p1 = make_policy(1, level="global", priority=10)
        p2 = make_policy(2, level="group", priority=20, target_id="Engineering")

        assert rank_policies([p1, p2]) == [p2, p1]

    def test_specificity_breaks_priority_ties(self):
        global_ = make_policy(1, priority=5)
        group = make_policy(2, level="group", priority=5, target_id="Engineering")
        user = make_policy(3, level="user", priority=5, target_id="alice")

        assert [p.id for p in rank_policies([global_, group, user])] == [3, 2, 1]

    def test_id_breaks_remaining_ties(self):
        policies = [make_policy(9, priority=1), make_policy(4, priority=1), make_policy(6, priority=1)]

        assert [p.id for p in rank_policies(policies)] == [4, 6, 9]


class TestPolicyResolver:
    @pytest.mark.asyncio
    async def test_resolves_in_rank_order(self):
        source = InMemoryPolicySource(
            [
                make_policy(1, priority=10),
                make_policy(2, level="group", priority=20, target_id="Engineering"),
                make_policy(3, level="group", priority=99, target_id="Finance"),
            ]
        )

        resolved = await PolicyResolver(source).resolve(ALICE, EventKind.VIOLATION_CREATED)

        assert [p.id for p in resolved] == [2, 1]

    @pytest.mark.asyncio
    async def test_no_policies(self):
        resolved = await PolicyResolver(InMemoryPolicySource([])).resolve(ALICE, EventKind.MANUAL)

        assert resolved == []

    @pytest.mark.asyncio
    async def test_blank_user_id_raises(self):
        resolver = PolicyResolver(InMemoryPolicySource([make_policy(1)]))

        with pytest.raises(ResolutionError):
            await resolver.resolve(Subject(user_id="  "), EventKind.VIOLATION_CREATED)

    @pytest.mark.asyncio
    async def test_source_failure_raises_resolution_error(self):
        source = AsyncMock()
        source.active_policies.side_effect = ConnectionError("database down")

        with pytest.raises(ResolutionError) as exc_info:
            await PolicyResolver(source).resolve(ALICE, EventKind.VIOLATION_CREATED)

        assert exc_info.value.details["cause"] == "ConnectionError"

    @pytest.mark.asyncio
    async def test_get_delegates_to_source(self):
        policy = make_policy(5)
        resolver = PolicyResolver(InMemoryPolicySource([policy]))

        assert await resolver.get(5) == policy
        assert await resolver.get(6) is None
