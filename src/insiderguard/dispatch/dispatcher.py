"""
Trigger dispatcher.

Entry point for upstream producers. For one TriggerEvent:

    RECEIVED -> RESOLVING -> EVALUATING -> SCHEDULING -> COMPLETED
    RESOLVING -> REJECTED   (no applicable policy)
    RESOLVING -> ABORTED    (ResolutionError)

Each applicable policy is evaluated and scheduled independently; a
failure in one never stops the next. Nothing raises past `dispatch`: the
caller always gets a DispatchOutcome.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Iterable

import structlog
from pydantic import Field

from insiderguard.core.errors import ResolutionError, SchedulingError, describe_error
from insiderguard.domain.models import DomainModel, ExecutionRecord, Policy, TriggerEvent
from insiderguard.policies.evaluator import ConditionTreeResolver, EvaluationContext
from insiderguard.policies.resolver import PolicyResolver
from insiderguard.scheduling.scheduler import ActionScheduler

logger = structlog.get_logger()


class DispatchState(StrEnum):
    RECEIVED = "received"
    RESOLVING = "resolving"
    EVALUATING = "evaluating"
    SCHEDULING = "scheduling"
    COMPLETED = "completed"
    REJECTED = "rejected"
    ABORTED = "aborted"


class PolicyOutcomeStatus(StrEnum):
    SKIPPED = "skipped"
    SCHEDULED = "scheduled"
    SCHEDULING_FAILED = "scheduling_failed"
    ERROR = "error"


class PolicyOutcome(DomainModel):
    policy_id: int
    policy_name: str
    status: PolicyOutcomeStatus
    records: list[ExecutionRecord] = Field(default_factory=list)
    error: str | None = None


class DispatchOutcome(DomainModel):
    trigger_event_id: str
    state: DispatchState
    policies: list[PolicyOutcome] = Field(default_factory=list)
    error: str | None = None

    @property
    def fired(self) -> list[PolicyOutcome]:
        return [p for p in self.policies if p.status == PolicyOutcomeStatus.SCHEDULED]


class TriggerDispatcher:
    """Resolves, evaluates and schedules policies for incoming events."""

    def __init__(
        self,
        resolver: PolicyResolver,
        scheduler: ActionScheduler,
        *,
        tree: ConditionTreeResolver | None = None,
        business_hours_start: int = 8,
        business_hours_end: int = 18,
        concurrency: int = 10,
    ) -> None:
        self._resolver = resolver
        self._scheduler = scheduler
        self._tree = tree or ConditionTreeResolver()
        self._business_hours = (business_hours_start, business_hours_end)
        self._concurrency = concurrency

    def _context(self, event: TriggerEvent) -> EvaluationContext:
        start, end = self._business_hours
        return EvaluationContext.from_event(
            event, business_hours_start=start, business_hours_end=end
        )

    async def dispatch(self, event: TriggerEvent) -> DispatchOutcome:
        log = logger.bind(trigger_event_id=event.id, subject_id=event.subject.user_id)
        log.info("event_received", event_kind=event.kind.value, state=DispatchState.RECEIVED.value)
        log.debug("dispatch_state", state=DispatchState.RESOLVING.value)

        try:
            policies = await self._resolver.resolve(event.subject, event.kind)
        except ResolutionError as exc:
            log.warning("dispatch_aborted", error=exc.message, **exc.details)
            return DispatchOutcome(
                trigger_event_id=event.id, state=DispatchState.ABORTED, error=exc.message
            )

        if not policies:
            log.info("dispatch_rejected", reason="no_applicable_policies")
            return DispatchOutcome(trigger_event_id=event.id, state=DispatchState.REJECTED)

        log.debug("dispatch_state", state=DispatchState.EVALUATING.value, policies=len(policies))
        context = self._context(event)
        outcomes: list[PolicyOutcome] = []
        for policy in policies:
            if not self._tree.resolve(policy.conditions, context):
                log.debug("policy_skipped", policy_id=policy.id)
                outcomes.append(self._outcome(policy, PolicyOutcomeStatus.SKIPPED))
                continue

            log.info(
                "policy_triggered",
                policy_id=policy.id,
                policy_name=policy.name,
                state=DispatchState.SCHEDULING.value,
            )
            outcomes.append(await self._schedule(policy, event))

        log.info(
            "dispatch_completed",
            policies=len(outcomes),
            fired=sum(1 for o in outcomes if o.status == PolicyOutcomeStatus.SCHEDULED),
        )
        return DispatchOutcome(
            trigger_event_id=event.id, state=DispatchState.COMPLETED, policies=outcomes
        )

    async def dispatch_manual(self, policy: Policy, event: TriggerEvent) -> DispatchOutcome:
        """Schedule one policy's actions without evaluating its conditions."""
        log = logger.bind(trigger_event_id=event.id, subject_id=event.subject.user_id)
        log.info("policy_triggered_manually", policy_id=policy.id, policy_name=policy.name)
        outcome = await self._schedule(policy, event)
        return DispatchOutcome(
            trigger_event_id=event.id, state=DispatchState.COMPLETED, policies=[outcome]
        )

    async def dispatch_many(self, events: Iterable[TriggerEvent]) -> list[DispatchOutcome]:
        """Dispatch a batch concurrently, bounded by the configured concurrency."""
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(event: TriggerEvent) -> DispatchOutcome:
            async with semaphore:
                return await self.dispatch(event)

        return list(await asyncio.gather(*(_bounded(e) for e in events)))

    async def _schedule(self, policy: Policy, event: TriggerEvent) -> PolicyOutcome:
        try:
            records = await self._scheduler.schedule(policy, event)
        except SchedulingError as exc:
            return self._outcome(
                policy, PolicyOutcomeStatus.SCHEDULING_FAILED, error=describe_error(exc)
            )
        except Exception as exc:
            logger.error(
                "policy_dispatch_failed",
                policy_id=policy.id,
                trigger_event_id=event.id,
                error=describe_error(exc),
                exc_info=True,
            )
            return self._outcome(policy, PolicyOutcomeStatus.ERROR, error=describe_error(exc))
        return self._outcome(policy, PolicyOutcomeStatus.SCHEDULED, records=records)

    @staticmethod
    def _outcome(
        policy: Policy,
        status: PolicyOutcomeStatus,
        *,
        records: list[ExecutionRecord] | None = None,
        error: str | None = None,
    ) -> PolicyOutcome:
        return PolicyOutcome(
            policy_id=policy.id or 0,
            policy_name=policy.name,
            status=status,
            records=records or [],
            error=error,
        )
