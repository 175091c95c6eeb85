"""Policy management API routes."""

from __future__ import annotations

import uuid
from datetime import timedelta

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from insiderguard.api.deps import get_runtime, session_dependency
from insiderguard.config import Settings, get_settings
from insiderguard.core.clock import utcnow
from insiderguard.dispatch.dispatcher import DispatchOutcome
from insiderguard.domain.models import (
    DomainModel,
    EventKind,
    EventMetrics,
    ExecutionRecord,
    Policy,
    PolicyLevel,
    Subject,
    TriggerEvent,
)
from insiderguard.policies.repository import PolicyRepository, PolicyStats, PolicySummary
from insiderguard.runtime import Runtime

router = APIRouter()
logger = structlog.get_logger()


# -- Request / Response Models --


class ToggleResponse(DomainModel):
    id: int
    name: str
    is_active: bool


class ManualTriggerRequest(DomainModel):
    subject_id: str = Field(min_length=1)
    department: str | None = None
    role: str | None = None
    event_id: str | None = None
    metrics: EventMetrics = Field(default_factory=EventMetrics)


# -- Helpers --


async def _with_stats(
    policies: list[Policy], runtime: Runtime, settings: Settings
) -> list[PolicySummary]:
    since = utcnow() - timedelta(days=settings.recent_executions_days)
    counts = await runtime.ledger.recent_counts([p.id for p in policies if p.id is not None], since)
    return [
        PolicySummary.model_validate(
            {
                **p.model_dump(),
                "stats": PolicyStats(
                    conditions=len(p.conditions),
                    actions=len(p.actions),
                    recent_executions=counts.get(p.id or 0, 0),
                ),
            }
        )
        for p in policies
    ]


def _check_escalations(policy: Policy, settings: Settings) -> None:
    orders = policy.unaddressed_escalations(settings.management_recipients)
    if orders:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=(
                "escalate_incident action(s) "
                f"{', '.join(str(o) for o in orders)} notify management but no "
                "management recipients are configured"
            ),
        )


def _not_found(policy_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND, detail=f"Policy {policy_id} not found"
    )


# -- Endpoints --


@router.get("/policies", response_model=list[PolicySummary])
async def list_policies(
    level: PolicyLevel | None = Query(default=None),  # noqa: B008
    active: bool | None = Query(default=None),  # noqa: B008
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> list[PolicySummary]:
    """List policies with condition/action counts and recent executions."""
    policies = await PolicyRepository(session).list(level=level, active=active)
    return await _with_stats(policies, runtime, settings)


@router.get("/policies/effective/{employee_id}", response_model=list[Policy])
async def effective_policies(
    employee_id: str,
    department: str | None = Query(default=None),  # noqa: B008
    role: str | None = Query(default=None),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> list[Policy]:
    """Every active policy that can apply to the employee, in resolution order."""
    subject = Subject(user_id=employee_id, department=department, role=role)
    # Manual events see manual-only policies too
    return await runtime.resolver.resolve(subject, EventKind.MANUAL)


@router.get("/policies/{policy_id}", response_model=PolicySummary)
async def get_policy(
    policy_id: int,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> PolicySummary:
    policy = await PolicyRepository(session).get(policy_id)
    if policy is None:
        raise _not_found(policy_id)
    return (await _with_stats([policy], runtime, settings))[0]


@router.post("/policies", response_model=PolicySummary, status_code=status.HTTP_201_CREATED)
async def create_policy(
    body: Policy,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> PolicySummary:
    _check_escalations(body, settings)
    policy = await PolicyRepository(session).create(body)
    await session.commit()
    logger.info("policy_created", policy_id=policy.id, name=policy.name, level=policy.level.value)
    return (await _with_stats([policy], runtime, settings))[0]


@router.put("/policies/{policy_id}", response_model=PolicySummary)
async def update_policy(
    policy_id: int,
    body: Policy,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> PolicySummary:
    _check_escalations(body, settings)
    policy = await PolicyRepository(session).update(policy_id, body)
    if policy is None:
        raise _not_found(policy_id)
    await session.commit()
    logger.info("policy_updated", policy_id=policy_id)
    return (await _with_stats([policy], runtime, settings))[0]


@router.delete("/policies/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: int,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> Response:
    if not await PolicyRepository(session).delete(policy_id):
        raise _not_found(policy_id)
    await session.commit()
    logger.info("policy_deleted", policy_id=policy_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/policies/{policy_id}/toggle", response_model=ToggleResponse)
async def toggle_policy(
    policy_id: int,
    session: AsyncSession = Depends(session_dependency),  # noqa: B008
) -> ToggleResponse:
    policy = await PolicyRepository(session).toggle(policy_id)
    if policy is None:
        raise _not_found(policy_id)
    await session.commit()
    logger.info("policy_toggled", policy_id=policy_id, is_active=policy.is_active)
    return ToggleResponse(id=policy_id, name=policy.name, is_active=policy.is_active)


@router.post("/policies/{policy_id}/trigger", response_model=DispatchOutcome)
async def trigger_policy(
    policy_id: int,
    body: ManualTriggerRequest,
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> DispatchOutcome:
    """Run a policy's actions for one subject without evaluating its conditions."""
    policy = await runtime.resolver.get(policy_id)
    if policy is None:
        raise _not_found(policy_id)
    if not policy.is_active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=f"Policy {policy_id} is not active"
        )

    event = TriggerEvent(
        id=body.event_id or str(uuid.uuid4()),
        subject=Subject(user_id=body.subject_id, department=body.department, role=body.role),
        kind=EventKind.MANUAL,
        metrics=body.metrics,
    )
    return await runtime.dispatcher.dispatch_manual(policy, event)


@router.get("/policies/{policy_id}/executions", response_model=list[ExecutionRecord])
async def list_executions(
    policy_id: int,
    limit: int = Query(default=100, ge=1, le=1000),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> list[ExecutionRecord]:
    """Ledger records for a policy, newest first. Survives policy deletion."""
    return await runtime.ledger.records_for_policy(policy_id, limit=limit)
