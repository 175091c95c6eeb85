"""Event intake for upstream producers (violation detector, risk scorer, email scanner)."""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field

from insiderguard.api.deps import get_runtime
from insiderguard.dispatch.dispatcher import DispatchOutcome, DispatchState
from insiderguard.domain.models import DomainModel, EventKind, EventMetrics, Subject, TriggerEvent
from insiderguard.runtime import Runtime

router = APIRouter()
logger = structlog.get_logger()


class EventSubmission(DomainModel):
    event_id: str | None = None
    subject_id: str = Field(min_length=1)
    department: str | None = None
    role: str | None = None
    event_kind: EventKind
    metrics: EventMetrics = Field(default_factory=EventMetrics)

    def to_event(self) -> TriggerEvent:
        return TriggerEvent(
            id=self.event_id or str(uuid.uuid4()),
            subject=Subject(user_id=self.subject_id, department=self.department, role=self.role),
            kind=self.event_kind,
            metrics=self.metrics,
        )


@router.post("/events", response_model=DispatchOutcome, status_code=status.HTTP_200_OK)
async def submit_event(
    body: EventSubmission,
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> DispatchOutcome:
    """Dispatch one event. Returns the per-policy outcome summary."""
    outcome = await runtime.dispatcher.dispatch(body.to_event())
    if outcome.state == DispatchState.ABORTED:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=outcome.error)
    return outcome


@router.post("/events/batch", response_model=list[DispatchOutcome])
async def submit_events(
    body: list[EventSubmission],
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> list[DispatchOutcome]:
    """Dispatch a batch of events concurrently. Aborted events are reported, not raised."""
    outcomes = await runtime.dispatcher.dispatch_many(item.to_event() for item in body)
    logger.info(
        "event_batch_dispatched",
        events=len(outcomes),
        aborted=sum(1 for o in outcomes if o.state == DispatchState.ABORTED),
    )
    return outcomes
