"""Administrative actions on monitored subjects."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from pydantic import Field

from insiderguard.api.deps import get_runtime
from insiderguard.domain.models import DomainModel
from insiderguard.runtime import Runtime

router = APIRouter()
logger = structlog.get_logger()


class EnableAccessRequest(DomainModel):
    enabled_by: str = Field(min_length=1)
    access_type: str | None = None


class EnableAccessResponse(DomainModel):
    subject_id: str
    restrictions_lifted: int


@router.post("/subjects/{subject_id}/access/enable", response_model=EnableAccessResponse)
async def enable_access(
    subject_id: str,
    body: EnableAccessRequest,
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> EnableAccessResponse:
    """Lift access restrictions placed by disable_access actions."""
    lifted = await runtime.access.enable_access(subject_id, body.enabled_by, body.access_type)
    logger.warning(
        "access_enabled",
        subject_id=subject_id,
        enabled_by=body.enabled_by,
        access_type=body.access_type,
        restrictions_lifted=lifted,
    )
    return EnableAccessResponse(subject_id=subject_id, restrictions_lifted=lifted)
