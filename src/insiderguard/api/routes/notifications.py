"""In-app notifications raised by immediate_alert actions."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field

from insiderguard.actions.collaborators import SystemNotification
from insiderguard.api.deps import get_runtime
from insiderguard.domain.models import DomainModel
from insiderguard.runtime import Runtime

router = APIRouter()
logger = structlog.get_logger()


class NotificationResponse(DomainModel):
    id: int
    recipient_role: str
    notification_type: str
    priority: str
    title: str
    message: str
    subject_id: str | None = None
    policy_id: int | None = None
    trigger_event_id: str | None = None
    action_order: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_notification(cls, notification: SystemNotification) -> NotificationResponse:
        return cls(**asdict(notification))


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    role: str = Query(min_length=1),  # noqa: B008
    unread: bool = Query(default=False),  # noqa: B008
    limit: int = Query(default=100, ge=1, le=1000),  # noqa: B008
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> list[NotificationResponse]:
    """Notifications addressed to a role, newest first."""
    notifications = await runtime.notifications.list_for_role(
        role, unread_only=unread, limit=limit
    )
    return [NotificationResponse.from_notification(n) for n in notifications]


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: int,
    runtime: Runtime = Depends(get_runtime),  # noqa: B008
) -> NotificationResponse:
    notification = await runtime.notifications.mark_read(notification_id)
    if notification is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification {notification_id} not found",
        )
    logger.info("notification_read", notification_id=notification_id)
    return NotificationResponse.from_notification(notification)
