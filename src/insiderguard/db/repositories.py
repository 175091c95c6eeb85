"""
SQL implementations of the action collaborators.

Each store owns short transactions on a session factory so handlers can
be called from the worker without a request-scoped session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insiderguard.actions.collaborators import (
    AccessRestriction,
    AuditEntry,
    Incident,
    MonitoringWindow,
    SystemNotification,
)
from insiderguard.core.clock import utcnow
from insiderguard.db import models as db_models
from insiderguard.db.session import dialect_insert
from insiderguard.domain.models import MONITORING_LEVEL_RANKS

logger = structlog.get_logger()

_EXECUTION_KEY = ["policy_id", "trigger_event_id", "action_order"]


def _level_rank(column: Any) -> Any:
    return case(MONITORING_LEVEL_RANKS, value=column, else_=0)


class SqlIncidentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_incident(self, incident: Incident) -> str:
        """Insert the incident unless one exists for its execution key.

        Returns the id of the stored incident, which is the earlier one
        when the key was already used.
        """
        table = db_models.IncidentModel
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(table).values(
                id=incident.id,
                subject_id=incident.subject_id,
                policy_id=incident.policy_id,
                trigger_event_id=incident.trigger_event_id,
                action_order=incident.action_order,
                title=incident.title,
                escalation_level=incident.escalation_level,
                severity=incident.severity,
                status=incident.status,
                details=incident.details,
                created_at=incident.created_at or utcnow(),
            )
            if incident.policy_id is not None:
                stmt = stmt.on_conflict_do_nothing(index_elements=_EXECUTION_KEY)
            result = await session.execute(stmt)
            incident_id = incident.id
            if result.rowcount == 0:  # type: ignore[attr-defined]
                incident_id = (
                    await session.execute(
                        select(table.id).where(
                            table.policy_id == incident.policy_id,
                            table.trigger_event_id == incident.trigger_event_id,
                            table.action_order == incident.action_order,
                        )
                    )
                ).scalar_one()
                logger.info(
                    "incident_exists",
                    incident_id=incident_id,
                    policy_id=incident.policy_id,
                    trigger_event_id=incident.trigger_event_id,
                )
            await session.commit()
        return incident_id

    async def list_for_subject(self, subject_id: str) -> list[Incident]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(db_models.IncidentModel)
                .where(db_models.IncidentModel.subject_id == subject_id)
                .order_by(db_models.IncidentModel.created_at)
            )
            return [
                Incident(
                    id=m.id,
                    subject_id=m.subject_id,
                    title=m.title,
                    escalation_level=m.escalation_level,
                    severity=m.severity,
                    policy_id=m.policy_id,
                    trigger_event_id=m.trigger_event_id,
                    action_order=m.action_order,
                    status=m.status,
                    details=m.details or {},
                    created_at=m.created_at,
                )
                for m in result.scalars().all()
            ]


class SqlMonitoringStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_window(self, subject_id: str) -> MonitoringWindow | None:
        async with self._session_factory() as session:
            model = await session.get(db_models.MonitoringWindowModel, subject_id)
            if model is None:
                return None
            return MonitoringWindow(
                subject_id=model.subject_id,
                monitoring_level=model.monitoring_level,
                expires_at=model.expires_at,
                policy_id=model.policy_id,
            )

    async def extend_window(self, window: MonitoringWindow, now: datetime) -> MonitoringWindow:
        """Upsert the subject's window in one statement.

        The stored expiry becomes the later of the two. While the stored
        window is active its level is only ever raised; an expired window
        is replaced outright.
        """
        table = db_models.MonitoringWindowModel
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(table).values(
                subject_id=window.subject_id,
                monitoring_level=window.monitoring_level,
                expires_at=window.expires_at,
                policy_id=window.policy_id,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            new = stmt.excluded
            active = table.expires_at > now
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.subject_id],
                set_={
                    "expires_at": case(
                        (table.expires_at > new.expires_at, table.expires_at),
                        else_=new.expires_at,
                    ),
                    "monitoring_level": case(
                        (
                            and_(
                                active,
                                _level_rank(table.monitoring_level)
                                > _level_rank(new.monitoring_level),
                            ),
                            table.monitoring_level,
                        ),
                        else_=new.monitoring_level,
                    ),
                    "policy_id": new.policy_id,
                    "updated_at": utcnow(),
                },
            )
            await session.execute(stmt)
            stored = (
                await session.execute(select(table).where(table.subject_id == window.subject_id))
            ).scalar_one()
            result = MonitoringWindow(
                subject_id=stored.subject_id,
                monitoring_level=stored.monitoring_level,
                expires_at=stored.expires_at,
                policy_id=stored.policy_id,
            )
            await session.commit()
        return result


class SqlAccessControlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def disable_access(self, restriction: AccessRestriction) -> int:
        async with self._session_factory() as session:
            model = db_models.AccessRestrictionModel(
                subject_id=restriction.subject_id,
                access_type=restriction.access_type,
                reason=restriction.reason,
                policy_id=restriction.policy_id,
                trigger_event_id=restriction.trigger_event_id,
                disabled_at=restriction.disabled_at or utcnow(),
            )
            session.add(model)
            await session.commit()
            return model.id

    async def enable_access(
        self, subject_id: str, enabled_by: str, access_type: str | None = None
    ) -> int:
        """Lift active restrictions for a subject. Returns how many were lifted."""
        stmt = update(db_models.AccessRestrictionModel).where(
            db_models.AccessRestrictionModel.subject_id == subject_id,
            db_models.AccessRestrictionModel.enabled_at.is_(None),
        )
        if access_type is not None:
            stmt = stmt.where(db_models.AccessRestrictionModel.access_type == access_type)
        stmt = stmt.values(enabled_at=utcnow(), enabled_by=enabled_by)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount  # type: ignore[attr-defined]

    async def active_restrictions(self, subject_id: str) -> list[AccessRestriction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(db_models.AccessRestrictionModel)
                .where(
                    db_models.AccessRestrictionModel.subject_id == subject_id,
                    db_models.AccessRestrictionModel.enabled_at.is_(None),
                )
                .order_by(db_models.AccessRestrictionModel.id)
            )
            return [
                AccessRestriction(
                    id=m.id,
                    subject_id=m.subject_id,
                    access_type=m.access_type,
                    reason=m.reason,
                    policy_id=m.policy_id,
                    trigger_event_id=m.trigger_event_id,
                    disabled_at=m.disabled_at,
                )
                for m in result.scalars().all()
            ]


class SqlAuditSink:
    """Insert-only audit log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, entry: AuditEntry) -> str:
        async with self._session_factory() as session:
            session.add(
                db_models.AuditEntryModel(
                    id=entry.id,
                    timestamp=entry.timestamp,
                    level=entry.level,
                    action=entry.action,
                    subject_id=entry.subject_id,
                    policy_id=entry.policy_id,
                    trigger_event_id=entry.trigger_event_id,
                    details=entry.details,
                )
            )
            await session.commit()
        return entry.id

    async def entries_for_subject(self, subject_id: str) -> list[AuditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(db_models.AuditEntryModel)
                .where(db_models.AuditEntryModel.subject_id == subject_id)
                .order_by(db_models.AuditEntryModel.timestamp)
            )
            return [
                AuditEntry(
                    id=m.id,
                    timestamp=m.timestamp,
                    level=m.level,
                    action=m.action,
                    subject_id=m.subject_id,
                    policy_id=m.policy_id,
                    trigger_event_id=m.trigger_event_id,
                    details=m.details or {},
                )
                for m in result.scalars().all()
            ]


def _to_notification(model: db_models.SystemNotificationModel) -> SystemNotification:
    return SystemNotification(
        id=model.id,
        recipient_role=model.recipient_role,
        notification_type=model.notification_type,
        priority=model.priority,
        title=model.title,
        message=model.message,
        subject_id=model.subject_id,
        policy_id=model.policy_id,
        trigger_event_id=model.trigger_event_id,
        action_order=model.action_order,
        details=model.details or {},
        is_read=model.is_read,
        read_at=model.read_at,
        created_at=model.created_at,
    )


class SqlNotificationStore:
    """In-app notifications, one row per (execution key, recipient role)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def publish(self, notification: SystemNotification) -> int:
        table = db_models.SystemNotificationModel
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = insert(table).values(
                recipient_role=notification.recipient_role,
                notification_type=notification.notification_type,
                priority=notification.priority,
                title=notification.title,
                message=notification.message,
                subject_id=notification.subject_id,
                policy_id=notification.policy_id,
                trigger_event_id=notification.trigger_event_id,
                action_order=notification.action_order,
                details=notification.details,
                is_read=False,
                created_at=notification.created_at or utcnow(),
            )
            if notification.policy_id is not None:
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=[*_EXECUTION_KEY, "recipient_role"]
                )
            await session.execute(stmt)
            notification_id = (
                await session.execute(
                    select(table.id)
                    .where(
                        table.recipient_role == notification.recipient_role,
                        table.policy_id == notification.policy_id,
                        table.trigger_event_id == notification.trigger_event_id,
                        table.action_order == notification.action_order,
                    )
                    .order_by(table.id.desc())
                    .limit(1)
                )
            ).scalar_one()
            await session.commit()

        logger.info(
            "system_notification_published",
            notification_id=notification_id,
            recipient_role=notification.recipient_role,
            priority=notification.priority,
        )
        return notification_id

    async def list_for_role(
        self, role: str, *, unread_only: bool = False, limit: int = 100
    ) -> list[SystemNotification]:
        table = db_models.SystemNotificationModel
        stmt = select(table).where(table.recipient_role == role)
        if unread_only:
            stmt = stmt.where(table.is_read.is_(False))
        stmt = stmt.order_by(table.created_at.desc(), table.id.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_notification(m) for m in result.scalars().all()]

    async def mark_read(self, notification_id: int) -> SystemNotification | None:
        async with self._session_factory() as session:
            model = await session.get(db_models.SystemNotificationModel, notification_id)
            if model is None:
                return None
            if not model.is_read:
                model.is_read = True
                model.read_at = utcnow()
                await session.commit()
            return _to_notification(model)
