"""
Handlers for the six policy action types.

Each handler performs exactly one kind of side effect through a
collaborator and returns a small details dict for the ledger record.
The ledger key guarantees each handler runs at most once per (policy,
event, action). Stores that create rows (incidents, system
notifications) are also keyed on it, so a failed key that is re-claimed
does not duplicate them.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any

import structlog

from insiderguard.actions.base import ActionContext, HandlerRegistry
from insiderguard.actions.collaborators import (
    AccessControlStore,
    AccessRestriction,
    AuditEntry,
    AuditSink,
    Collaborators,
    Incident,
    IncidentStore,
    MailService,
    MonitoringStore,
    MonitoringWindow,
    NotificationStore,
    SystemNotification,
)
from insiderguard.core.errors import ExecutionError, describe_error
from insiderguard.domain.models import ActionType, TriggerEvent

logger = structlog.get_logger()

ESCALATION_SEVERITY = {
    "normal": "Medium",
    "high": "High",
    "immediate": "Critical",
    "critical": "Critical",
}


def render_event_summary(policy_name: str, event: TriggerEvent) -> str:
    """Plain-text body shared by the alert handlers."""
    metrics = event.metrics
    lines = [
        f"Policy '{policy_name}' was triggered.",
        "",
        f"Employee: {event.subject.user_id}",
    ]
    if event.subject.department:
        lines.append(f"Department: {event.subject.department}")
    lines.append(f"Event: {event.kind.value} ({event.id})")
    if metrics.risk_score is not None:
        lines.append(f"Risk score: {metrics.risk_score:g}")
    if metrics.severity is not None:
        lines.append(f"Severity: {metrics.severity.value}")
    if metrics.data_volume_gb is not None:
        lines.append(f"Data volume: {metrics.data_volume_gb:g} GB")
    if metrics.recent_event_count is not None:
        lines.append(f"Recent events: {metrics.recent_event_count}")
    lines.append(f"Observed at: {metrics.timestamp.isoformat()}")
    return "\n".join(lines)


class EmailAlertHandler:
    action_type = ActionType.EMAIL_ALERT

    def __init__(self, mail: MailService) -> None:
        self._mail = mail

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        message_id = await self._mail.send(
            list(config.recipients),
            config.subject,
            render_event_summary(ctx.policy.name, ctx.event),
        )
        return {"recipients": list(config.recipients), "message_id": message_id}


class EscalateIncidentHandler:
    """Raises an incident and, if configured, emails management about it.

    The incident is stored once per execution key, so a re-claimed key
    finds the incident its earlier attempt created. Management
    notification never fails the action once the incident exists.
    """

    action_type = ActionType.ESCALATE_INCIDENT

    def __init__(
        self,
        incidents: IncidentStore,
        mail: MailService,
        management_recipients: list[str] | None = None,
    ) -> None:
        self._incidents = incidents
        self._mail = mail
        self._management_recipients = management_recipients or []

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        incident = Incident(
            id=str(uuid.uuid4()),
            subject_id=ctx.subject_id,
            title=f"Policy '{ctx.policy.name}' escalated for {ctx.subject_id}",
            escalation_level=config.escalation_level,
            severity=ESCALATION_SEVERITY[config.escalation_level],
            policy_id=ctx.policy.id,
            trigger_event_id=ctx.event.id,
            action_order=ctx.action.order,
            details={"event": ctx.event.snapshot()},
            created_at=ctx.now,
        )
        incident_id = await self._incidents.create_incident(incident)
        details: dict[str, Any] = {
            "incident_id": incident_id,
            "escalation_level": config.escalation_level,
        }

        if config.notify_management:
            details.update(await self._notify_management(ctx, incident_id))

        logger.info(
            "incident_escalated",
            incident_id=incident_id,
            subject_id=ctx.subject_id,
            escalation_level=config.escalation_level,
            notify_management=config.notify_management,
        )
        return details

    async def _notify_management(self, ctx: ActionContext, incident_id: str) -> dict[str, Any]:
        config = ctx.action.config
        recipients = list(config.management_recipients) or self._management_recipients
        if not recipients:
            logger.warning(
                "management_notification_skipped",
                incident_id=incident_id,
                policy_id=ctx.policy.id,
                reason="no_recipients",
            )
            return {"management_notified": False}

        body = "\n".join(
            [
                f"Incident {incident_id} was escalated ({config.escalation_level}).",
                "",
                render_event_summary(ctx.policy.name, ctx.event),
            ]
        )
        try:
            message_id = await self._mail.send(
                recipients, f"ESCALATED SECURITY INCIDENT - {ctx.policy.name}", body
            )
        except ExecutionError as exc:
            logger.error(
                "management_notification_failed",
                incident_id=incident_id,
                error=describe_error(exc),
            )
            return {"management_notified": False, "management_error": describe_error(exc)}

        return {
            "management_notified": True,
            "management_recipients": recipients,
            "management_message_id": message_id,
        }


class IncreaseMonitoringHandler:
    action_type = ActionType.INCREASE_MONITORING

    def __init__(self, monitoring: MonitoringStore) -> None:
        self._monitoring = monitoring

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        requested = MonitoringWindow(
            subject_id=ctx.subject_id,
            monitoring_level=config.monitoring_level,
            expires_at=ctx.now + timedelta(hours=config.duration_hours),
            policy_id=ctx.policy.id,
        )
        # The store never shortens an active window or lowers its level
        window = await self._monitoring.extend_window(requested, ctx.now)
        extended = window.expires_at == requested.expires_at

        logger.info(
            "monitoring_increased",
            subject_id=ctx.subject_id,
            monitoring_level=window.monitoring_level,
            expires_at=window.expires_at.isoformat(),
            extended=extended,
        )
        return {
            "expires_at": window.expires_at.isoformat(),
            "monitoring_level": window.monitoring_level,
            "extended": extended,
        }


class DisableAccessHandler:
    action_type = ActionType.DISABLE_ACCESS

    def __init__(self, access: AccessControlStore, audit: AuditSink) -> None:
        self._access = access
        self._audit = audit

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        reason = config.reason or f"Disabled by policy '{ctx.policy.name}'"
        restriction_id = await self._access.disable_access(
            AccessRestriction(
                id=None,
                subject_id=ctx.subject_id,
                access_type=config.access_type,
                reason=reason,
                policy_id=ctx.policy.id,
                trigger_event_id=ctx.event.id,
                disabled_at=ctx.now,
            )
        )
        audit_id = await self._audit.record(
            AuditEntry(
                id=str(uuid.uuid4()),
                timestamp=ctx.now,
                level="critical",
                action="disable_access",
                subject_id=ctx.subject_id,
                policy_id=ctx.policy.id,
                trigger_event_id=ctx.event.id,
                details={"access_type": config.access_type, "reason": reason},
            )
        )
        logger.critical(
            "access_disabled",
            subject_id=ctx.subject_id,
            access_type=config.access_type,
            policy_id=ctx.policy.id,
            restriction_id=restriction_id,
        )
        return {
            "restriction_id": restriction_id,
            "access_type": config.access_type,
            "audit_id": audit_id,
        }


class LogDetailedActivityHandler:
    action_type = ActionType.LOG_DETAILED_ACTIVITY

    def __init__(self, audit: AuditSink) -> None:
        self._audit = audit

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        until = ctx.now + timedelta(hours=config.duration_hours)
        audit_id = await self._audit.record(
            AuditEntry(
                id=str(uuid.uuid4()),
                timestamp=ctx.now,
                level="info",
                action="log_detailed_activity",
                subject_id=ctx.subject_id,
                policy_id=ctx.policy.id,
                trigger_event_id=ctx.event.id,
                details={
                    "event": ctx.event.snapshot(),
                    "include_network": config.include_network,
                    "include_files": config.include_files,
                    "include_emails": config.include_emails,
                    "log_until": until.isoformat(),
                },
            )
        )
        return {"audit_id": audit_id, "log_until": until.isoformat()}


class ImmediateAlertHandler:
    action_type = ActionType.IMMEDIATE_ALERT

    def __init__(
        self,
        mail: MailService,
        notifications: NotificationStore,
        roles: list[str] | None = None,
    ) -> None:
        self._mail = mail
        self._notifications = notifications
        self._roles = roles if roles is not None else ["admin", "security_admin"]

    async def execute(self, ctx: ActionContext) -> dict[str, Any]:
        config = ctx.action.config
        details: dict[str, Any] = {"priority": config.priority, "channels": list(config.channels)}

        # Email before the system notification; only delivery failures are retried
        if "email" in config.channels:
            details["message_id"] = await self._mail.send(
                list(config.recipients),
                f"[{config.priority.upper()}] Immediate security alert: {ctx.policy.name}",
                render_event_summary(ctx.policy.name, ctx.event),
            )

        if "system" in config.channels:
            details["notification_ids"] = [
                await self._notifications.publish(
                    SystemNotification(
                        id=None,
                        recipient_role=role,
                        notification_type="security_alert",
                        priority=config.priority,
                        title=f"Immediate security alert: {ctx.policy.name}",
                        message=(
                            f"Policy violation detected for {ctx.subject_id}. "
                            "Immediate attention required."
                        ),
                        subject_id=ctx.subject_id,
                        policy_id=ctx.policy.id,
                        trigger_event_id=ctx.event.id,
                        action_order=ctx.action.order,
                        details={"event": ctx.event.snapshot()},
                        created_at=ctx.now,
                    )
                )
                for role in self._roles
            ]
        return details


def build_registry(collaborators: Collaborators) -> HandlerRegistry:
    """Registry with one handler per action type."""
    registry = HandlerRegistry()
    registry.register(EmailAlertHandler(collaborators.mail))
    registry.register(
        EscalateIncidentHandler(
            collaborators.incidents,
            collaborators.mail,
            collaborators.management_recipients,
        )
    )
    registry.register(IncreaseMonitoringHandler(collaborators.monitoring))
    registry.register(DisableAccessHandler(collaborators.access, collaborators.audit))
    registry.register(LogDetailedActivityHandler(collaborators.audit))
    registry.register(
        ImmediateAlertHandler(
            collaborators.mail, collaborators.notifications, collaborators.system_alert_roles
        )
    )
    return registry
