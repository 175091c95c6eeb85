"""
Outbound collaborators used by action handlers.

Records are plain dataclasses; stores are Protocols so handlers can run
against the SQL stores in insiderguard.db.repositories or test doubles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass
class Incident:
    """Incident raised by an escalation."""

    id: str
    subject_id: str
    title: str
    escalation_level: str  # "normal" | "high" | "immediate" | "critical"
    severity: str  # "Medium" | "High" | "Critical"
    policy_id: int | None = None
    trigger_event_id: str | None = None
    action_order: int | None = None
    status: str = "open"
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class MonitoringWindow:
    """Elevated monitoring for a subject until `expires_at`."""

    subject_id: str
    monitoring_level: str
    expires_at: datetime
    policy_id: int | None = None


@dataclass
class AccessRestriction:
    id: int | None
    subject_id: str
    access_type: str
    reason: str | None = None
    policy_id: int | None = None
    trigger_event_id: str | None = None
    disabled_at: datetime | None = None
    enabled_at: datetime | None = None
    enabled_by: str | None = None


@dataclass
class AuditEntry:
    """Insert-only audit log entry."""

    id: str
    timestamp: datetime
    level: str  # "info" | "warning" | "critical"
    action: str
    subject_id: str | None = None
    policy_id: int | None = None
    trigger_event_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemNotification:
    """In-app notification addressed to a staff role."""

    id: int | None
    recipient_role: str
    notification_type: str
    priority: str
    title: str
    message: str
    subject_id: str | None = None
    policy_id: int | None = None
    trigger_event_id: str | None = None
    action_order: int | None = None
    details: dict[str, Any] = field(default_factory=dict)
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime | None = None


class MailService(Protocol):
    async def send(self, recipients: list[str], subject: str, body: str) -> str:
        """Deliver a message; returns the relay's message id."""
        ...


class IncidentStore(Protocol):
    async def create_incident(self, incident: Incident) -> str:
        """Store the incident once per execution key; returns the stored incident id."""
        ...


class MonitoringStore(Protocol):
    async def get_window(self, subject_id: str) -> MonitoringWindow | None: ...

    async def extend_window(self, window: MonitoringWindow, now: datetime) -> MonitoringWindow:
        """Merge `window` into the subject's active window without shortening it."""
        ...


class NotificationStore(Protocol):
    async def publish(self, notification: SystemNotification) -> int: ...


class AccessControlStore(Protocol):
    async def disable_access(self, restriction: AccessRestriction) -> int: ...

    async def enable_access(
        self, subject_id: str, enabled_by: str, access_type: str | None = None
    ) -> int: ...


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> str: ...


@dataclass
class Collaborators:
    """Everything the action handlers talk to."""

    mail: MailService
    incidents: IncidentStore
    monitoring: MonitoringStore
    access: AccessControlStore
    audit: AuditSink
    notifications: NotificationStore
    management_recipients: list[str] = field(default_factory=list)
    system_alert_roles: list[str] = field(default_factory=lambda: ["admin", "security_admin"])
