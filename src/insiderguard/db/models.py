from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from insiderguard.core.clock import utcnow


class Base(DeclarativeBase):
    pass


# Policy definitions


class PolicyModel(Base):
    """Security policy: scope, priority, and its ordered conditions/actions."""

    __tablename__ = "security_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(255))
    target_type: Mapped[str | None] = mapped_column(String(20))
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    requires_manual_trigger: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    conditions: Mapped[list[PolicyConditionModel]] = relationship(
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="PolicyConditionModel.order",
        lazy="selectin",
    )
    actions: Mapped[list[PolicyActionModel]] = relationship(
        back_populates="policy",
        cascade="all, delete-orphan",
        order_by="PolicyActionModel.order",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "(level = 'global' AND target_id IS NULL AND target_type IS NULL)"
            " OR (level = 'group' AND target_id IS NOT NULL"
            " AND target_type IN ('department', 'role'))"
            " OR (level = 'user' AND target_id IS NOT NULL AND target_type = 'user')",
            name="ck_policy_target",
        ),
        Index("idx_policies_level_active", "level", "is_active"),
        Index("idx_policies_target", "target_type", "target_id"),
    )


class PolicyConditionModel(Base):
    __tablename__ = "policy_conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("security_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    condition_type: Mapped[str] = mapped_column(String(50), nullable=False)
    operator: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    logical_operator: Mapped[str] = mapped_column(String(3), nullable=False, default="AND")
    order: Mapped[int] = mapped_column("condition_order", Integer, nullable=False)

    policy: Mapped[PolicyModel] = relationship(back_populates="conditions")


class PolicyActionModel(Base):
    __tablename__ = "policy_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("security_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    order: Mapped[int] = mapped_column("action_order", Integer, nullable=False)
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    policy: Mapped[PolicyModel] = relationship(back_populates="actions")

    __table_args__ = (CheckConstraint("delay_minutes >= 0", name="ck_action_delay"),)


# Execution ledger (no FK: the audit trail outlives deleted policies)


class ExecutionRecordModel(Base):
    __tablename__ = "execution_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    policy_id: Mapped[int] = mapped_column(Integer, nullable=False)
    trigger_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_order: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime)
    error: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    event_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Set while a worker is running the action; an expired lease can be taken over
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "policy_id", "trigger_event_id", "action_order", name="uq_execution_key"
        ),
        Index("idx_executions_policy_created", "policy_id", "created_at"),
        Index("idx_executions_status_scheduled", "status", "scheduled_at"),
    )


# Collaborator stores


class IncidentModel(Base):
    """Incident raised by an escalate_incident action."""

    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    policy_id: Mapped[int | None] = mapped_column(Integer)
    trigger_event_id: Mapped[str | None] = mapped_column(String(64))
    action_order: Mapped[int | None] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    escalation_level: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "policy_id", "trigger_event_id", "action_order", name="uq_incident_execution_key"
        ),
        Index("idx_incidents_subject_created", "subject_id", "created_at"),
    )


class MonitoringWindowModel(Base):
    """Elevated-monitoring window, one row per subject."""

    __tablename__ = "monitoring_windows"

    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    monitoring_level: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    policy_id: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class AccessRestrictionModel(Base):
    """Access disabled for a subject. Only lifted by an administrator."""

    __tablename__ = "access_restrictions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    access_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    policy_id: Mapped[int | None] = mapped_column(Integer)
    trigger_event_id: Mapped[str | None] = mapped_column(String(64))
    disabled_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime)
    enabled_by: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (Index("idx_access_subject_active", "subject_id", "enabled_at"),)


class AuditEntryModel(Base):
    """Insert-only audit log."""

    __tablename__ = "audit_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(255), index=True)
    policy_id: Mapped[int | None] = mapped_column(Integer)
    trigger_event_id: Mapped[str | None] = mapped_column(String(64))
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)


class SystemNotificationModel(Base):
    """In-app notification for a staff role, raised by immediate_alert."""

    __tablename__ = "system_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_role: Mapped[str] = mapped_column(String(50), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(255))
    policy_id: Mapped[int | None] = mapped_column(Integer)
    trigger_event_id: Mapped[str | None] = mapped_column(String(64))
    action_order: Mapped[int | None] = mapped_column(Integer)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "policy_id",
            "trigger_event_id",
            "action_order",
            "recipient_role",
            name="uq_notification_execution_key",
        ),
        Index("idx_notifications_role_read", "recipient_role", "is_read", "created_at"),
    )
