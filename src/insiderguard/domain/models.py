from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from insiderguard.core.clock import utcnow


class DomainModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- Enumerations --


class PolicyLevel(StrEnum):
    GLOBAL = "global"
    GROUP = "group"
    USER = "user"


class TargetType(StrEnum):
    DEPARTMENT = "department"
    ROLE = "role"
    USER = "user"


class ConditionType(StrEnum):
    RISK_SCORE = "risk_score"
    VIOLATION_SEVERITY = "violation_severity"
    DATA_ACCESS = "data_access"
    TIME_BASED = "time_based"
    FREQUENCY = "frequency"
    ANY_VIOLATION = "any_violation"
    VIOLATION_TYPE = "violation_type"
    EMPLOYEE_DEPARTMENT = "employee_department"
    EMPLOYEE_ROLE = "employee_role"
    EXTERNAL_RECIPIENTS = "external_recipients"


class Operator(StrEnum):
    EQUALS = "equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    IN = "in"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"
    NOT_EQUALS = "not_equals"
    NOT_CONTAINS = "not_contains"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LogicalOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class ActionType(StrEnum):
    EMAIL_ALERT = "email_alert"
    ESCALATE_INCIDENT = "escalate_incident"
    INCREASE_MONITORING = "increase_monitoring"
    DISABLE_ACCESS = "disable_access"
    LOG_DETAILED_ACTIVITY = "log_detailed_activity"
    IMMEDIATE_ALERT = "immediate_alert"


class EventKind(StrEnum):
    VIOLATION_CREATED = "violation_created"
    RISK_UPDATED = "risk_updated"
    EMAIL_FLAGGED = "email_flagged"
    MANUAL = "manual"


class ExecutionStatus(StrEnum):
    """Lifecycle of a single scheduled action."""

    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


class Severity(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


SEVERITY_RANKS: dict[str, int] = {
    "low": 1,
    "medium": 2,
    "high": 3,
    "critical": 4,
}

MONITORING_LEVEL_RANKS: dict[str, int] = {"minimal": 0, "normal": 1, "high": 2, "maximum": 3}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_recipients(recipients: list[str]) -> list[str]:
    cleaned = [r.strip() for r in recipients]
    invalid = [r for r in cleaned if not _EMAIL_RE.match(r)]
    if invalid:
        raise ValueError(f"invalid recipient address(es): {', '.join(invalid)}")
    return cleaned


# -- Conditions --


class Condition(DomainModel):
    """A single boolean test joined to the next condition by logical_operator."""

    type: ConditionType
    operator: Operator
    value: str = ""
    logical_operator: LogicalOperator = LogicalOperator.AND
    order: int = 0

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _upper_join(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


# -- Action configuration (one model per action variant) --


class _ActionConfig(DomainModel):
    model_config = ConfigDict(extra="forbid")


class EmailAlertConfig(_ActionConfig):
    recipients: list[str] = Field(min_length=1)
    subject: str = "Security policy alert"

    _check_recipients = field_validator("recipients")(_validate_recipients)


class EscalateIncidentConfig(_ActionConfig):
    escalation_level: Literal["normal", "high", "immediate", "critical"] = "high"
    notify_management: bool = False
    management_recipients: list[str] = Field(default_factory=list)

    _check_recipients = field_validator("management_recipients")(_validate_recipients)


class IncreaseMonitoringConfig(_ActionConfig):
    duration_hours: float = Field(default=24, gt=0)
    monitoring_level: Literal["minimal", "normal", "high", "maximum"] = "high"


class DisableAccessConfig(_ActionConfig):
    access_type: Literal["all", "email", "teams", "files", "applications"] = "all"
    reason: str | None = None


class LogDetailedActivityConfig(_ActionConfig):
    include_network: bool = False
    include_files: bool = False
    include_emails: bool = True
    duration_hours: float = Field(default=48, gt=0)


class ImmediateAlertConfig(_ActionConfig):
    recipients: list[str] = Field(default_factory=list)
    priority: Literal["low", "medium", "high", "critical", "urgent"] = "urgent"
    channels: list[Literal["email", "system"]] = Field(
        default_factory=lambda: ["email", "system"], min_length=1
    )

    _check_recipients = field_validator("recipients")(_validate_recipients)

    @model_validator(mode="after")
    def _email_needs_recipients(self) -> ImmediateAlertConfig:
        if "email" in self.channels and not self.recipients:
            raise ValueError("immediate_alert with the email channel requires recipients")
        return self


# -- Actions (tagged union on `type`) --


class _ActionBase(DomainModel):
    order: int = 0
    delay: int = Field(default=0, ge=0)
    is_enabled: bool = True


class EmailAlertAction(_ActionBase):
    type: Literal["email_alert"] = "email_alert"
    config: EmailAlertConfig


class EscalateIncidentAction(_ActionBase):
    type: Literal["escalate_incident"] = "escalate_incident"
    config: EscalateIncidentConfig = Field(default_factory=EscalateIncidentConfig)


class IncreaseMonitoringAction(_ActionBase):
    type: Literal["increase_monitoring"] = "increase_monitoring"
    config: IncreaseMonitoringConfig = Field(default_factory=IncreaseMonitoringConfig)


class DisableAccessAction(_ActionBase):
    type: Literal["disable_access"] = "disable_access"
    config: DisableAccessConfig = Field(default_factory=DisableAccessConfig)


class LogDetailedActivityAction(_ActionBase):
    type: Literal["log_detailed_activity"] = "log_detailed_activity"
    config: LogDetailedActivityConfig = Field(default_factory=LogDetailedActivityConfig)


class ImmediateAlertAction(_ActionBase):
    type: Literal["immediate_alert"] = "immediate_alert"
    config: ImmediateAlertConfig


Action = Annotated[
    Union[
        EmailAlertAction,
        EscalateIncidentAction,
        IncreaseMonitoringAction,
        DisableAccessAction,
        LogDetailedActivityAction,
        ImmediateAlertAction,
    ],
    Field(discriminator="type"),
]


def _rank_by_position(items: list[Any]) -> list[Any]:
    """Renumber `order` 1..n, honouring explicit orders when every item has one."""
    if items and all(item.order > 0 for item in items):
        items = sorted(items, key=lambda item: item.order)
    return [item.model_copy(update={"order": index}) for index, item in enumerate(items, 1)]


# -- Policy --


class Policy(DomainModel):
    """A scoped automation rule: ordered conditions plus ordered actions."""

    id: int | None = None
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    level: PolicyLevel
    target_id: str | None = None
    target_type: TargetType | None = None
    priority: int = 0
    is_active: bool = True
    requires_manual_trigger: bool = False
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _check_target_and_rank(self) -> Policy:
        if self.level == PolicyLevel.GLOBAL:
            if self.target_id is not None or self.target_type is not None:
                raise ValueError("global policies must not have a target")
        else:
            if not self.target_id:
                raise ValueError(f"{self.level.value} policies require a target_id")
            if self.level == PolicyLevel.GROUP:
                if self.target_type is None:
                    self.target_type = TargetType.DEPARTMENT
                elif self.target_type not in (TargetType.DEPARTMENT, TargetType.ROLE):
                    raise ValueError("group policies must target a department or role")
            else:
                if self.target_type is None:
                    self.target_type = TargetType.USER
                elif self.target_type != TargetType.USER:
                    raise ValueError("user policies must have target_type 'user'")

        self.conditions = _rank_by_position(self.conditions)
        self.actions = _rank_by_position(self.actions)
        return self

    def enabled_actions(self) -> list[Any]:
        return [a for a in sorted(self.actions, key=lambda a: a.order) if a.is_enabled]

    def find_action(self, order: int) -> Any | None:
        for action in self.actions:
            if action.order == order:
                return action
        return None

    def unaddressed_escalations(self, default_recipients: list[str]) -> list[int]:
        """Orders of escalations that notify management with nobody to notify."""
        if default_recipients:
            return []
        return [
            a.order
            for a in self.actions
            if a.type == ActionType.ESCALATE_INCIDENT.value
            and a.config.notify_management
            and not a.config.management_recipients
        ]


# -- Trigger events --


class Subject(DomainModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    department: str | None = None
    role: str | None = None


class EventMetrics(DomainModel):
    """Snapshot of the metrics a producer observed when raising the event."""

    model_config = ConfigDict(frozen=True)

    risk_score: float | None = None
    severity: Severity | None = None
    data_volume_gb: float | None = None
    recent_event_count: int | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    violation_id: str | None = None
    violation_type: str | None = None
    external_recipient_count: int | None = Field(default=None, ge=0)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v: Any) -> Any:
        return v.strip().capitalize() if isinstance(v, str) else v

    @property
    def severity_rank(self) -> int | None:
        if self.severity is None:
            return None
        return SEVERITY_RANKS[self.severity.value.lower()]


class TriggerEvent(DomainModel):
    """Immutable activity event submitted by an upstream producer."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject: Subject
    kind: EventKind
    metrics: EventMetrics = Field(default_factory=EventMetrics)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# -- Execution ledger --


@dataclass(frozen=True, slots=True)
class ExecutionKey:
    """Idempotency key: one execution per (policy, event, action)."""

    policy_id: int
    trigger_event_id: str
    action_order: int

    def __str__(self) -> str:
        return f"{self.policy_id}:{self.trigger_event_id}:{self.action_order}"


class ExecutionRecord(DomainModel):
    id: int | None = None
    policy_id: int
    trigger_event_id: str
    action_order: int
    action_type: ActionType
    status: ExecutionStatus = ExecutionStatus.PENDING
    scheduled_at: datetime
    executed_at: datetime | None = None
    error: str | None = None
    attempts: int = 1
    result: dict[str, Any] = Field(default_factory=dict)
    event_snapshot: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def key(self) -> ExecutionKey:
        return ExecutionKey(self.policy_id, self.trigger_event_id, self.action_order)
