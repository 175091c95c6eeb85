"""
Policy condition evaluator.

Evaluates structured policy conditions against the metrics carried by a
trigger event. Each condition is a (type, operator, value) triple; the
condition type picks the context field and how `value` is parsed:

    risk_score           -> risk_score              (number)
    violation_severity   -> severity_rank           (Low=1 .. Critical=4, or a number)
    data_access          -> data_volume_gb          (number with optional KB/MB/GB/TB unit)
    time_based           -> is_after_hours          (true/false/after_hours/business_hours)
                         -> hour_of_day             (number)
    frequency            -> recent_event_count      (number)
    any_violation        -> event_kind == violation_created (value ignored)
    violation_type       -> violation_type          (text)
    employee_department  -> department              (text)
    employee_role        -> role                    (text)
    external_recipients  -> external_recipient_count (number)

Evaluation is fail-closed: a missing context field or a malformed value
makes the condition false, it never raises. `exists` / `not_exists` are
the only operators that look at whether a field is present.
"""

from __future__ import annotations

import math
import operator as op
import re
from dataclasses import dataclass
from typing import Any, Callable, Sequence

import structlog

from insiderguard.core.errors import EvaluationError
from insiderguard.domain.models import (
    SEVERITY_RANKS,
    Condition,
    ConditionType,
    EventKind,
    LogicalOperator,
    Operator,
    TriggerEvent,
)

logger = structlog.get_logger()

_UNIT_TO_GB = {
    "kb": 1 / (1024 * 1024),
    "mb": 1 / 1024,
    "gb": 1.0,
    "tb": 1024.0,
}
_VOLUME_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(kb|mb|gb|tb)?\s*$", re.IGNORECASE)

_AFTER_HOURS_FLAGS = {"true": True, "yes": True, "after_hours": True}
_BUSINESS_HOURS_FLAGS = {"false": False, "no": False, "business_hours": False}
_FLAGS = {**_AFTER_HOURS_FLAGS, **_BUSINESS_HOURS_FLAGS}


@dataclass(frozen=True)
class EvaluationContext:
    """Flattened view of a trigger event used for condition evaluation."""

    event_kind: EventKind
    risk_score: float | None = None
    severity: str | None = None
    severity_rank: int | None = None
    data_volume_gb: float | None = None
    recent_event_count: int | None = None
    hour_of_day: int | None = None
    is_after_hours: bool | None = None
    violation_type: str | None = None
    department: str | None = None
    role: str | None = None
    external_recipient_count: int | None = None

    @classmethod
    def from_event(
        cls,
        event: TriggerEvent,
        *,
        business_hours_start: int = 8,
        business_hours_end: int = 18,
    ) -> EvaluationContext:
        metrics = event.metrics
        hour = metrics.timestamp.hour
        return cls(
            event_kind=event.kind,
            risk_score=metrics.risk_score,
            severity=metrics.severity.value if metrics.severity else None,
            severity_rank=metrics.severity_rank,
            data_volume_gb=metrics.data_volume_gb,
            recent_event_count=metrics.recent_event_count,
            hour_of_day=hour,
            is_after_hours=hour < business_hours_start or hour > business_hours_end,
            violation_type=metrics.violation_type,
            department=event.subject.department,
            role=event.subject.role,
            external_recipient_count=metrics.external_recipient_count,
        )


def parse_data_volume(value: str) -> float:
    """Parse "500", "100MB" or "1.5 TB" into gigabytes (binary units)."""
    match = _VOLUME_RE.match(value)
    if not match:
        raise EvaluationError(f"invalid data volume: {value!r}")
    amount = float(match.group(1))
    unit = (match.group(2) or "gb").lower()
    return amount * _UNIT_TO_GB[unit]


def _parse_float(value: str) -> float:
    try:
        number = float(value.strip())
    except ValueError as exc:
        raise EvaluationError(f"not a number: {value!r}") from exc
    if math.isnan(number):
        raise EvaluationError("NaN is not a comparable value")
    return number


def _format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ConditionEvaluator:
    """Evaluates a single condition against an EvaluationContext."""

    NUMERIC_OPERATORS: dict[Operator, Callable[[float, float], bool]] = {
        Operator.GREATER_THAN: op.gt,
        Operator.LESS_THAN: op.lt,
        Operator.GREATER_EQUAL: op.ge,
        Operator.LESS_EQUAL: op.le,
    }

    FIELDS: dict[ConditionType, str] = {
        ConditionType.RISK_SCORE: "risk_score",
        ConditionType.VIOLATION_SEVERITY: "severity_rank",
        ConditionType.DATA_ACCESS: "data_volume_gb",
        ConditionType.TIME_BASED: "hour_of_day",
        ConditionType.FREQUENCY: "recent_event_count",
        ConditionType.VIOLATION_TYPE: "violation_type",
        ConditionType.EMPLOYEE_DEPARTMENT: "department",
        ConditionType.EMPLOYEE_ROLE: "role",
        ConditionType.EXTERNAL_RECIPIENTS: "external_recipient_count",
    }

    TEXT_TYPES = frozenset(
        {
            ConditionType.VIOLATION_TYPE,
            ConditionType.EMPLOYEE_DEPARTMENT,
            ConditionType.EMPLOYEE_ROLE,
        }
    )

    def evaluate(self, condition: Condition, context: EvaluationContext) -> bool:
        """
        Evaluate one condition.

        Returns:
            True if the condition holds. False if it does not, if the
            context lacks the field, or if the condition value is malformed.
        """
        try:
            return self._evaluate(condition, context)
        except EvaluationError as exc:
            logger.warning(
                "condition_evaluation_failed",
                condition_type=condition.type.value,
                operator=condition.operator.value,
                value=condition.value,
                error=exc.message,
            )
            return False

    def _evaluate(self, condition: Condition, context: EvaluationContext) -> bool:
        if condition.type == ConditionType.ANY_VIOLATION:
            return context.event_kind == EventKind.VIOLATION_CREATED

        if condition.type == ConditionType.TIME_BASED and condition.value.strip().lower() in _FLAGS:
            return self._compare_flag(condition, context)

        actual = getattr(context, self.FIELDS[condition.type])
        if condition.operator in (Operator.EXISTS, Operator.NOT_EXISTS):
            present = actual is not None and actual != ""
            return present if condition.operator == Operator.EXISTS else not present

        if actual is None:
            return False

        if condition.operator in self.NUMERIC_OPERATORS:
            if condition.type in self.TEXT_TYPES:
                raise EvaluationError(
                    f"{condition.type.value} does not support {condition.operator.value!r}"
                )
            expected = self._parse_number(condition.type, condition.value)
            return self.NUMERIC_OPERATORS[condition.operator](float(actual), expected)

        if condition.operator in (Operator.EQUALS, Operator.NOT_EQUALS):
            equal = self._equals(condition, actual, context)
            return equal if condition.operator == Operator.EQUALS else not equal

        if condition.operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            needle = condition.value.strip().lower()
            if not needle:
                raise EvaluationError("contains requires a non-empty value")
            found = needle in self._as_text(condition.type, actual, context)
            return found if condition.operator == Operator.CONTAINS else not found

        if condition.operator in (Operator.IN, Operator.NOT_IN):
            members = [m.strip().lower() for m in condition.value.split(",") if m.strip()]
            if not members:
                raise EvaluationError("in requires at least one member")
            found = self._is_member(condition.type, actual, members, context)
            return found if condition.operator == Operator.IN else not found

        raise EvaluationError(f"unsupported operator: {condition.operator}")

    def _compare_flag(self, condition: Condition, context: EvaluationContext) -> bool:
        if context.is_after_hours is None:
            return False
        expected = _FLAGS[condition.value.strip().lower()]
        if condition.operator == Operator.EQUALS:
            return context.is_after_hours == expected
        if condition.operator == Operator.NOT_EQUALS:
            return context.is_after_hours != expected
        raise EvaluationError(
            f"time_based flag values only support equality, got {condition.operator.value!r}"
        )

    def _equals(self, condition: Condition, actual: Any, context: EvaluationContext) -> bool:
        if condition.type not in self.TEXT_TYPES:
            try:
                expected = self._parse_number(condition.type, condition.value)
            except EvaluationError:
                pass
            else:
                return float(actual) == expected
        return self._as_text(condition.type, actual, context) == condition.value.strip().lower()

    def _parse_number(self, condition_type: ConditionType, value: str) -> float:
        if condition_type == ConditionType.VIOLATION_SEVERITY:
            rank = SEVERITY_RANKS.get(value.strip().lower())
            if rank is not None:
                return float(rank)
        if condition_type == ConditionType.DATA_ACCESS:
            return parse_data_volume(value)
        return _parse_float(value)

    def _as_text(self, condition_type: ConditionType, actual: Any, context: EvaluationContext) -> str:
        if condition_type == ConditionType.VIOLATION_SEVERITY and context.severity:
            return context.severity.lower()
        if isinstance(actual, (int, float)):
            return _format_number(actual)
        return str(actual).lower()

    def _is_member(
        self,
        condition_type: ConditionType,
        actual: Any,
        members: list[str],
        context: EvaluationContext,
    ) -> bool:
        if self._as_text(condition_type, actual, context) in members:
            return True
        if condition_type in self.TEXT_TYPES:
            return False
        for member in members:
            try:
                if float(actual) == self._parse_number(condition_type, member):
                    return True
            except EvaluationError:
                continue
        return False


class ConditionTreeResolver:
    """
    Combines an ordered condition list into one verdict.

    Left fold: each condition's logical_operator joins it to the next
    condition; there is no precedence between AND and OR. An empty list
    is true.
    """

    def __init__(self, evaluator: ConditionEvaluator | None = None) -> None:
        self._evaluator = evaluator or ConditionEvaluator()

    def resolve(self, conditions: Sequence[Condition], context: EvaluationContext) -> bool:
        ordered = sorted(conditions, key=lambda c: c.order)
        if not ordered:
            return True

        result = self._evaluator.evaluate(ordered[0], context)
        for previous, current in zip(ordered, ordered[1:]):
            value = self._evaluator.evaluate(current, context)
            if previous.logical_operator == LogicalOperator.AND:
                result = result and value
            else:
                result = result or value
        return result

    def explain(
        self, conditions: Sequence[Condition], context: EvaluationContext
    ) -> list[tuple[Condition, bool]]:
        """Per-condition results in evaluation order, for dry runs."""
        ordered = sorted(conditions, key=lambda c: c.order)
        return [(c, self._evaluator.evaluate(c, context)) for c in ordered]
