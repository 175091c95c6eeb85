"""
Action scheduler.

Claims one ledger record per enabled action and hands each claimed key to
the deferred queue. Nothing executes here: the worker picks jobs up at or
after their scheduled time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog

from insiderguard.core.clock import Clock, SystemClock
from insiderguard.core.errors import SchedulingError, describe_error
from insiderguard.domain.models import (
    ActionType,
    ExecutionKey,
    ExecutionRecord,
    ExecutionStatus,
    Policy,
    TriggerEvent,
)
from insiderguard.execution.ledger import ExecutionLedger
from insiderguard.queue import DeferredQueue

logger = structlog.get_logger()

SCHEDULER_UNAVAILABLE = "scheduler_unavailable"


@dataclass(frozen=True)
class PlannedAction:
    action: Any
    scheduled_at: datetime


def plan_actions(policy: Policy, now: datetime) -> list[PlannedAction]:
    """Enabled actions in order with their due times.

    immediate_alert ignores its configured delay.
    """
    planned = []
    for action in policy.enabled_actions():
        if action.type == ActionType.IMMEDIATE_ALERT:
            at = now
        else:
            at = now + timedelta(minutes=action.delay)
        planned.append(PlannedAction(action=action, scheduled_at=at))
    return planned


class ActionScheduler:
    """Turns a fired policy into pending execution records."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        queue: DeferredQueue,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._queue = queue
        self._clock = clock or SystemClock()

    async def schedule(self, policy: Policy, event: TriggerEvent) -> list[ExecutionRecord]:
        """Claim and enqueue every enabled action of `policy` for `event`.

        Actions already claimed for this event are skipped, so a redelivered
        event yields an empty list. If the queue rejects a job, every record
        claimed by this call is marked failed and SchedulingError is raised.
        """
        if policy.id is None:
            raise SchedulingError("cannot schedule an unsaved policy", details={"name": policy.name})

        now = self._clock.now()
        snapshot = event.snapshot()
        records: list[ExecutionRecord] = []

        for planned in plan_actions(policy, now):
            action = planned.action
            key = ExecutionKey(policy.id, event.id, action.order)
            action_type = ActionType(action.type)
            claimed = await self._ledger.try_claim(
                key,
                action_type=action_type,
                scheduled_at=planned.scheduled_at,
                event_snapshot=snapshot,
            )
            if not claimed:
                continue
            records.append(
                ExecutionRecord(
                    policy_id=policy.id,
                    trigger_event_id=event.id,
                    action_order=action.order,
                    action_type=action_type,
                    status=ExecutionStatus.PENDING,
                    scheduled_at=planned.scheduled_at,
                    event_snapshot=snapshot,
                )
            )

        try:
            for record in records:
                await self._queue.submit(record.key, record.scheduled_at)
        except Exception as exc:
            failed = await self._ledger.fail_all((r.key for r in records), SCHEDULER_UNAVAILABLE)
            logger.error(
                "scheduling_failed",
                policy_id=policy.id,
                trigger_event_id=event.id,
                failed_records=failed,
                error=describe_error(exc),
            )
            if isinstance(exc, SchedulingError):
                raise
            raise SchedulingError(
                "deferred queue rejected a job", details={"policy_id": policy.id}
            ) from exc

        logger.info(
            "actions_scheduled",
            policy_id=policy.id,
            trigger_event_id=event.id,
            scheduled=len(records),
            orders=[r.action_order for r in records],
        )
        return records
