"""
Action executor.

`execute` runs one action through its handler, retrying transient
failures. `run` is the worker entry point: it takes the execution lease on the
ledger record, re-checks the record and the policy immediately before
executing and writes the terminal status back to the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from insiderguard.actions.base import ActionContext, HandlerRegistry
from insiderguard.core.clock import Clock, SystemClock
from insiderguard.core.errors import ActionConfigError, ExecutionError, describe_error
from insiderguard.domain.models import (
    ExecutionKey,
    ExecutionRecord,
    ExecutionStatus,
    Policy,
    TriggerEvent,
)
from insiderguard.execution.ledger import ExecutionLedger
from insiderguard.policies.resolver import PolicySource

logger = structlog.get_logger()

POLICY_DEACTIVATED = "policy_deactivated"
POLICY_DELETED = "policy_deleted"
ACTION_REMOVED = "action_removed"
ACTION_DISABLED = "action_disabled"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ExecutionError) and exc.transient


@dataclass
class ActionResult:
    success: bool
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 1


class ActionExecutor:
    """Executes scheduled actions and records their outcome."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        policies: PolicySource,
        registry: HandlerRegistry,
        *,
        clock: Clock | None = None,
        max_retries: int = 3,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 30.0,
        lease: timedelta = timedelta(minutes=5),
    ) -> None:
        self._ledger = ledger
        self._policies = policies
        self._registry = registry
        self._clock = clock or SystemClock()
        self._max_retries = max_retries
        self._backoff_multiplier = backoff_multiplier
        self._backoff_max = backoff_max
        self._lease = lease

    async def execute(self, action: Any, event: TriggerEvent, policy: Policy) -> ActionResult:
        """Run one action. Never raises; failures come back as ActionResult."""
        handler = self._registry.get(action.type)
        log = logger.bind(policy_id=policy.id, trigger_event_id=event.id, action_order=action.order)
        if handler is None:
            error = ActionConfigError(f"no handler registered for {action.type}")
            log.error("action_failed", action_type=action.type, error=describe_error(error))
            return ActionResult(success=False, error=describe_error(error))

        ctx = ActionContext(policy=policy, action=action, event=event, now=self._clock.now())
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff_multiplier, max=self._backoff_max),
            before_sleep=self._log_retry,
            reraise=True,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    details = await handler.execute(ctx)
        except ExecutionError as exc:
            log.warning(
                "action_failed",
                action_type=action.type,
                attempts=attempts,
                transient=exc.transient,
                error=describe_error(exc),
            )
            return ActionResult(success=False, error=describe_error(exc), attempts=attempts)
        except Exception as exc:
            log.error(
                "action_failed",
                action_type=action.type,
                attempts=attempts,
                error=describe_error(exc),
                exc_info=True,
            )
            return ActionResult(success=False, error=describe_error(exc), attempts=attempts)

        log.info("action_executed", action_type=action.type, attempts=attempts)
        return ActionResult(success=True, details=details, attempts=attempts)

    async def run(self, key: ExecutionKey) -> ExecutionRecord | None:
        """Execute the action behind a claimed ledger key, if still wanted."""
        record = await self._ledger.get(key)
        if record is None:
            logger.warning("execution_record_missing", execution_key=str(key))
            return None
        if record.status != ExecutionStatus.PENDING:
            logger.info("execution_skipped", execution_key=str(key), status=record.status.value)
            return record
        if not await self._ledger.acquire(key, self._clock.now(), self._lease):
            logger.info("execution_leased_elsewhere", execution_key=str(key))
            return None

        policy = await self._policies.get(key.policy_id)
        if policy is None:
            return await self._cancel(key, POLICY_DELETED)
        if not policy.is_active:
            return await self._cancel(key, POLICY_DEACTIVATED)
        action = policy.find_action(key.action_order)
        if action is None or action.type != record.action_type.value:
            return await self._cancel(key, ACTION_REMOVED)
        if not action.is_enabled:
            return await self._cancel(key, ACTION_DISABLED)

        event = TriggerEvent.model_validate(record.event_snapshot)
        result = await self.execute(action, event, policy)
        status = ExecutionStatus.EXECUTED if result.success else ExecutionStatus.FAILED
        details = dict(result.details)
        details["attempts"] = result.attempts
        await self._ledger.complete(
            key,
            status,
            error=result.error,
            result=details,
            executed_at=self._clock.now(),
        )
        return await self._ledger.get(key)

    async def _cancel(self, key: ExecutionKey, reason: str) -> ExecutionRecord | None:
        await self._ledger.complete(
            key, ExecutionStatus.FAILED, error=reason, executed_at=self._clock.now()
        )
        logger.info("execution_cancelled", execution_key=str(key), reason=reason)
        return await self._ledger.get(key)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "action_retrying",
            attempt=retry_state.attempt_number,
            error=describe_error(exc) if exc else None,
        )
