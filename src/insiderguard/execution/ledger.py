"""
Execution ledger.

One ExecutionRecord per (policy, trigger event, action order). The unique
constraint on that triple is the only guard against duplicate firing:
`try_claim` is a single INSERT ... ON CONFLICT DO NOTHING, so concurrent
dispatches of the same event race on the database, not in Python.

Records are never deleted. Each operation runs in its own short
transaction so that a claim is visible to the worker as soon as it
returns.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insiderguard.core.clock import utcnow
from insiderguard.db.models import ExecutionRecordModel
from insiderguard.db.session import dialect_insert
from insiderguard.domain.models import (
    ActionType,
    ExecutionKey,
    ExecutionRecord,
    ExecutionStatus,
)

logger = structlog.get_logger()

_KEY_COLUMNS = ["policy_id", "trigger_event_id", "action_order"]


def _key_clause(key: ExecutionKey) -> tuple[Any, ...]:
    return (
        ExecutionRecordModel.policy_id == key.policy_id,
        ExecutionRecordModel.trigger_event_id == key.trigger_event_id,
        ExecutionRecordModel.action_order == key.action_order,
    )


def _to_domain(model: ExecutionRecordModel) -> ExecutionRecord:
    return ExecutionRecord(
        id=model.id,
        policy_id=model.policy_id,
        trigger_event_id=model.trigger_event_id,
        action_order=model.action_order,
        action_type=ActionType(model.action_type),
        status=ExecutionStatus(model.status),
        scheduled_at=model.scheduled_at,
        executed_at=model.executed_at,
        error=model.error,
        attempts=model.attempts,
        result=model.result or {},
        event_snapshot=model.event_snapshot or {},
        created_at=model.created_at,
    )


class ExecutionLedger:
    """Idempotent audit log of scheduled and executed actions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def try_claim(
        self,
        key: ExecutionKey,
        *,
        action_type: ActionType,
        scheduled_at: datetime,
        event_snapshot: dict[str, Any] | None = None,
    ) -> bool:
        """Insert a pending record for `key`.

        Returns True if this call owns the key: either no record existed, or
        the existing record had failed and was flipped back to pending.
        Returns False if a pending or executed record already exists.
        """
        snapshot = event_snapshot or {}
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = (
                insert(ExecutionRecordModel)
                .values(
                    policy_id=key.policy_id,
                    trigger_event_id=key.trigger_event_id,
                    action_order=key.action_order,
                    action_type=action_type.value,
                    status=ExecutionStatus.PENDING.value,
                    scheduled_at=scheduled_at,
                    attempts=1,
                    event_snapshot=snapshot,
                    created_at=utcnow(),
                    updated_at=utcnow(),
                )
                .on_conflict_do_nothing(index_elements=_KEY_COLUMNS)
            )
            result = await session.execute(stmt)
            claimed = result.rowcount == 1  # type: ignore[attr-defined]
            reclaimed = False

            if not claimed:
                retry = (
                    update(ExecutionRecordModel)
                    .where(
                        *_key_clause(key),
                        ExecutionRecordModel.status == ExecutionStatus.FAILED.value,
                    )
                    .values(
                        status=ExecutionStatus.PENDING.value,
                        attempts=ExecutionRecordModel.attempts + 1,
                        action_type=action_type.value,
                        scheduled_at=scheduled_at,
                        executed_at=None,
                        error=None,
                        result=None,
                        event_snapshot=snapshot,
                        lease_expires_at=None,
                        updated_at=utcnow(),
                    )
                )
                result = await session.execute(retry)
                reclaimed = claimed = result.rowcount == 1  # type: ignore[attr-defined]

            await session.commit()

        if reclaimed:
            logger.info("claim_reacquired", execution_key=str(key))
        elif not claimed:
            logger.info("claim_duplicate", execution_key=str(key))
        return claimed

    async def complete(
        self,
        key: ExecutionKey,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        result: dict[str, Any] | None = None,
        executed_at: datetime | None = None,
    ) -> bool:
        """Move a pending record to a terminal status. Returns False if it was not pending."""
        if status == ExecutionStatus.PENDING:
            raise ValueError("complete() requires a terminal status")

        async with self._session_factory() as session:
            stmt = (
                update(ExecutionRecordModel)
                .where(
                    *_key_clause(key),
                    ExecutionRecordModel.status == ExecutionStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    error=error,
                    result=result,
                    executed_at=executed_at or utcnow(),
                    updated_at=utcnow(),
                )
            )
            outcome = await session.execute(stmt)
            await session.commit()

        updated = outcome.rowcount == 1  # type: ignore[attr-defined]
        if not updated:
            logger.warning("complete_not_pending", execution_key=str(key), status=status.value)
        return updated

    async def fail_all(self, keys: Iterable[ExecutionKey], reason: str) -> int:
        count = 0
        for key in keys:
            if await self.complete(key, ExecutionStatus.FAILED, error=reason):
                count += 1
        return count

    async def get(self, key: ExecutionKey) -> ExecutionRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ExecutionRecordModel).where(*_key_clause(key)))
            model = result.scalar_one_or_none()
            return _to_domain(model) if model else None

    async def acquire(self, key: ExecutionKey, now: datetime, lease: timedelta) -> bool:
        """Take the execution lease on a pending record.

        Only one worker holds an unexpired lease at a time. A lease left
        behind by a crashed worker can be taken over once it expires.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(ExecutionRecordModel)
                .where(
                    *_key_clause(key),
                    ExecutionRecordModel.status == ExecutionStatus.PENDING.value,
                    or_(
                        ExecutionRecordModel.lease_expires_at.is_(None),
                        ExecutionRecordModel.lease_expires_at <= now,
                    ),
                )
                .values(lease_expires_at=now + lease, updated_at=utcnow())
            )
            await session.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def pending(
        self, *, due_before: datetime | None = None, limit: int | None = None
    ) -> list[ExecutionRecord]:
        """Pending records, earliest first; only those due at `due_before` if given."""
        stmt = select(ExecutionRecordModel).where(
            ExecutionRecordModel.status == ExecutionStatus.PENDING.value
        )
        if due_before is not None:
            stmt = stmt.where(ExecutionRecordModel.scheduled_at <= due_before)
        stmt = stmt.order_by(
            ExecutionRecordModel.scheduled_at,
            ExecutionRecordModel.policy_id,
            ExecutionRecordModel.action_order,
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_domain(m) for m in result.scalars().all()]

    async def records_for_policy(self, policy_id: int, *, limit: int = 100) -> list[ExecutionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionRecordModel)
                .where(ExecutionRecordModel.policy_id == policy_id)
                .order_by(ExecutionRecordModel.created_at.desc(), ExecutionRecordModel.id.desc())
                .limit(limit)
            )
            return [_to_domain(m) for m in result.scalars().all()]

    async def recent_executions(self, policy_id: int, since: datetime) -> int:
        """Number of records created for the policy since `since`, any status."""
        counts = await self.recent_counts([policy_id], since)
        return counts.get(policy_id, 0)

    async def recent_counts(self, policy_ids: Iterable[int], since: datetime) -> dict[int, int]:
        ids = list(policy_ids)
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExecutionRecordModel.policy_id, func.count(ExecutionRecordModel.id))
                .where(
                    ExecutionRecordModel.policy_id.in_(ids),
                    ExecutionRecordModel.created_at >= since,
                )
                .group_by(ExecutionRecordModel.policy_id)
            )
            return {policy_id: count for policy_id, count in result.all()}
