"""Wires the engine components together for the API and the worker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insiderguard.actions.collaborators import Collaborators, MailService
from insiderguard.actions.executor import ActionExecutor
from insiderguard.actions.handlers import build_registry
from insiderguard.clients.mail import HttpMailClient
from insiderguard.config import Settings
from insiderguard.core.clock import Clock, SystemClock
from insiderguard.db.repositories import (
    SqlAccessControlStore,
    SqlAuditSink,
    SqlIncidentStore,
    SqlMonitoringStore,
    SqlNotificationStore,
)
from insiderguard.dispatch.dispatcher import TriggerDispatcher
from insiderguard.execution.ledger import ExecutionLedger
from insiderguard.policies.repository import SqlPolicySource
from insiderguard.policies.resolver import PolicyResolver
from insiderguard.queue import DeferredActionQueue
from insiderguard.scheduling.scheduler import ActionScheduler
from insiderguard.workers.handler import ActionWorker


@dataclass
class Runtime:
    ledger: ExecutionLedger
    queue: DeferredActionQueue
    notifications: SqlNotificationStore
    resolver: PolicyResolver
    dispatcher: TriggerDispatcher
    executor: ActionExecutor
    worker: ActionWorker
    access: SqlAccessControlStore


def build_runtime(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    mail: MailService | None = None,
    queue: DeferredActionQueue | None = None,
    clock: Clock | None = None,
) -> Runtime:
    clock = clock or SystemClock()
    queue = queue if queue is not None else DeferredActionQueue()

    ledger = ExecutionLedger(session_factory)
    source = SqlPolicySource(session_factory)
    resolver = PolicyResolver(source)
    access = SqlAccessControlStore(session_factory)
    notifications = SqlNotificationStore(session_factory)

    collaborators = Collaborators(
        mail=mail or HttpMailClient.from_settings(settings),
        incidents=SqlIncidentStore(session_factory),
        monitoring=SqlMonitoringStore(session_factory),
        access=access,
        audit=SqlAuditSink(session_factory),
        notifications=notifications,
        management_recipients=list(settings.management_recipients),
        system_alert_roles=list(settings.system_alert_roles),
    )
    executor = ActionExecutor(
        ledger,
        source,
        build_registry(collaborators),
        clock=clock,
        max_retries=settings.delivery_max_retries,
        backoff_multiplier=settings.delivery_backoff_multiplier,
        backoff_max=settings.delivery_backoff_max,
        lease=timedelta(seconds=settings.execution_lease_seconds),
    )
    dispatcher = TriggerDispatcher(
        resolver,
        ActionScheduler(ledger, queue, clock),
        business_hours_start=settings.business_hours_start,
        business_hours_end=settings.business_hours_end,
        concurrency=settings.dispatch_concurrency,
    )
    worker = ActionWorker(
        queue,
        executor,
        ledger,
        clock=clock,
        poll_interval=settings.worker_poll_interval,
        batch_size=settings.worker_batch_size,
    )
    return Runtime(
        ledger=ledger,
        queue=queue,
        notifications=notifications,
        resolver=resolver,
        dispatcher=dispatcher,
        executor=executor,
        worker=worker,
        access=access,
    )
