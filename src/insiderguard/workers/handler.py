from __future__ import annotations

import asyncio
from datetime import datetime

import structlog

from insiderguard.actions.executor import ActionExecutor
from insiderguard.config import Settings, get_settings
from insiderguard.core.clock import Clock, SystemClock
from insiderguard.core.errors import describe_error
from insiderguard.domain.models import ExecutionKey, ExecutionRecord
from insiderguard.execution.ledger import ExecutionLedger
from insiderguard.queue import DeferredActionQueue

logger = structlog.get_logger()


class ActionWorker:
    """Runs scheduled actions once they are due.

    Every poll merges the due jobs of the in-process timer queue with the
    pending ledger records that are due, so actions claimed by another
    process, scheduled before a restart, or left pending by a failed run
    are picked up on the next poll. The executor's lease keeps concurrent
    workers from running the same record twice.
    """

    def __init__(
        self,
        queue: DeferredActionQueue,
        executor: ActionExecutor,
        ledger: ExecutionLedger,
        *,
        clock: Clock | None = None,
        poll_interval: float = 1.0,
        batch_size: int = 100,
    ) -> None:
        self._queue = queue
        self._executor = executor
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def _due(self, now: datetime) -> list[ExecutionKey]:
        due: dict[ExecutionKey, datetime] = {}
        for job in self._queue.due(now):
            due.setdefault(job.key, job.scheduled_at)
        try:
            records = await self._ledger.pending(due_before=now, limit=self._batch_size)
        except Exception as exc:
            logger.error("ledger_poll_failed", error=describe_error(exc), exc_info=True)
            records = []
        for record in records:
            due.setdefault(record.key, record.scheduled_at)
        # sorted() is stable: queue submission order wins on equal times
        return [key for key, _ in sorted(due.items(), key=lambda item: item[1])]

    async def run_pending(self, now: datetime | None = None) -> list[ExecutionRecord]:
        """Execute every action due at `now`, earliest first."""
        results: list[ExecutionRecord] = []
        for key in await self._due(now or self._clock.now()):
            log = logger.bind(execution_key=str(key))
            try:
                record = await self._executor.run(key)
            except Exception as exc:
                # Record stays pending; a later poll retries it once no lease is held
                log.error("job_processing_failed", error=describe_error(exc), exc_info=True)
                continue
            if record is not None:
                results.append(record)
        return results

    async def run_forever(self) -> None:
        logger.info("worker_started", poll_interval=self._poll_interval)
        while not self._stopping.is_set():
            await self.run_pending()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info("worker_stopped")

    def start(self) -> None:
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self.run_forever())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None


def main() -> None:
    """Standalone worker process: `python -m insiderguard.workers.handler`."""
    from insiderguard.db.session import get_session_factory, init_engine
    from insiderguard.logging import configure_logging
    from insiderguard.runtime import build_runtime

    settings: Settings = get_settings()
    configure_logging(settings)
    init_engine(settings)
    runtime = build_runtime(settings, get_session_factory())
    asyncio.run(runtime.worker.run_forever())


if __name__ == "__main__":
    main()
