from __future__ import annotations

import heapq
import itertools
from datetime import datetime

from insiderguard.core.errors import SchedulingError
from insiderguard.domain.models import ExecutionKey
from insiderguard.queue.models import ScheduledJob


class DeferredActionQueue:
    """Timer heap of scheduled actions ordered by (scheduled_at, submission order).

    Jobs are only handed out once due. This is the in-process fast path;
    the worker also polls the execution ledger, which is the durable copy.
    """

    def __init__(self) -> None:
        self._heap: list[ScheduledJob] = []
        self._seq = itertools.count()
        self._closed = False

    async def submit(self, key: ExecutionKey, scheduled_at: datetime) -> ScheduledJob:
        if self._closed:
            raise SchedulingError("deferred action queue is closed", details={"key": str(key)})
        job = ScheduledJob(scheduled_at=scheduled_at, seq=next(self._seq), key=key)
        heapq.heappush(self._heap, job)
        return job

    def due(self, now: datetime) -> list[ScheduledJob]:
        """Pop every job whose scheduled_at is at or before `now`, in order."""
        jobs = []
        while self._heap and self._heap[0].scheduled_at <= now:
            jobs.append(heapq.heappop(self._heap))
        return jobs

    def next_due(self) -> datetime | None:
        return self._heap[0].scheduled_at if self._heap else None

    def close(self) -> None:
        self._closed = True

    def reopen(self) -> None:
        self._closed = False

    def __len__(self) -> int:
        return len(self._heap)
