from __future__ import annotations

from datetime import datetime
from typing import Protocol

from insiderguard.domain.models import ExecutionKey
from insiderguard.queue.memory import DeferredActionQueue
from insiderguard.queue.models import ScheduledJob


class DeferredQueue(Protocol):
    async def submit(self, key: ExecutionKey, scheduled_at: datetime) -> ScheduledJob: ...

    def due(self, now: datetime) -> list[ScheduledJob]: ...


__all__ = [
    "DeferredActionQueue",
    "DeferredQueue",
    "ScheduledJob",
]
