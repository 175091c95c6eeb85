from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from insiderguard.domain.models import ExecutionKey


@dataclass(slots=True, order=True)
class ScheduledJob:
    """An action due at `scheduled_at`. `seq` keeps submission order on equal times."""

    scheduled_at: datetime
    seq: int
    key: ExecutionKey = field(compare=False)
