"""Time source shared by the scheduler, worker and action handlers.

All engine timestamps are naive UTC so they round-trip through DateTime
columns unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()
