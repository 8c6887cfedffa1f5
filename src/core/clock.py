"""Time source used by every state transition."""

from datetime import datetime, timezone
from functools import lru_cache
from typing import Protocol


class Clock(Protocol):
    """Anything that can tell the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@lru_cache
def get_clock() -> Clock:
    """Get the process-wide clock."""
    return SystemClock()
