"""Injectable wall-clock used for windows, daily resets and freshness."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """The real UTC clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def day_key(moment: datetime) -> str:
    """Calendar-day marker (``YYYY-MM-DD``) for *moment*."""
    return moment.date().isoformat()
