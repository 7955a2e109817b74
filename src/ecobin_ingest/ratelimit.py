"""Daily counters with per-subject and global ceilings.

Counters are keyed ``(category, subject, day)``. The day rolls over at
``reset_hour`` (0 = midnight UTC), so with ``reset_hour=6`` an action at
05:59 still counts against the previous day.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from ecobin_ingest.clock import Clock

logger = logging.getLogger(__name__)

GLOBAL_SUBJECT = "*"


class RateLimiter:
    """Count actions per category/subject/day against configured ceilings.

    Parameters
    ----------
    limits:
        ``category → (per_subject_ceiling, global_ceiling)``. A ceiling of
        ``0`` disables that check.
    clock:
        Time source for the day boundary.
    reset_hour:
        Hour of day (0–23) at which counts reset.
    """

    def __init__(
        self,
        limits: dict[str, tuple[int, int]],
        clock: Clock,
        reset_hour: int = 0,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: dict[tuple[str, str, str], int] = {}
        self.configure(limits, reset_hour)

    def configure(self, limits: dict[str, tuple[int, int]], reset_hour: int) -> None:
        self._limits = dict(limits)
        self._reset_hour = reset_hour

    def day(self, moment: datetime | None = None) -> str:
        """The rate-limit day that *moment* (default: now) falls into."""
        moment = moment or self._clock.now()
        return (moment - timedelta(hours=self._reset_hour)).date().isoformat()

    def next_reset(self) -> datetime:
        """The next instant at which counts roll over."""
        now = self._clock.now()
        boundary = now.replace(hour=self._reset_hour, minute=0, second=0, microsecond=0)
        if boundary <= now:
            boundary += timedelta(days=1)
        return boundary

    def count(self, category: str, subject: str) -> int:
        return self._counts.get((category, subject, self.day()), 0)

    def remaining(self, category: str, subject: str) -> int | None:
        """Actions left today for *subject*; ``None`` when unlimited."""
        per_subject, _ = self._limits.get(category, (0, 0))
        if not per_subject:
            return None
        return max(0, per_subject - self.count(category, subject))

    def check(self, category: str, subject: str) -> bool:
        """True when one more action is within both ceilings."""
        with self._lock:
            return self._within(category, subject, self.day())

    def record(self, category: str, subject: str) -> int:
        """Count one action; returns the subject's new count for today."""
        with self._lock:
            return self._increment(category, subject, self.day())

    def try_acquire(self, category: str, subject: str) -> bool:
        """Atomically check and record. Returns False when over a ceiling."""
        day = self.day()
        with self._lock:
            if not self._within(category, subject, day):
                allowed = False
            else:
                self._increment(category, subject, day)
                allowed = True
        if not allowed:
            logger.info("Rate limit reached for %s/%s", category, subject)
        return allowed

    def _within(self, category: str, subject: str, day: str) -> bool:
        per_subject, global_ceiling = self._limits.get(category, (0, 0))
        if per_subject and self._counts.get((category, subject, day), 0) >= per_subject:
            return False
        if global_ceiling and self._counts.get((category, GLOBAL_SUBJECT, day), 0) >= global_ceiling:
            return False
        return True

    def _increment(self, category: str, subject: str, day: str) -> int:
        key = (category, subject, day)
        self._counts[key] = self._counts.get(key, 0) + 1
        gkey = (category, GLOBAL_SUBJECT, day)
        self._counts[gkey] = self._counts.get(gkey, 0) + 1
        return self._counts[key]

    def purge(self) -> int:
        """Drop counters that do not belong to the current day."""
        today = self.day()
        with self._lock:
            stale = [k for k in self._counts if k[2] != today]
            for key in stale:
                del self._counts[key]
        return len(stale)
