"""Suppression of repeated error reports per unit.

Each ``(unit, category)`` pair keeps a :class:`DuplicateTrackerEntry`.
An occurrence is filtered when:

    1. the same category was last seen less than ``window_seconds`` ago
       → reason ``duplicate_error``
    2. today's count already reached the category's daily ceiling
       → reason ``daily_limit_exceeded``

Connectivity categories get a higher ceiling (``max_offline_per_day``)
than every other category (``max_per_day``). Events with no category are
never duplicates.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from ecobin_ingest.clock import Clock, day_key
from ecobin_ingest.config import DuplicateConfig, ValidationConfig
from ecobin_ingest.models import (
    DuplicateTrackerEntry,
    DuplicateVerdict,
    ErrorCategory,
    TelemetryEvent,
)

logger = logging.getLogger(__name__)

# Ordered: first keyword group that matches wins.
_KEYWORDS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("malfunction", "sensor failure"), ErrorCategory.MALFUNCTION),
    (("communication", "connection"), ErrorCategory.COMMUNICATION_LOST),
    (("power", "battery"), ErrorCategory.POWER_FAILURE),
    (("gps", "satellite"), ErrorCategory.GPS_INVALID),
    (("weight", "level"), ErrorCategory.WEIGHT_ANOMALY),
)


def detect_error_category(error_text: str) -> ErrorCategory:
    """Map free-form unit error text onto an :class:`ErrorCategory`."""
    message = error_text.lower()
    for keywords, category in _KEYWORDS:
        if any(k in message for k in keywords):
            return category
    return ErrorCategory.UNKNOWN_ERROR


def gps_unreliable(event: TelemetryEvent, min_satellites: int) -> bool:
    """True when the fix is flagged invalid, under-constrained, or (0,0)."""
    satellites = event.satellite_count or 0
    zero_fix = event.gps is not None and event.gps.is_zero
    return not event.gps_valid or satellites < min_satellites or zero_fix


def category_for(event: TelemetryEvent, min_satellites: int) -> Optional[ErrorCategory]:
    """Error category for *event*: explicit text first, then GPS quality."""
    if event.error_text:
        return detect_error_category(event.error_text)
    if gps_unreliable(event, min_satellites):
        return ErrorCategory.GPS_INVALID
    return None


class DuplicateGuard:
    """Sliding-window and daily-ceiling suppression of repeated errors.

    Parameters
    ----------
    config:
        Window length and daily ceilings.
    validation:
        Supplies ``min_satellites`` for the GPS-derived category.
    clock:
        Time source for windows and day boundaries.
    """

    def __init__(
        self,
        config: DuplicateConfig,
        validation: ValidationConfig,
        clock: Clock,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, ErrorCategory], DuplicateTrackerEntry] = {}
        self.configure(config, validation)

    def configure(self, config: DuplicateConfig, validation: ValidationConfig) -> None:
        """Apply new thresholds; tracked entries are kept."""
        self._window = config.window_seconds
        self._max_per_day = config.max_per_day
        self._max_offline_per_day = config.max_offline_per_day
        self._connectivity = frozenset(config.connectivity_categories)
        self._min_satellites = validation.min_satellites

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, unit_id: str, category: ErrorCategory) -> Optional[DuplicateTrackerEntry]:
        """The tracker entry for ``(unit_id, category)``, if any."""
        return self._entries.get((unit_id, category))

    def daily_ceiling(self, category: ErrorCategory) -> int:
        if category.value in self._connectivity:
            return self._max_offline_per_day
        return self._max_per_day

    def check(self, event: TelemetryEvent) -> DuplicateVerdict:
        """Decide whether *event* repeats a recently recorded error.

        An allowed occurrence is recorded before returning, so the check
        and the tracker update are one step.
        """
        category = category_for(event, self._min_satellites)
        if category is None:
            return DuplicateVerdict(is_duplicate=False)

        now = self._clock.now()
        today = day_key(now)
        key = (event.unit_id, category)

        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                elapsed = (now - existing.last_seen).total_seconds()
                if elapsed < self._window:
                    return DuplicateVerdict(
                        is_duplicate=True,
                        category=category,
                        reason="duplicate_error",
                        seconds_since_last=elapsed,
                        count=existing.count,
                        day_count=existing.day_count,
                    )
                if existing.day == today and existing.day_count >= self.daily_ceiling(category):
                    return DuplicateVerdict(
                        is_duplicate=True,
                        category=category,
                        reason="daily_limit_exceeded",
                        seconds_since_last=elapsed,
                        count=existing.count,
                        day_count=existing.day_count,
                    )

            if existing is None:
                entry = DuplicateTrackerEntry(last_seen=now, count=1, day_count=1, day=today)
                self._entries[key] = entry
            else:
                existing.last_seen = now
                existing.count += 1
                existing.day_count = 1 if existing.day != today else existing.day_count + 1
                existing.day = today
                entry = existing

        return DuplicateVerdict(
            is_duplicate=False,
            category=category,
            count=entry.count,
            day_count=entry.day_count,
        )

    def cleanup(self) -> int:
        """Drop entries whose day marker is not today. Returns the number removed."""
        today = day_key(self._clock.now())
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.day != today]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Purged %d duplicate tracker entries", len(stale))
        return len(stale)
