"""Running counters exposed as a read-only diagnostics snapshot."""

from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime
from typing import Optional

from ecobin_ingest.models import Priority


class StatsTracker:
    """Aggregate received/saved/filtered/critical-saved/failed counters."""

    def __init__(self, started_at: datetime) -> None:
        self._lock = threading.Lock()
        self.received = 0
        self.saved = 0
        self.filtered = 0
        self.critical_saved = 0
        self.failed = 0
        self.offline_recorded = 0
        self.filtered_by_reason: Counter[str] = Counter()
        self.started_at = started_at
        self.last_cleanup: Optional[datetime] = None

    def record_received(self) -> None:
        with self._lock:
            self.received += 1

    def record_offline_event(self) -> None:
        """Count a synthetic offline-history event (not telemetry)."""
        with self._lock:
            self.offline_recorded += 1

    def record_filtered(self, reason: str) -> None:
        with self._lock:
            self.filtered += 1
            self.filtered_by_reason[reason] += 1

    def record_saved(self, priority: Priority) -> None:
        with self._lock:
            self.saved += 1
            if priority is Priority.CRITICAL:
                self.critical_saved += 1

    def record_failed(self) -> None:
        with self._lock:
            self.failed += 1

    def record_cleanup(self, at: datetime) -> None:
        self.last_cleanup = at

    def snapshot(self, buffer_sizes: dict[str, int], latest_size: int = 0) -> dict:
        """Point-in-time copy of every counter plus buffer occupancy."""
        with self._lock:
            return {
                "received": self.received,
                "saved": self.saved,
                "filtered": self.filtered,
                "critical_saved": self.critical_saved,
                "failed": self.failed,
                "offline_recorded": self.offline_recorded,
                "filtered_by_reason": dict(self.filtered_by_reason),
                "buffers": dict(buffer_sizes),
                "latest_size": latest_size,
                "started_at": self.started_at.isoformat(),
                "last_cleanup": self.last_cleanup.isoformat() if self.last_cleanup else None,
            }
