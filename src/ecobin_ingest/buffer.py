"""In-memory tier buffers holding the latest unflushed record per unit.

Each tier maps ``unit_id → ClassifiedRecord``. A new record for a unit
replaces the unflushed one in the same tier, so only the latest state per
unit is ever flushed.

A separate *latest* view remembers the most recent accepted record for
every unit across flushes, for last-known-reading lookups.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

from ecobin_ingest.models import TIERS, ClassifiedRecord, Priority


class TieredBuffer:
    """Thread-safe, latest-wins slots per ``(tier, unit)``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tiers: dict[Priority, dict[str, ClassifiedRecord]] = {t: {} for t in TIERS}
        self._latest: dict[str, ClassifiedRecord] = {}

    def put(self, record: ClassifiedRecord) -> int:
        """Upsert *record* into its tier's slot for its unit.

        Returns
        -------
        int
            The tier's slot count after the upsert.
        """
        with self._lock:
            slots = self._tiers[record.priority]
            # Re-insert so dict order tracks arrival order for take().
            slots.pop(record.unit_id, None)
            slots[record.unit_id] = record
            self._latest[record.unit_id] = record
            return len(slots)

    def remember(self, record: ClassifiedRecord) -> None:
        """Update the latest view without buffering (used for critical records)."""
        with self._lock:
            self._latest[record.unit_id] = record

    def get(self, tier: Priority, unit_id: str) -> Optional[ClassifiedRecord]:
        return self._tiers[tier].get(unit_id)

    def size(self, tier: Priority) -> int:
        return len(self._tiers[tier])

    def sizes(self) -> dict[str, int]:
        with self._lock:
            return {t.value: len(self._tiers[t]) for t in TIERS}

    def take(self, tier: Priority, limit: int) -> list[ClassifiedRecord]:
        """Snapshot of up to *limit* slots, oldest arrival first.

        Slots stay in place; the caller removes them with
        :meth:`discard_if_same` once handled.
        """
        with self._lock:
            slots = self._tiers[tier]
            batch = []
            for record in slots.values():
                if len(batch) >= limit:
                    break
                batch.append(record)
            return batch

    def discard_if_same(self, tier: Priority, record: ClassifiedRecord) -> bool:
        """Remove the unit's slot only if it still holds *record*.

        A newer arrival that replaced the slot while *record* was being
        flushed is left in place for the next flush.
        """
        with self._lock:
            slots = self._tiers[tier]
            if slots.get(record.unit_id) is record:
                del slots[record.unit_id]
                return True
            return False

    def sweep(self, cutoff: datetime) -> int:
        """Drop slots and latest entries buffered before *cutoff*."""
        removed = 0
        with self._lock:
            for slots in self._tiers.values():
                stale = [u for u, r in slots.items() if r.buffered_at < cutoff]
                for unit_id in stale:
                    del slots[unit_id]
                removed += len(stale)
            for unit_id in [u for u, r in self._latest.items() if r.buffered_at < cutoff]:
                del self._latest[unit_id]
        return removed

    def latest(self, unit_id: str) -> Optional[ClassifiedRecord]:
        return self._latest.get(unit_id)

    def all_latest(self) -> list[ClassifiedRecord]:
        with self._lock:
            return list(self._latest.values())

    @property
    def latest_size(self) -> int:
        return len(self._latest)
