"""Drain tier buffers into the durable store in bounded batches.

A flush for a tier is guarded by that tier's :class:`asyncio.Lock`, so a
timer-driven flush and a size-overflow flush never interleave. Records in
a batch are persisted concurrently; one record's failure or timeout does
not affect its siblings.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ecobin_ingest.buffer import TieredBuffer
from ecobin_ingest.clock import Clock
from ecobin_ingest.errors import PersistenceError
from ecobin_ingest.models import TIERS, ClassifiedRecord, FlushResult, Priority
from ecobin_ingest.stats import StatsTracker
from ecobin_ingest.store import DurableStore

logger = logging.getLogger(__name__)


async def persist(
    store: DurableStore,
    record: ClassifiedRecord,
    clock: Clock,
    timeout: float,
) -> str:
    """Create one record in *store*, bounded by *timeout* seconds.

    Raises
    ------
    PersistenceError
        On any store failure or timeout.
    """
    document = record.to_document(created_at=clock.now())
    try:
        return await asyncio.wait_for(store.create(document), timeout=timeout)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        raise PersistenceError(record.unit_id, exc) from exc


class BatchFlusher:
    """Moves buffered records to the store, one bounded batch at a time.

    Parameters
    ----------
    buffer:
        The tier buffers to drain.
    store:
        Durable store collaborator.
    stats:
        Counters updated with saved/failed outcomes.
    clock:
        Supplies ``created_at`` for stored documents.
    batch_size:
        Maximum slots drained per flush.
    timeout:
        Per-record store timeout in seconds.
    """

    def __init__(
        self,
        buffer: TieredBuffer,
        store: DurableStore,
        stats: StatsTracker,
        clock: Clock,
        batch_size: int = 100,
        timeout: float = 30.0,
    ) -> None:
        self._buffer = buffer
        self._store = store
        self._stats = stats
        self._clock = clock
        self.batch_size = batch_size
        self.timeout = timeout
        self._locks = {tier: asyncio.Lock() for tier in TIERS}
        self._pending: dict[Priority, Optional[asyncio.Task]] = {tier: None for tier in TIERS}

    def is_flushing(self, tier: Priority) -> bool:
        return self._locks[tier].locked()

    async def flush(self, tier: Priority) -> FlushResult:
        """Drain up to ``batch_size`` slots of *tier* into the store."""
        async with self._locks[tier]:
            batch = self._buffer.take(tier, self.batch_size)
            result = FlushResult(tier=tier, attempted=len(batch))
            if not batch:
                return result

            outcomes = await asyncio.gather(
                *(persist(self._store, r, self._clock, self.timeout) for r in batch),
                return_exceptions=True,
            )

            for record, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    result.failed += 1
                    self._stats.record_failed()
                    logger.error("Dropping %s record: %s", tier.value, outcome)
                else:
                    result.saved += 1
                    self._stats.record_saved(tier)
                # Handled either way; a newer arrival for the unit stays.
                self._buffer.discard_if_same(tier, record)

            result.remaining = self._buffer.size(tier)

        logger.info(
            "Flushed %d/%d %s records (%d failed, %d remaining)",
            result.saved,
            result.attempted,
            tier.value,
            result.failed,
            result.remaining,
        )
        return result

    async def flush_all(self) -> dict[Priority, list[FlushResult]]:
        """Drain every tier completely, critical first."""
        results: dict[Priority, list[FlushResult]] = {}
        for tier in TIERS:
            results[tier] = []
            while True:
                outcome = await self.flush(tier)
                results[tier].append(outcome)
                # Stop when empty, or when nothing could be taken at all.
                if outcome.remaining == 0 or outcome.attempted == 0:
                    break
        return results

    def schedule_overflow_flush(self, tier: Priority) -> None:
        """Start a background flush for *tier* unless one is already queued."""
        pending = self._pending[tier]
        if pending is not None and not pending.done():
            return
        logger.info("Buffer size limit reached for %s, processing batch", tier.value)
        self._pending[tier] = asyncio.get_running_loop().create_task(
            self.flush(tier), name=f"overflow-flush-{tier.value}"
        )

    async def wait_pending(self) -> None:
        """Await any overflow flushes still in flight."""
        tasks = [t for t in self._pending.values() if t is not None and not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
