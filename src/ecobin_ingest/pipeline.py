"""The ingestion service: validate → dedup → classify → persist or buffer.

Data flow for every incoming payload::

    raw ─► decode ─► validate ─► duplicate guard ─► classify
                        │                              │
                        └─► health scorer              ├─ critical ─► store (now)
                                                       └─ other    ─► tier buffer ─► flusher ─► store

One :class:`TelemetryPipeline` owns every tracker, buffer and timer; its
lifetime is bounded by :meth:`TelemetryPipeline.start` and
:meth:`TelemetryPipeline.shutdown`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from ecobin_ingest.buffer import TieredBuffer
from ecobin_ingest.classifier import classify, determine_status
from ecobin_ingest.clock import Clock, SystemClock
from ecobin_ingest.config import AppConfig, check_config
from ecobin_ingest.decoder import decode_event
from ecobin_ingest.dedup import DuplicateGuard
from ecobin_ingest.errors import DuplicateFiltered, PersistenceError, ValidationError
from ecobin_ingest.flusher import BatchFlusher, persist
from ecobin_ingest.health import NOTIFY_CATEGORY, ConnectionHealthScorer
from ecobin_ingest.models import (
    TIERS,
    ClassifiedRecord,
    FlushResult,
    MalformedEvent,
    OfflineTransition,
    Priority,
    ProcessResult,
    TelemetryEvent,
)
from ecobin_ingest.notifier import AlertDispatcher, Notifier
from ecobin_ingest.ratelimit import RateLimiter
from ecobin_ingest.scheduler import PeriodicTask
from ecobin_ingest.stats import StatsTracker
from ecobin_ingest.store import DurableStore
from ecobin_ingest.validator import validate

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, dict, TelemetryEvent]


def _timer_intervals(cfg: AppConfig) -> dict[str, float]:
    iv = cfg.intervals
    return {
        "flush-critical": iv.critical_seconds,
        "flush-warning": iv.warning_seconds,
        "flush-normal": iv.normal_seconds,
        "health-check": iv.health_check_seconds,
        "cleanup": iv.cleanup_seconds,
    }


def _notify_limits(cfg: AppConfig) -> dict[str, tuple[int, int]]:
    rl = cfg.rate_limits
    return {NOTIFY_CATEGORY: (rl.max_notifications_per_unit, rl.max_global_notifications)}


class TelemetryPipeline:
    """Single logical ingestion instance.

    Parameters
    ----------
    config:
        Validated application configuration.
    store:
        Durable store collaborator (``async create(document) -> id``).
    notifier:
        Alerting collaborator; ``None`` disables alerts.
    clock:
        Injected time source; defaults to the system UTC clock.

    Raises
    ------
    ConfigurationError
        If *config* fails semantic checks.
    """

    def __init__(
        self,
        config: AppConfig,
        store: DurableStore,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        check_config(config)
        self.config = config
        self._clock = clock or SystemClock()
        self._store = store

        self._stats = StatsTracker(started_at=self._clock.now())
        self.buffer = TieredBuffer()
        self.guard = DuplicateGuard(config.duplicates, config.validation, self._clock)
        self.rate_limiter = RateLimiter(
            _notify_limits(config), self._clock, config.rate_limits.reset_hour
        )
        self.dispatcher = AlertDispatcher(notifier if config.alerts.enabled else None)
        self.health = ConnectionHealthScorer(
            config.health,
            self._clock,
            self.dispatcher,
            rate_limiter=self.rate_limiter,
            on_offline=self._record_offline,
        )
        self.flusher = BatchFlusher(
            self.buffer,
            store,
            self._stats,
            self._clock,
            batch_size=config.buffer.batch_size,
            timeout=config.buffer.store_timeout_seconds,
        )
        self._timers: dict[str, PeriodicTask] = {}

    # ── ingestion ───────────────────────────────────────────────────

    async def process(self, raw: RawPayload) -> ProcessResult:
        """Ingest one payload and report what happened to it.

        Never raises for data problems: rejections, suppressions and store
        failures come back as a :class:`ProcessResult` with a reason code.
        """
        return await self._ingest(raw)

    async def _ingest(self, raw: RawPayload, synthetic: bool = False) -> ProcessResult:
        now = self._clock.now()
        if synthetic:
            self._stats.record_offline_event()
        else:
            self._stats.record_received()

        event = raw if isinstance(raw, TelemetryEvent) else decode_event(raw, now)
        if isinstance(event, MalformedEvent):
            self._stats.record_filtered("malformed_input")
            logger.debug("Malformed payload: %s", event.error.get("message"))
            return ProcessResult(
                accepted=False,
                action="filtered",
                reason="malformed_input",
                errors=[event.error.get("message", "")],
            )

        try:
            record = self._admit(event, not synthetic, now)
        except ValidationError as exc:
            self._stats.record_filtered(exc.reason)
            logger.debug("Rejected event for %r: %s", event.unit_id, exc.errors)
            return ProcessResult(
                accepted=False,
                action="filtered",
                reason=exc.reason,
                errors=exc.errors,
            )
        except DuplicateFiltered as exc:
            self._stats.record_filtered(exc.reason)
            logger.info("Duplicate error for unit %s", exc)
            return ProcessResult(
                accepted=False,
                action="filtered",
                reason=exc.reason,
                category=exc.category,
            )

        if record.priority is Priority.CRITICAL:
            return await self._save_immediately(record)
        return self._buffer_record(record)

    def _admit(self, event: TelemetryEvent, observe: bool, now: datetime) -> ClassifiedRecord:
        """Validate, dedup and classify *event*.

        Raises
        ------
        ValidationError
            The event is out of range.
        DuplicateFiltered
            The event repeats a recently recorded error.
        """
        cfg = self.config
        validation = validate(event, cfg.validation)
        if not validation.is_valid:
            raise ValidationError(validation.errors)

        # Even a suppressed repeat proves the unit is reporting.
        if observe:
            self.health.observe(event, received_at=now)

        verdict = self.guard.check(event)
        if verdict.is_duplicate:
            raise DuplicateFiltered(event.unit_id, verdict.category, verdict.reason)

        classification = classify(
            event, validation, verdict.category, cfg.classification, cfg.validation
        )
        return ClassifiedRecord(
            event=event,
            priority=classification.priority,
            status=determine_status(
                verdict.category,
                classification.priority,
                cfg.classification,
                has_error_text=bool(event.error_text),
            ),
            error_category=verdict.category,
            reasons=tuple(classification.reasons),
            buffered_at=now,
        )

    async def _save_immediately(self, record: ClassifiedRecord) -> ProcessResult:
        self.buffer.remember(record)
        try:
            record_id = await persist(
                self._store, record, self._clock, self.config.buffer.store_timeout_seconds
            )
        except PersistenceError as exc:
            self._stats.record_failed()
            logger.error("Critical record not saved: %s", exc)
            return ProcessResult(
                accepted=False,
                action="save_error",
                reason="save_error",
                priority=record.priority,
                category=record.error_category,
                errors=[str(exc)],
            )

        self._stats.record_saved(record.priority)
        logger.info(
            "Saved critical record for unit %s (%s)", record.unit_id, ",".join(record.reasons)
        )
        return ProcessResult(
            accepted=True,
            action="saved_immediately",
            priority=record.priority,
            record_id=record_id,
            category=record.error_category,
        )

    def _buffer_record(self, record: ClassifiedRecord) -> ProcessResult:
        size = self.buffer.put(record)
        if size > self.config.buffer.max_buffer_size:
            self.flusher.schedule_overflow_flush(record.priority)
        logger.debug(
            "Buffered %s record for unit %s (buffer size: %d)",
            record.priority.value,
            record.unit_id,
            size,
        )
        return ProcessResult(
            accepted=True,
            action="buffered",
            priority=record.priority,
            category=record.error_category,
            buffer_size=size,
        )

    async def _record_offline(self, transition: OfflineTransition) -> None:
        """Record an offline transition as connection-error history.

        Goes through the normal path so the duplicate guard's daily ceiling
        for connectivity errors still applies.
        """
        if not self.config.health.record_offline_events:
            return
        event = TelemetryEvent(
            unit_id=transition.unit_id,
            observed_at=transition.at,
            error_text=f"Connection lost (BIN_OFFLINE): {transition.reason}",
        )
        result = await self._ingest(event, synthetic=True)
        if result.accepted:
            logger.info("Logged connection error for unit %s", transition.unit_id)
        else:
            logger.info(
                "Connection error filtered for unit %s: %s", transition.unit_id, result.reason
            )

    # ── flushing, health, cleanup ───────────────────────────────────

    async def flush(self, tier: Priority) -> FlushResult:
        return await self.flusher.flush(tier)

    async def flush_all(self) -> dict[Priority, list[FlushResult]]:
        await self.flusher.wait_pending()
        return await self.flusher.flush_all()

    async def check_health(self) -> list[OfflineTransition]:
        return await self.health.check_all()

    def cleanup(self) -> dict[str, int]:
        """Sweep buffer slots past retention and purge stale daily trackers."""
        now = self._clock.now()
        cutoff = now - timedelta(seconds=self.config.buffer.retention_seconds)
        removed = {
            "buffer": self.buffer.sweep(cutoff),
            "duplicates": self.guard.cleanup(),
            "rate_limits": self.rate_limiter.purge(),
            "notifications": self.health.cleanup(),
        }
        self._stats.record_cleanup(now)
        logger.info("Cleanup completed: %s", removed)
        return removed

    async def _cleanup_tick(self) -> None:
        self.cleanup()

    def _make_timer(self, name: str, interval: float) -> PeriodicTask:
        if name.startswith("flush-"):
            tier = Priority(name.split("-", 1)[1])

            async def _tick() -> None:
                await self.flusher.flush(tier)

            return PeriodicTask(name, interval, _tick)
        if name == "health-check":
            return PeriodicTask(name, interval, self.check_health)
        return PeriodicTask(name, interval, self._cleanup_tick)

    # ── lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the per-tier flush timers, the health tick and the cleanup sweep."""
        for name, interval in _timer_intervals(self.config).items():
            timer = self._timers.get(name) or self._make_timer(name, interval)
            self._timers[name] = timer
            timer.start()
        logger.info("Pipeline %s started", self.config.instance_id)

    async def shutdown(self) -> None:
        """Force-flush every tier before stopping timers, then await in-flight handlers."""
        logger.info("Pipeline shutting down, flushing buffers")
        await self.health.drain()
        results = await self.flush_all()
        for timer in self._timers.values():
            await timer.stop()
        await self.health.drain()
        await self.dispatcher.drain()
        saved = sum(r.saved for batches in results.values() for r in batches)
        logger.info("Pipeline shut down (flushed %d records)", saved)

    async def reload_config(self, new_config: AppConfig) -> None:
        """Apply *new_config* without a restart.

        Only timers whose interval changed are restarted. Alert routing
        (``alerts``) is fixed at construction.

        Raises
        ------
        ConfigurationError
            If *new_config* is invalid; the running config is kept.
        """
        check_config(new_config)
        self.config = new_config
        self.guard.configure(new_config.duplicates, new_config.validation)
        self.rate_limiter.configure(_notify_limits(new_config), new_config.rate_limits.reset_hour)
        self.health.config = new_config.health
        self.flusher.batch_size = new_config.buffer.batch_size
        self.flusher.timeout = new_config.buffer.store_timeout_seconds

        for name, interval in _timer_intervals(new_config).items():
            timer = self._timers.get(name)
            if timer is not None and timer.interval != interval:
                await timer.restart(interval)
        logger.info("Configuration reloaded")

    # ── read-only views ─────────────────────────────────────────────

    def timer_intervals(self) -> dict[str, float]:
        return {name: t.interval for name, t in self._timers.items()}

    def latest(self, unit_id: str) -> Optional[ClassifiedRecord]:
        """Most recent accepted record for *unit_id*, flushed or not."""
        return self.buffer.latest(unit_id)

    def stats(self) -> dict:
        """Counters, per-tier buffer occupancy and health summary."""
        snap = self._stats.snapshot(self.buffer.sizes(), self.buffer.latest_size)
        snap["health"] = self.health.summary()
        return snap

    def buffer_sizes(self) -> dict[str, int]:
        return {t.value: self.buffer.size(t) for t in TIERS}
