"""Per-unit connection health score and hysteresis state machine.

Score (0–100) from the latest known sample::

    heartbeat age ≤ fresh_seconds            +40
    heartbeat age ≤ offline_timeout_seconds  +20
    satellites ≥ min_satellites              +10
    gps_valid                                 +5
    signal quality ≥ 10 / ≥ 5                +10 / +5
    registration in registered_states        +15
    data session active                      +10
    uptime advanced ≥ 60 s since last check  +10
    message sequence increased / unchanged    +5 / −10

State transitions per check::

    score ≥ online_score                → online     (reset counters)
    suspect_score ≤ score < online      → suspected  (offline stays offline)
    score < suspect_score               → offline after N consecutive lows,
                                          suspected before that

A transition *into* offline notifies at most once per unit per day.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ecobin_ingest.clock import Clock, day_key
from ecobin_ingest.config import HealthConfig
from ecobin_ingest.models import (
    ConnectionState,
    HealthState,
    OfflineTransition,
    TelemetryEvent,
)
from ecobin_ingest.notifier import AlertDispatcher
from ecobin_ingest.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

NOTIFY_CATEGORY = "notification"

# Age assumed for a unit that has never reported.
_NO_DATA_AGE = timedelta(hours=24)

OfflineCallback = Callable[[OfflineTransition], Awaitable[object]]


def score_breakdown(
    sample: Optional[TelemetryEvent],
    age_seconds: float,
    prev: ConnectionState,
    cfg: HealthConfig,
) -> list[tuple[str, int]]:
    """Every scoring rule that fired, as ``(label, points)`` pairs."""
    parts: list[tuple[str, int]] = []

    if age_seconds <= cfg.fresh_seconds:
        parts.append(("fresh_heartbeat", 40))
    elif age_seconds <= cfg.offline_timeout_seconds:
        parts.append(("recent_heartbeat", 20))

    if sample is None:
        return parts

    if (sample.satellite_count or 0) >= cfg.min_satellites:
        parts.append(("satellites", 10))
    if sample.gps_valid:
        parts.append(("gps_valid", 5))

    radio = sample.radio
    if radio.signal_quality is not None:
        if radio.signal_quality >= 10:
            parts.append(("signal_good", 10))
        elif radio.signal_quality >= 5:
            parts.append(("signal_fair", 5))
    if radio.registration is not None and radio.registration in cfg.registered_states:
        parts.append(("registered", 15))
    if radio.session_active:
        parts.append(("session_active", 10))

    if radio.uptime_sec is not None and prev.last_uptime is not None:
        if radio.uptime_sec >= prev.last_uptime + 60:
            parts.append(("uptime_progressed", 10))

    if radio.message_seq is not None and prev.last_message_seq is not None:
        if radio.message_seq > prev.last_message_seq:
            parts.append(("sequence_advanced", 5))
        elif radio.message_seq == prev.last_message_seq:
            parts.append(("sequence_stalled", -10))

    return parts


def compute_score(
    sample: Optional[TelemetryEvent],
    age_seconds: float,
    prev: ConnectionState,
    cfg: HealthConfig,
) -> int:
    """Sum of :func:`score_breakdown`, clamped to [0, 100]."""
    total = sum(points for _, points in score_breakdown(sample, age_seconds, prev, cfg))
    return max(0, min(100, total))


def offline_reason(sample: Optional[TelemetryEvent], age_seconds: float, score: int) -> str:
    """Human-readable summary of why a unit looks offline."""
    parts = [f"No updates for {round(age_seconds / 60)}m"]
    if sample is not None:
        if sample.radio.signal_quality is not None:
            parts.append(f"CSQ={sample.radio.signal_quality}")
        if sample.radio.registration is not None:
            parts.append(f"REG={sample.radio.registration}")
    satellites = (sample.satellite_count or 0) if sample is not None else 0
    parts.append(f"SAT={satellites}")
    parts.append(f"SCORE={score}")
    return ", ".join(parts)


class ConnectionHealthScorer:
    """Tracks connection state for every known unit.

    Parameters
    ----------
    config:
        Scoring thresholds and hysteresis depth.
    clock:
        Time source for heartbeat age and the notify-dedup day.
    dispatcher:
        Fire-and-forget alert delivery.
    rate_limiter:
        Optional daily cap on notifications per unit and globally.
    on_offline:
        Optional coroutine run as a background task for every offline
        transition (after notification), e.g. to record it as history.
        :meth:`drain` waits for the ones still running.
    """

    def __init__(
        self,
        config: HealthConfig,
        clock: Clock,
        dispatcher: AlertDispatcher,
        rate_limiter: Optional[RateLimiter] = None,
        on_offline: Optional[OfflineCallback] = None,
    ) -> None:
        self.config = config
        self._clock = clock
        self._dispatcher = dispatcher
        self._rate_limiter = rate_limiter
        self._on_offline = on_offline
        self._samples: dict[str, TelemetryEvent] = {}
        self._heard: dict[str, datetime] = {}
        self._states: dict[str, ConnectionState] = {}
        self._notified: set[tuple[str, str]] = set()
        self._handlers: set[asyncio.Task] = set()

    def observe(self, event: TelemetryEvent, received_at: Optional[datetime] = None) -> None:
        """Remember *event* as the unit's latest sample.

        Heartbeat age is measured from *received_at* (default: now), never
        from the device timestamp, so a unit with a skewed clock still ages.
        """
        if not event.unit_id:
            return
        self._samples[event.unit_id] = event
        self._heard[event.unit_id] = received_at or self._clock.now()
        self._states.setdefault(event.unit_id, ConnectionState())

    def track(self, unit_id: str) -> None:
        """Start tracking a unit that has not reported yet."""
        self._states.setdefault(unit_id, ConnectionState())

    def units(self) -> list[str]:
        return list(self._states)

    def state(self, unit_id: str) -> Optional[ConnectionState]:
        return self._states.get(unit_id)

    async def evaluate(self, unit_id: str) -> Optional[OfflineTransition]:
        """Score *unit_id* once and advance its state machine.

        Returns
        -------
        OfflineTransition or None
            The transition when the unit just moved into ``offline``.
        """
        now = self._clock.now()
        prev = self._states.get(unit_id) or ConnectionState()
        sample = self._samples.get(unit_id)
        heard = self._heard.get(unit_id)
        age = (now - heard) if heard is not None else _NO_DATA_AGE
        age_seconds = max(0.0, age.total_seconds())

        score = compute_score(sample, age_seconds, prev, self.config)
        nxt = ConnectionState(
            state=prev.state,
            last_score=score,
            low_count=prev.low_count,
            mid_count=prev.mid_count,
            last_uptime=prev.last_uptime,
            last_message_seq=prev.last_message_seq,
            last_check=now,
            last_online=prev.last_online,
        )

        cfg = self.config
        if score >= cfg.online_score:
            nxt.state = HealthState.ONLINE
            nxt.low_count = 0
            nxt.mid_count = 0
            nxt.last_online = now
        elif score >= cfg.suspect_score:
            if prev.state is not HealthState.OFFLINE:
                nxt.state = HealthState.SUSPECTED
            nxt.mid_count += 1
            nxt.low_count = 0
        else:
            nxt.low_count += 1
            if nxt.low_count >= cfg.offline_after_low_checks:
                nxt.state = HealthState.OFFLINE
            else:
                nxt.state = HealthState.SUSPECTED

        if sample is not None:
            if sample.radio.uptime_sec is not None:
                nxt.last_uptime = sample.radio.uptime_sec
            if sample.radio.message_seq is not None:
                nxt.last_message_seq = sample.radio.message_seq
        self._states[unit_id] = nxt

        if prev.state is not HealthState.OFFLINE and nxt.state is HealthState.OFFLINE:
            reason = offline_reason(sample, age_seconds, score)
            return await self._went_offline(unit_id, reason, score, now)
        return None

    async def check_all(self) -> list[OfflineTransition]:
        """Evaluate every tracked unit; one unit's failure does not stop the rest."""
        transitions = []
        for unit_id in list(self._states):
            try:
                transition = await self.evaluate(unit_id)
            except Exception:
                logger.exception("Health check failed for unit %s", unit_id)
                continue
            if transition is not None:
                transitions.append(transition)
        logger.debug("Health check: %s", self.summary())
        return transitions

    async def _went_offline(
        self,
        unit_id: str,
        reason: str,
        score: int,
        now: datetime,
    ) -> OfflineTransition:
        logger.warning("Unit %s went offline: %s", unit_id, reason)

        key = (unit_id, day_key(now))
        notified = False
        if key not in self._notified:
            allowed = self._rate_limiter is None or self._rate_limiter.try_acquire(
                NOTIFY_CATEGORY, unit_id
            )
            if allowed:
                self._dispatcher.dispatch(
                    unit_id, f"Bin {unit_id} appears offline: {reason}", "high"
                )
                notified = True
            self._notified.add(key)

        transition = OfflineTransition(
            unit_id=unit_id, reason=reason, score=score, at=now, notified=notified
        )
        if self._on_offline is not None:
            task = asyncio.ensure_future(self._run_handler(transition))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)
        return transition

    async def _run_handler(self, transition: OfflineTransition) -> None:
        try:
            await self._on_offline(transition)
        except Exception:
            logger.exception("Offline handler failed for unit %s", transition.unit_id)

    async def drain(self) -> None:
        """Wait for offline handlers still in flight."""
        if self._handlers:
            await asyncio.gather(*list(self._handlers), return_exceptions=True)

    def cleanup(self) -> int:
        """Forget notify-dedup keys from previous days."""
        today = day_key(self._clock.now())
        stale = {k for k in self._notified if k[1] != today}
        self._notified -= stale
        return len(stale)

    def status(self, unit_id: str) -> dict:
        st = self._states.get(unit_id)
        if st is None:
            return {"state": None, "score": None, "last_seen": None, "is_online": False}
        heard = self._heard.get(unit_id)
        return {
            "state": st.state.value if st.state else None,
            "score": st.last_score,
            "last_seen": heard.isoformat() if heard else None,
            "is_online": st.state is HealthState.ONLINE,
            "last_check": st.last_check.isoformat() if st.last_check else None,
        }

    def all_statuses(self) -> dict[str, dict]:
        return {unit_id: self.status(unit_id) for unit_id in self._states}

    def summary(self) -> dict[str, int]:
        counts = {s.value: 0 for s in HealthState}
        counts["unknown"] = 0
        for st in self._states.values():
            counts[st.state.value if st.state else "unknown"] += 1
        counts["total"] = len(self._states)
        return counts
