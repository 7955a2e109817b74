"""Tests for the rate limiter."""

from datetime import datetime, timezone

from ecobin_ingest.ratelimit import GLOBAL_SUBJECT, RateLimiter

from conftest import FakeClock


def test_per_subject_ceiling(clock: FakeClock) -> None:
    limiter = RateLimiter({"notification": (2, 0)}, clock)
    assert limiter.try_acquire("notification", "bin-001")
    assert limiter.try_acquire("notification", "bin-001")
    assert not limiter.try_acquire("notification", "bin-001")
    assert limiter.try_acquire("notification", "bin-002")
    assert limiter.remaining("notification", "bin-001") == 0
    assert limiter.remaining("notification", "bin-002") == 1


def test_global_ceiling(clock: FakeClock) -> None:
    limiter = RateLimiter({"notification": (5, 3)}, clock)
    for unit in ("a", "b", "c"):
        assert limiter.try_acquire("notification", unit)
    assert not limiter.try_acquire("notification", "d")
    assert limiter.count("notification", GLOBAL_SUBJECT) == 3


def test_unknown_category_is_unlimited(clock: FakeClock) -> None:
    limiter = RateLimiter({}, clock)
    for _ in range(100):
        assert limiter.try_acquire("other", "bin-001")
    assert limiter.remaining("other", "bin-001") is None


def test_check_does_not_count(clock: FakeClock) -> None:
    limiter = RateLimiter({"notification": (1, 0)}, clock)
    assert limiter.check("notification", "bin-001")
    assert limiter.check("notification", "bin-001")
    assert limiter.record("notification", "bin-001") == 1
    assert not limiter.check("notification", "bin-001")


def test_counts_reset_at_reset_hour() -> None:
    clock = FakeClock(datetime(2025, 3, 10, 5, 30, tzinfo=timezone.utc))
    limiter = RateLimiter({"notification": (1, 0)}, clock, reset_hour=6)
    assert limiter.day() == "2025-03-09"
    assert limiter.try_acquire("notification", "bin-001")

    clock.advance(minutes=29)
    assert not limiter.try_acquire("notification", "bin-001")

    clock.advance(minutes=1)
    assert limiter.day() == "2025-03-10"
    assert limiter.try_acquire("notification", "bin-001")


def test_next_reset(clock: FakeClock) -> None:
    limiter = RateLimiter({}, clock, reset_hour=6)
    assert limiter.next_reset() == datetime(2025, 3, 11, 6, 0, tzinfo=timezone.utc)
    limiter.configure({}, reset_hour=9)
    assert limiter.next_reset() == datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def test_purge_drops_old_days(clock: FakeClock) -> None:
    limiter = RateLimiter({"notification": (5, 50)}, clock)
    limiter.record("notification", "bin-001")
    clock.advance(days=1)
    limiter.record("notification", "bin-002")
    # bin-001 and its global counter belong to yesterday.
    assert limiter.purge() == 2
    assert limiter.count("notification", "bin-002") == 1
