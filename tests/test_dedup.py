"""Tests for the duplicate guard."""

import pytest

from ecobin_ingest.config import DuplicateConfig, ValidationConfig
from ecobin_ingest.dedup import DuplicateGuard, category_for, detect_error_category
from ecobin_ingest.models import ErrorCategory, GpsFix

from conftest import FakeClock, make_event


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Ultrasonic sensor failure", ErrorCategory.MALFUNCTION),
        ("Load cell MALFUNCTION", ErrorCategory.MALFUNCTION),
        ("GSM connection dropped", ErrorCategory.COMMUNICATION_LOST),
        ("Battery low", ErrorCategory.POWER_FAILURE),
        ("No satellite lock", ErrorCategory.GPS_INVALID),
        ("Weight spike", ErrorCategory.WEIGHT_ANOMALY),
        ("something odd", ErrorCategory.UNKNOWN_ERROR),
    ],
)
def test_detect_error_category(text: str, expected: ErrorCategory) -> None:
    assert detect_error_category(text) is expected


def test_keyword_precedence() -> None:
    """Earlier keyword groups win: 'power' beats 'gps'."""
    assert detect_error_category("gps module power fault") is ErrorCategory.POWER_FAILURE


def test_category_from_gps_quality() -> None:
    assert category_for(make_event(gps_valid=False), 3) is ErrorCategory.GPS_INVALID
    assert category_for(make_event(satellite_count=1), 3) is ErrorCategory.GPS_INVALID
    assert category_for(make_event(gps=GpsFix(0, 0)), 3) is ErrorCategory.GPS_INVALID
    assert category_for(make_event(), 3) is None


def _guard(clock: FakeClock, **kwargs) -> DuplicateGuard:
    return DuplicateGuard(DuplicateConfig(**kwargs), ValidationConfig(), clock)


class TestDuplicateGuard:
    """Window and daily-ceiling behaviour."""

    def test_no_category_never_duplicate(self, clock: FakeClock) -> None:
        guard = _guard(clock)
        assert not guard.check(make_event()).is_duplicate
        assert not guard.check(make_event()).is_duplicate
        assert len(guard) == 0

    def test_repeat_within_window_is_filtered(self, clock: FakeClock) -> None:
        """Same error 10 minutes later → duplicate_error."""
        guard = _guard(clock, max_per_day=5)
        event = make_event(error_text="Battery low")
        assert not guard.check(event).is_duplicate

        clock.advance(minutes=10)
        verdict = guard.check(event)
        assert verdict.is_duplicate
        assert verdict.reason == "duplicate_error"
        assert verdict.category is ErrorCategory.POWER_FAILURE

    def test_accepted_again_after_window(self, clock: FakeClock) -> None:
        guard = _guard(clock, max_per_day=5)
        event = make_event(error_text="Battery low")
        guard.check(event)
        clock.advance(minutes=61)
        assert not guard.check(event).is_duplicate
        entry = guard.entry("bin-001", ErrorCategory.POWER_FAILURE)
        assert entry.count == 2
        assert entry.day_count == 2

    def test_daily_ceiling(self, clock: FakeClock) -> None:
        """Generic categories allow one record per day by default."""
        guard = _guard(clock)
        event = make_event(error_text="Battery low")
        guard.check(event)
        clock.advance(minutes=90)
        verdict = guard.check(event)
        assert verdict.is_duplicate
        assert verdict.reason == "daily_limit_exceeded"

    def test_connectivity_category_has_higher_ceiling(self, clock: FakeClock) -> None:
        guard = _guard(clock)
        event = make_event(error_text="connection lost")
        assert not guard.check(event).is_duplicate
        clock.advance(minutes=90)
        assert not guard.check(event).is_duplicate
        clock.advance(minutes=90)
        assert guard.check(event).reason == "daily_limit_exceeded"

    def test_day_count_resets_on_new_day(self, clock: FakeClock) -> None:
        guard = _guard(clock)
        event = make_event(error_text="Battery low")
        guard.check(event)
        clock.advance(days=1)
        assert not guard.check(event).is_duplicate
        entry = guard.entry("bin-001", ErrorCategory.POWER_FAILURE)
        assert entry.day_count == 1
        assert entry.count == 2

    def test_units_and_categories_tracked_separately(self, clock: FakeClock) -> None:
        guard = _guard(clock)
        guard.check(make_event(error_text="Battery low"))
        assert not guard.check(make_event(unit_id="bin-002", error_text="Battery low")).is_duplicate
        assert not guard.check(make_event(error_text="Weight spike")).is_duplicate

    def test_cleanup_purges_previous_days(self, clock: FakeClock) -> None:
        guard = _guard(clock)
        guard.check(make_event(error_text="Battery low"))
        clock.advance(days=1)
        guard.check(make_event(unit_id="bin-002", error_text="Battery low"))
        assert guard.cleanup() == 1
        assert guard.entry("bin-001", ErrorCategory.POWER_FAILURE) is None
        assert guard.entry("bin-002", ErrorCategory.POWER_FAILURE) is not None
