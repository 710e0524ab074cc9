# tests/test_availability.py
"""Tests for schedule windows and the availability sub-score"""
from datetime import date, datetime, time

from app.core.dispatch.availability import (
    CLOSED,
    DEFAULT_BUSINESS_HOURS,
    availability_score,
    is_available_at,
    resolve_window,
)
from app.core.dispatch.domain import DayWindow, WeeklySchedule, Weekday

WEDNESDAY = date(2026, 10, 14)
SUNDAY = date(2026, 10, 18)


def _at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute))


class TestResolveWindow:
    def test_fallback_business_hours(self):
        assert resolve_window(None, WEDNESDAY) == DEFAULT_BUSINESS_HOURS

    def test_fallback_sunday_closed(self):
        assert resolve_window(None, SUNDAY) == CLOSED

    def test_weekday_entry(self):
        window = DayWindow(True, time(6, 0), time(12, 0))
        schedule = WeeklySchedule(by_day={Weekday.WEDNESDAY: window})
        assert resolve_window(schedule, WEDNESDAY) == window

    def test_override_wins(self):
        schedule = WeeklySchedule(
            by_day={Weekday.WEDNESDAY: DayWindow(True, time(6, 0), time(12, 0))},
            overrides={WEDNESDAY: DayWindow(False)},
        )
        assert resolve_window(schedule, WEDNESDAY).is_available is False

    def test_sunday_entry_opens_sunday(self):
        schedule = WeeklySchedule(by_day={Weekday.SUNDAY: DayWindow(True, time(9, 0), time(13, 0))})
        assert is_available_at(schedule, _at(SUNDAY, 10)) is True


class TestIsAvailableAt:
    def test_bounds_inclusive(self):
        assert is_available_at(None, _at(WEDNESDAY, 8, 0)) is True
        assert is_available_at(None, _at(WEDNESDAY, 18, 0)) is True
        assert is_available_at(None, _at(WEDNESDAY, 18, 1)) is False
        assert is_available_at(None, _at(WEDNESDAY, 7, 59)) is False

    def test_window_without_bounds_is_open_all_day(self):
        schedule = WeeklySchedule(by_day={Weekday.WEDNESDAY: DayWindow(True)})
        assert is_available_at(schedule, _at(WEDNESDAY, 23, 30)) is True


class TestAvailabilityScore:
    def test_full_score_early_in_window(self):
        assert availability_score(None, _at(WEDNESDAY, 10)) == 100

    def test_closing_soon(self):
        # 17:00 → 60 minutes left
        assert availability_score(None, _at(WEDNESDAY, 17)) == 70

    def test_closing_within_four_hours(self):
        # 15:00 → 180 minutes left
        assert availability_score(None, _at(WEDNESDAY, 15)) == 85

    def test_unavailable_day(self):
        assert availability_score(None, _at(SUNDAY, 10)) == 50

    def test_busy_week_penalty(self):
        # 7 assignments / target 5 = 1.4 > 1.2
        assert availability_score(None, _at(WEDNESDAY, 10), recent_assignments=7) == 90
        assert availability_score(None, _at(WEDNESDAY, 10), recent_assignments=6) == 100

    def test_never_negative(self):
        score = availability_score(None, _at(SUNDAY, 10), recent_assignments=50)
        assert 0 <= score <= 100
