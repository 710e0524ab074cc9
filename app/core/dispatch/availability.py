# app/core/dispatch/availability.py
"""
Schedule gating and the availability sub-score used by the matcher.

All times passed in here are local wall-clock times in the schedule's
timezone; converting from UTC is the caller's job.
"""
from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional

from app.core.dispatch.domain import DayWindow, WeeklySchedule, Weekday

# Mon–Sat business hours when a profile has no entry for the day
DEFAULT_BUSINESS_HOURS = DayWindow(is_available=True, start=time(8, 0), end=time(18, 0))
CLOSED = DayWindow(is_available=False)

# Trailing-week assignments considered a healthy load
WEEKLY_ASSIGNMENT_TARGET = 5
OVERLOAD_RATIO = 1.2


def resolve_window(schedule: Optional[WeeklySchedule], day: date) -> DayWindow:
    """Date override, then weekday window, then the business-hours fallback."""
    if schedule is not None:
        window = schedule.window_for(day)
        if window is not None:
            return window
    if Weekday.of(day) == Weekday.SUNDAY:
        return CLOSED
    return DEFAULT_BUSINESS_HOURS


def is_available_at(schedule: Optional[WeeklySchedule], local_now: datetime) -> bool:
    window = resolve_window(schedule, local_now.date())
    return window.is_open_at(local_now.time())


def availability_score(
    schedule: Optional[WeeklySchedule],
    local_now: datetime,
    recent_assignments: int = 0,
) -> float:
    """0–100 score; lower when today's window is closing or the week is already busy."""
    score = 100.0
    window = resolve_window(schedule, local_now.date())

    if not window.is_available:
        score -= 50
    else:
        remaining = window.minutes_remaining(local_now.time())
        if remaining is not None:
            if remaining < 120:
                score -= 30
            elif remaining < 240:
                score -= 15

    workload_ratio = min(1.5, recent_assignments / WEEKLY_ASSIGNMENT_TARGET)
    if workload_ratio > OVERLOAD_RATIO:
        score -= 10

    return max(0.0, min(100.0, score))
