"""
recurrence.py
─────────────
Next-occurrence resolution for the four recurrence variants.

Everything here is a pure function of its arguments: no clock reads, no I/O.
Callers pass the reference time, which makes the resolver safe to call as
often as a countdown display wants.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from dailyremind.errors import InvalidRecurrence
from dailyremind.models import RecurrenceConfig, Reminder, TimeSlot


def validate_recurrence(config: RecurrenceConfig) -> RecurrenceConfig:
    """Raise InvalidRecurrence when the active variant is missing its fields."""
    if config.type == "interval":
        if not config.interval_minutes or config.interval_minutes < 1:
            raise InvalidRecurrence("interval recurrence requires a positive intervalMinutes")
    elif config.type == "daily":
        if config.daily_time is None:
            raise InvalidRecurrence("daily recurrence requires dailyTime")
    elif config.type == "multiple":
        if not config.multiple_times:
            raise InvalidRecurrence("multiple recurrence requires at least one entry in multipleTimes")
    elif config.type == "weekly":
        if not config.weekly_days:
            raise InvalidRecurrence("weekly recurrence requires at least one entry in weeklyDays")
        if config.weekly_time is None:
            raise InvalidRecurrence("weekly recurrence requires weeklyTime")
    else:
        raise InvalidRecurrence(f"Unknown recurrence type: {config.type}")
    return config


def resolve_next(
    config: RecurrenceConfig,
    is_enabled: bool,
    status: str,
    reference_time: datetime,
) -> Optional[datetime]:
    """
    Return the next occurrence strictly after ``reference_time``, or None when
    the reminder is disabled or not active.
    """
    if not is_enabled or status != "active":
        return None

    validate_recurrence(config)

    if config.type == "interval":
        return reference_time + timedelta(minutes=config.interval_minutes)
    if config.type == "daily":
        return _next_daily(config.daily_time, reference_time)
    if config.type == "multiple":
        return _next_multiple(config.multiple_times, reference_time)
    return _next_weekly(config.weekly_days, config.weekly_time, reference_time)


def next_for(reminder: Reminder, reference_time: datetime) -> Optional[datetime]:
    return resolve_next(reminder.recurrence, reminder.is_enabled, reminder.status, reference_time)


def _at(day: datetime, slot: TimeSlot) -> datetime:
    return day.replace(hour=slot.hour, minute=slot.minute, second=0, microsecond=0)


def _next_daily(slot: TimeSlot, reference_time: datetime) -> datetime:
    candidate = _at(reference_time, slot)
    # Equality counts as already passed
    if candidate <= reference_time:
        candidate = _at(reference_time + timedelta(days=1), slot)
    return candidate


def _next_multiple(slots: Iterable[TimeSlot], reference_time: datetime) -> datetime:
    ordered = sorted(slots, key=lambda s: s.minutes)
    for slot in ordered:
        candidate = _at(reference_time, slot)
        if candidate > reference_time:
            return candidate
    return _at(reference_time + timedelta(days=1), ordered[0])


def _sunday_based(moment: datetime) -> int:
    # datetime.weekday() is Monday=0; recurrence days are Sunday=0
    return (moment.weekday() + 1) % 7


def _next_weekly(days: Iterable[int], slot: TimeSlot, reference_time: datetime) -> datetime:
    ordered = sorted(set(days))
    today = _sunday_based(reference_time)

    if today in ordered:
        candidate = _at(reference_time, slot)
        if candidate > reference_time:
            return candidate

    for day in ordered:
        if day > today:
            return _at(reference_time + timedelta(days=day - today), slot)

    # Wrap to next week
    return _at(reference_time + timedelta(days=7 - today + ordered[0]), slot)


# ── Time-of-day helpers ───────────────────────────────────────────────────────

def is_quiet_hours(moment: datetime, start: TimeSlot, end: TimeSlot) -> bool:
    """Both ends inclusive; a window with start after end wraps midnight."""
    current = moment.hour * 60 + moment.minute
    if start.minutes <= end.minutes:
        return start.minutes <= current <= end.minutes
    return current >= start.minutes or current <= end.minutes
