from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from dailyremind.errors import InvalidRecurrence
from dailyremind.models import RecurrenceConfig, TimeSlot
from dailyremind.recurrence import is_quiet_hours, resolve_next

from conftest import REFERENCE


def slot(hour, minute=0):
    return TimeSlot(hour=hour, minute=minute)


def resolve(config, at=REFERENCE, enabled=True, status="active"):
    return resolve_next(config, enabled, status, at)


@pytest.mark.parametrize("minutes", [1, 20, 30, 90, 1440, 10007])
def test_interval_adds_exact_minutes(minutes):
    at = REFERENCE.replace(second=17, microsecond=123000)
    config = RecurrenceConfig(type="interval", interval_minutes=minutes)
    assert resolve(config, at) == at + timedelta(minutes=minutes)


def test_daily_later_today():
    config = RecurrenceConfig(type="daily", daily_time=slot(18, 30))
    assert resolve(config) == datetime(2024, 5, 15, 18, 30)


def test_daily_already_passed_rolls_to_tomorrow():
    config = RecurrenceConfig(type="daily", daily_time=slot(9, 0))
    assert resolve(config) == datetime(2024, 5, 16, 9, 0)


def test_daily_exact_boundary_rolls_to_tomorrow():
    config = RecurrenceConfig(type="daily", daily_time=slot(10, 0))
    assert resolve(config, datetime(2024, 5, 15, 10, 0)) == datetime(2024, 5, 16, 10, 0)


def test_daily_crosses_month_end():
    config = RecurrenceConfig(type="daily", daily_time=slot(7, 0))
    assert resolve(config, datetime(2024, 5, 31, 23, 0)) == datetime(2024, 6, 1, 7, 0)


class TestMultiple:
    config = RecurrenceConfig(type="multiple", multiple_times=[slot(18), slot(9), slot(13)])

    def test_next_slot_same_day(self):
        assert resolve(self.config, datetime(2024, 5, 15, 14, 0)) == datetime(2024, 5, 15, 18, 0)

    def test_after_last_slot_wraps_to_first_tomorrow(self):
        assert resolve(self.config, datetime(2024, 5, 15, 19, 0)) == datetime(2024, 5, 16, 9, 0)

    def test_before_first_slot(self):
        assert resolve(self.config, datetime(2024, 5, 15, 6, 45)) == datetime(2024, 5, 15, 9, 0)

    def test_slot_equal_to_reference_is_skipped(self):
        assert resolve(self.config, datetime(2024, 5, 15, 13, 0)) == datetime(2024, 5, 15, 18, 0)


class TestWeekly:
    # REFERENCE is Wednesday (3) at 10:00

    def test_today_when_time_not_passed(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[3], weekly_time=slot(11))
        assert resolve(config) == datetime(2024, 5, 15, 11, 0)

    def test_today_passed_wraps_to_next_week(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[3], weekly_time=slot(9))
        assert resolve(config) == datetime(2024, 5, 22, 9, 0)

    def test_next_matching_day_this_week(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[5, 1], weekly_time=slot(9))
        assert resolve(config) == datetime(2024, 5, 17, 9, 0)

    def test_wraps_to_earliest_day_next_week(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[1, 2], weekly_time=slot(8, 15))
        assert resolve(config) == datetime(2024, 5, 20, 8, 15)

    def test_sunday_is_zero(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[0], weekly_time=slot(12))
        assert resolve(config) == datetime(2024, 5, 19, 12, 0)

    def test_exact_time_today_is_skipped(self):
        config = RecurrenceConfig(type="weekly", weekly_days=[3, 4], weekly_time=slot(10))
        assert resolve(config) == datetime(2024, 5, 16, 10, 0)


@pytest.mark.parametrize("enabled,status", [(False, "active"), (True, "paused"), (True, "disabled")])
@pytest.mark.parametrize("config", [
    RecurrenceConfig(type="interval", interval_minutes=30),
    RecurrenceConfig(type="daily", daily_time=TimeSlot(hour=9, minute=0)),
    RecurrenceConfig(type="multiple", multiple_times=[TimeSlot(hour=9, minute=0)]),
    RecurrenceConfig(type="weekly", weekly_days=[1], weekly_time=TimeSlot(hour=9, minute=0)),
])
def test_inactive_reminder_has_no_next_occurrence(config, enabled, status):
    assert resolve(config, enabled=enabled, status=status) is None


@pytest.mark.parametrize("config", [
    RecurrenceConfig(type="interval"),
    RecurrenceConfig(type="daily"),
    RecurrenceConfig(type="multiple", multiple_times=[]),
    RecurrenceConfig(type="weekly", weekly_time=TimeSlot(hour=9, minute=0)),
    RecurrenceConfig(type="weekly", weekly_days=[1]),
])
def test_missing_variant_field_is_rejected(config):
    with pytest.raises(InvalidRecurrence):
        resolve(config)


def test_out_of_range_fields_rejected_by_model():
    with pytest.raises(ValidationError):
        TimeSlot(hour=24, minute=0)
    with pytest.raises(ValidationError):
        RecurrenceConfig(type="interval", interval_minutes=0)
    with pytest.raises(ValidationError):
        RecurrenceConfig(type="weekly", weekly_days=[7], weekly_time=TimeSlot(hour=9, minute=0))


def test_quiet_hours_wrapping_midnight():
    start, end = slot(22), slot(7)
    assert is_quiet_hours(datetime(2024, 5, 15, 23, 30), start, end)
    assert is_quiet_hours(datetime(2024, 5, 15, 6, 59), start, end)
    assert is_quiet_hours(datetime(2024, 5, 15, 7, 0), start, end)
    assert not is_quiet_hours(datetime(2024, 5, 15, 12, 0), start, end)


def test_quiet_hours_same_day_window():
    assert is_quiet_hours(datetime(2024, 5, 15, 13, 30), slot(13), slot(14))
    assert not is_quiet_hours(datetime(2024, 5, 15, 14, 1), slot(13), slot(14))

