"""
models.py
─────────
Shared Pydantic data models for the DailyRemind engine.

Every record serialises with camelCase keys (``reminderId``, ``scheduledTime``)
so that the persisted JSON and the export document keep one shape.  Datetimes
are naive local times, truncated to milliseconds on the way in so that they
round-trip through JSON exactly.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

RecurrenceType = Literal["interval", "daily", "multiple", "weekly"]
ReminderCategory = Literal["posture", "vision", "jaw", "hydration", "breathing", "custom"]
ReminderStatus = Literal["active", "paused", "disabled"]
ExecutionStatus = Literal["pending", "completed", "dismissed", "missed"]
UserResponse = Literal["acknowledged", "snoozed", "dismissed"]
Theme = Literal["light", "dark", "system"]


def _to_millis(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


Timestamp = Annotated[
    datetime,
    AfterValidator(_to_millis),
    PlainSerializer(
        lambda v: v.isoformat(timespec="milliseconds"),
        return_type=str,
        when_used="json",
    ),
]

Weekday = Annotated[int, Field(ge=0, le=6)]   # 0=Sunday .. 6=Saturday


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def new_reminder_id() -> str:
    return _new_id("reminder")


def new_execution_id() -> str:
    return _new_id("execution")


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ── Recurrence ────────────────────────────────────────────────────────────────

class TimeSlot(_Model):
    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)

    @property
    def minutes(self) -> int:
        return self.hour * 60 + self.minute


class RecurrenceConfig(_Model):
    type: RecurrenceType
    interval_minutes: Optional[int] = Field(default=None, gt=0)   # interval
    daily_time: Optional[TimeSlot] = None                         # daily
    multiple_times: Optional[List[TimeSlot]] = None               # multiple
    weekly_days: Optional[List[Weekday]] = None                   # weekly
    weekly_time: Optional[TimeSlot] = None                        # weekly


# ── Reminder ──────────────────────────────────────────────────────────────────

class Reminder(_Model):
    id: str = Field(default_factory=new_reminder_id)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: ReminderCategory = "custom"
    recurrence: RecurrenceConfig
    status: ReminderStatus = "active"
    is_enabled: bool = True
    sound_enabled: bool = True
    vibration_enabled: bool = True
    icon: Optional[str] = None
    created_at: Timestamp = Field(default_factory=datetime.now)
    updated_at: Timestamp = Field(default_factory=datetime.now)
    next_notification: Optional[Timestamp] = None   # derived, refreshed on read


class ReminderCreate(_Model):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: ReminderCategory = "custom"
    recurrence: RecurrenceConfig
    status: ReminderStatus = "active"
    is_enabled: bool = True
    sound_enabled: bool = True
    vibration_enabled: bool = True
    icon: Optional[str] = None


class ReminderUpdate(_Model):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[ReminderCategory] = None
    recurrence: Optional[RecurrenceConfig] = None
    status: Optional[ReminderStatus] = None
    is_enabled: Optional[bool] = None
    sound_enabled: Optional[bool] = None
    vibration_enabled: Optional[bool] = None
    icon: Optional[str] = None


# ── Executions & stats ────────────────────────────────────────────────────────

class Execution(_Model):
    id: str = Field(default_factory=new_execution_id)
    reminder_id: str
    scheduled_time: Timestamp
    executed_time: Optional[Timestamp] = None
    status: ExecutionStatus = "pending"
    user_response: Optional[UserResponse] = None
    snooze_until: Optional[Timestamp] = None
    snooze_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != "pending"

    @property
    def due_at(self) -> datetime:
        return self.snooze_until or self.scheduled_time


class ReminderStats(_Model):
    reminder_id: str
    total_scheduled: int = 0
    total_completed: int = 0
    total_dismissed: int = 0
    total_missed: int = 0
    completion_rate: int = Field(default=0, ge=0, le=100)
    streak: int = 0
    last_completed: Optional[Timestamp] = None


class PeriodSummary(_Model):
    completed: int = 0
    total: int = 0
    completion_rate: int = 0


class CategorySummary(PeriodSummary):
    category: ReminderCategory
    name: str


class GlobalSummary(_Model):
    total_reminders: int = 0
    active_reminders: int = 0
    average_completion_rate: int = 0
    longest_streak: int = 0
    total_completed: int = 0


class Dashboard(_Model):
    today: PeriodSummary
    week: PeriodSummary
    overall: GlobalSummary
    categories: List[CategorySummary] = []


# ── Preferences ───────────────────────────────────────────────────────────────

class QuietHours(_Model):
    enabled: bool = False
    start_time: TimeSlot = TimeSlot(hour=22, minute=0)
    end_time: TimeSlot = TimeSlot(hour=7, minute=0)


class UserPreferences(_Model):
    theme: Theme = "system"
    notifications_enabled: bool = True
    sound_enabled: bool = True
    vibration_enabled: bool = True
    quiet_hours: QuietHours = QuietHours()
    snooze_options: List[Annotated[int, Field(gt=0)]] = [5, 10, 15, 30]


class PreferencesUpdate(_Model):
    theme: Optional[Theme] = None
    notifications_enabled: Optional[bool] = None
    sound_enabled: Optional[bool] = None
    vibration_enabled: Optional[bool] = None
    quiet_hours: Optional[QuietHours] = None
    snooze_options: Optional[List[Annotated[int, Field(gt=0)]]] = None


# ── Templates & export ────────────────────────────────────────────────────────

class ReminderTemplate(_Model):
    id: str
    title: str
    description: str
    category: ReminderCategory
    default_recurrence: RecurrenceConfig
    icon: str
    is_default: bool = False


class AppState(_Model):
    reminders: List[Reminder]
    executions: List[Execution] = []
    stats: Dict[str, ReminderStats] = {}
    preferences: UserPreferences
    last_sync: Optional[Timestamp] = None
