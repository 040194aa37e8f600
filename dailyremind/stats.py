"""
stats.py
────────
Completion statistics derived from the execution ledger.

Per-reminder ReminderStats are recomputed wholesale from the ledger and
persisted in the ``stats`` collection; they are never edited by hand.  The
rollups (today, this week, global, per category) are computed on demand and
hold no state of their own.
"""

import math
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from dailyremind import storage
from dailyremind.ledger import ExecutionLedger
from dailyremind.logger import logger
from dailyremind.models import (
    CategorySummary,
    Execution,
    GlobalSummary,
    PeriodSummary,
    Reminder,
    ReminderStats,
)
from dailyremind.templates import category_name


def percent(part: int, whole: int) -> int:
    """Rounded percentage, half-up; 0 when whole is 0."""
    if whole <= 0:
        return 0
    return int(math.floor(100 * part / whole + 0.5))


def streak_days(executions: Iterable[Execution], today: date) -> int:
    """
    Consecutive calendar days, ending today, with at least one completed
    execution.  No completion today means no streak, however long the
    history before it.
    """
    days = sorted(
        {e.executed_time.date() for e in executions if e.status == "completed" and e.executed_time},
        reverse=True,
    )
    streak = 0
    cursor = today
    for day in days:
        if day > cursor:
            continue
        if day != cursor:
            break
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def compute_stats(reminder_id: str, executions: Iterable[Execution], today: date) -> ReminderStats:
    executions = [e for e in executions if e.reminder_id == reminder_id]
    completed = [e for e in executions if e.status == "completed"]
    completed_times = [e.executed_time for e in completed if e.executed_time]

    return ReminderStats(
        reminder_id=reminder_id,
        total_scheduled=len(executions),
        total_completed=len(completed),
        total_dismissed=sum(1 for e in executions if e.status == "dismissed"),
        total_missed=sum(1 for e in executions if e.status == "missed"),
        completion_rate=percent(len(completed), len(executions)),
        streak=streak_days(completed, today),
        last_completed=max(completed_times) if completed_times else None,
    )


def summarize(executions: Iterable[Execution]) -> PeriodSummary:
    executions = list(executions)
    completed = sum(1 for e in executions if e.status == "completed")
    return PeriodSummary(
        completed=completed,
        total=len(executions),
        completion_rate=percent(completed, len(executions)),
    )


class StatsAggregator:

    def __init__(
        self,
        ledger: ExecutionLedger,
        store: storage.Store,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._ledger = ledger
        self._store = store
        self._clock = clock
        self._stats: Dict[str, ReminderStats] = {}
        self._lock = threading.Lock()
        self._load()

    # ── Per reminder ──────────────────────────────────────────────────────────

    def recompute(self, reminder_id: str) -> ReminderStats:
        stats = compute_stats(reminder_id, self._ledger.for_reminder(reminder_id), self._clock().date())
        with self._lock:
            staged = dict(self._stats)
            staged[reminder_id] = stats
            self._commit(staged)
        logger.debug(
            f"Stats for {reminder_id}: {stats.total_completed}/{stats.total_scheduled} "
            f"({stats.completion_rate}%), streak {stats.streak}"
        )
        return stats

    def get(self, reminder_id: str) -> Optional[ReminderStats]:
        with self._lock:
            return self._stats.get(reminder_id)

    def all(self) -> List[ReminderStats]:
        with self._lock:
            return list(self._stats.values())

    def delete(self, reminder_id: str) -> bool:
        with self._lock:
            if reminder_id not in self._stats:
                return False
            staged = {k: v for k, v in self._stats.items() if k != reminder_id}
            self._commit(staged)
        return True

    def replace_all(self, stats: Iterable[ReminderStats]) -> None:
        with self._lock:
            self._commit({s.reminder_id: s for s in stats})

    # ── Rollups ───────────────────────────────────────────────────────────────

    def period_summary(self, start: datetime, end: datetime) -> PeriodSummary:
        return summarize(self._ledger.in_range(start, end))

    def today_summary(self) -> PeriodSummary:
        start = datetime.combine(self._clock().date(), datetime.min.time())
        return self.period_summary(start, start + timedelta(days=1))

    def week_summary(self) -> PeriodSummary:
        """Week starts on Sunday and runs to the end of today."""
        today = self._clock().date()
        days_since_sunday = (today.weekday() + 1) % 7
        start = datetime.combine(today - timedelta(days=days_since_sunday), datetime.min.time())
        end = datetime.combine(today + timedelta(days=1), datetime.min.time())
        return self.period_summary(start, end)

    def global_summary(self, reminders: Iterable[Reminder]) -> GlobalSummary:
        reminders = list(reminders)
        stats = [s for s in self.all() if any(r.id == s.reminder_id for r in reminders)]
        average = (
            int(math.floor(sum(s.completion_rate for s in stats) / len(stats) + 0.5))
            if stats else 0
        )
        return GlobalSummary(
            total_reminders=len(reminders),
            active_reminders=sum(1 for r in reminders if r.is_enabled and r.status == "active"),
            average_completion_rate=average,
            longest_streak=max((s.streak for s in stats), default=0),
            total_completed=sum(s.total_completed for s in stats),
        )

    def category_summary(self, reminders: Iterable[Reminder]) -> List[CategorySummary]:
        totals: Dict[str, List[int]] = {}
        for reminder in reminders:
            completed, scheduled = totals.setdefault(reminder.category, [0, 0])
            stats = self.get(reminder.id)
            if stats:
                totals[reminder.category] = [completed + stats.total_completed, scheduled + stats.total_scheduled]
        return [
            CategorySummary(
                category=category,
                name=category_name(category),
                completed=completed,
                total=scheduled,
                completion_rate=percent(completed, scheduled),
            )
            for category, (completed, scheduled) in totals.items()
        ]

    # ── Persistence ───────────────────────────────────────────────────────────

    def _commit(self, staged: Dict[str, ReminderStats]) -> None:
        self._store.set(storage.STATS, {k: v.dump() for k, v in staged.items()})
        self._stats = staged

    def _load(self):
        rows = self._store.get(storage.STATS, {})
        for reminder_id, row in rows.items():
            try:
                self._stats[reminder_id] = ReminderStats.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed stats record for {reminder_id}: {e}")
