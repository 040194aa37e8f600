"""
scheduler.py
────────────
Notification scheduler: mediates between recurrence resolution, the
execution ledger and the external dispatcher.

Per reminder the scheduler is a two-state machine:

    Idle ──schedule──▶ Scheduled ──fire / action / cancel──▶ Idle

``Scheduled`` means exactly one outstanding dispatcher request and one
pending execution.  Occurrences are chained: settling one execution schedules
the next, so there is never more than one live request per reminder.

A fire completes its execution and leaves it "delivered": the user may still
act on that notification once.  Acknowledge and dismiss are recorded as the
execution's response; snooze also pulls the next occurrence forward.

Every operation on a reminder (schedule, cancel, fire, action) runs under
that reminder's re-entrant lock; different reminders proceed concurrently.
Dispatcher callbacks for reminders or executions that no longer exist, or no
longer match the live request, are logged and ignored.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set

from dailyremind import recurrence
from dailyremind.config import Settings
from dailyremind.dispatcher import Dispatcher
from dailyremind.errors import CapacityExceeded, PermissionDenied
from dailyremind.ledger import ExecutionLedger
from dailyremind.logger import logger
from dailyremind.models import Execution, Reminder
from dailyremind.reminders import PreferenceRepository, ReminderRepository
from dailyremind.stats import StatsAggregator

SettledListener = Callable[[Execution], None]


class SlotState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class ReminderSlot:
    reminder_id: str
    state: SlotState = SlotState.IDLE
    request_id: Optional[str] = None
    execution_id: Optional[str] = None
    fire_at: Optional[datetime] = None
    # Last execution completed by a fire, still open to one user action
    delivered_id: Optional[str] = None


class NotificationScheduler:

    def __init__(
        self,
        reminders: ReminderRepository,
        preferences: PreferenceRepository,
        ledger: ExecutionLedger,
        stats: StatsAggregator,
        dispatcher: Dispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._reminders = reminders
        self._preferences = preferences
        self._ledger = ledger
        self._stats = stats
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

        self._permission_granted = False
        self._slots: Dict[str, ReminderSlot] = {}
        self._delivered: Dict[str, str] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        # Reminders refused for capacity, retried when a request frees up
        self._backlog: Set[str] = set()
        self._backlog_lock = threading.Lock()
        self._listeners: List[SettledListener] = []

    # ── Setup ─────────────────────────────────────────────────────────────────

    def initialize(self) -> bool:
        self._dispatcher.set_callbacks(self.handle_fire, self.handle_action)
        self._permission_granted = bool(self._dispatcher.request_permission())
        if self._permission_granted:
            logger.info("Notification permission granted")
        else:
            logger.warning("Notification permission denied; scheduler stays idle")
        return self._permission_granted

    @property
    def permission_granted(self) -> bool:
        return self._permission_granted

    @property
    def backlog(self) -> List[str]:
        with self._backlog_lock:
            return sorted(self._backlog)

    def subscribe(self, listener: SettledListener) -> None:
        """Called with every execution settled by a fire or a user action."""
        self._listeners.append(listener)

    def lock_for(self, reminder_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(reminder_id)
            if lock is None:
                lock = self._locks[reminder_id] = threading.RLock()
            return lock

    def forget(self, reminder_id: str) -> None:
        """Drop bookkeeping of a deleted reminder."""
        with self.lock_for(reminder_id):
            self._slots.pop(reminder_id, None)
            self._delivered.pop(reminder_id, None)
        self._discard_backlog(reminder_id)
        with self._locks_guard:
            self._locks.pop(reminder_id, None)

    def state(self, reminder_id: str) -> ReminderSlot:
        with self.lock_for(reminder_id):
            slot = self._slots.get(reminder_id) or ReminderSlot(reminder_id)
            return replace(slot, delivered_id=self._delivered.get(reminder_id))

    # ── Schedule / cancel ─────────────────────────────────────────────────────

    def schedule(self, reminder: Reminder) -> bool:
        """
        Queue the next occurrence of ``reminder``.

        A no-op returning True when permission is missing, notifications are
        off, or the reminder is not enabled and active.  Raises
        CapacityExceeded when the dispatcher refuses the request; the
        reminder then stays Idle until a later call succeeds.
        """
        with self.lock_for(reminder.id):
            self._schedule_locked(reminder)
        return True

    def cancel(self, reminder_id: str) -> int:
        with self.lock_for(reminder_id):
            dismissed = self._cancel_locked(reminder_id)
            self._delivered.pop(reminder_id, None)
        self._discard_backlog(reminder_id)
        if dismissed:
            logger.info(f"Cancelled {reminder_id}; dismissed {len(dismissed)} pending execution(s)")
        return len(dismissed)

    def schedule_all(self, reminders: Iterable[Reminder]) -> Dict[str, bool]:
        if not self._permission_granted:
            raise PermissionDenied("Notification permission not granted")

        results: Dict[str, bool] = {}
        for reminder in reminders:
            if not (reminder.is_enabled and reminder.status == "active"):
                continue
            try:
                results[reminder.id] = self.schedule(reminder)
            except CapacityExceeded as e:
                logger.warning(str(e))
                results[reminder.id] = False
        logger.info(f"Scheduled {sum(results.values())}/{len(results)} active reminder(s)")
        return results

    def cancel_all(self) -> int:
        known = {r.id for r in self._reminders.get_all()} | set(self._slots.copy())
        count = sum(self.cancel(reminder_id) for reminder_id in known)

        # Orphans: requests or pending executions nothing tracks any more
        for request_id in self._dispatcher.list_pending():
            self._dispatcher.cancel(request_id)
        count += len(self._ledger.dismiss_pending())
        with self._backlog_lock:
            self._backlog.clear()
        logger.info(f"Cancelled all notifications ({count} pending execution(s) dismissed)")
        return count

    # ── Dispatcher callbacks ──────────────────────────────────────────────────

    def handle_fire(self, payload: dict) -> Optional[Execution]:
        """Delivery alone counts as completion."""
        return self._settle(payload, response=None)

    def handle_action(
        self,
        payload: dict,
        response: str,
        snooze_minutes: Optional[int] = None,
    ) -> Optional[Execution]:
        """
        User acted on a notification.  Before delivery the pending execution
        settles (or is snoozed); after delivery the response is recorded on
        the execution the fire completed.
        """
        if response not in ("acknowledged", "dismissed", "snoozed"):
            raise ValueError(f"Unknown user response: {response}")
        reminder_id = payload.get("reminderId")
        execution_id = payload.get("executionId")
        if execution_id and self._delivered.get(reminder_id) == execution_id:
            return self._after_delivery(payload, response, snooze_minutes)
        if response == "snoozed":
            return self._snooze(payload, snooze_minutes)
        return self._settle(payload, response=response)

    # ── Reconciliation ────────────────────────────────────────────────────────

    def reconcile_missed(self, now: Optional[datetime] = None) -> List[Execution]:
        """
        Mark as missed every pending execution that is past its grace period
        and no longer has a live dispatcher request, then queue the owner's
        next occurrence.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self._settings.missed_grace_minutes)
        live = set(self._dispatcher.list_pending())

        missed: List[Execution] = []
        for execution in self._ledger.stale_pending(cutoff):
            if execution.id in live:
                continue
            with self.lock_for(execution.reminder_id):
                marked = self._ledger.mark_missed(execution.id)
                if marked is None:
                    continue
                slot = self._slots.get(execution.reminder_id)
                if slot and slot.execution_id == execution.id:
                    del self._slots[execution.reminder_id]
                missed.append(marked)

        for reminder_id in {e.reminder_id for e in missed}:
            reminder = self._reminders.get(reminder_id)
            if reminder is None:
                continue
            if self.state(reminder_id).state is SlotState.IDLE:
                try:
                    self.schedule(reminder)
                except CapacityExceeded as e:
                    logger.warning(str(e))
            self._stats.recompute(reminder_id)

        if missed:
            logger.info(f"Marked {len(missed)} stale pending execution(s) as missed")
        return missed

    # ── Internal ──────────────────────────────────────────────────────────────

    def _can_schedule(self, reminder: Reminder) -> bool:
        if not self._permission_granted:
            logger.debug(f"Not scheduling {reminder.id}: permission not granted")
            return False
        if not self._preferences.get().notifications_enabled:
            logger.debug(f"Not scheduling {reminder.id}: notifications disabled")
            return False
        return reminder.is_enabled and reminder.status == "active"

    def _schedule_locked(self, reminder: Reminder) -> Optional[Execution]:
        if not self._can_schedule(reminder):
            self._discard_backlog(reminder.id)
            return None

        # At most one outstanding request per reminder
        self._cancel_locked(reminder.id)

        fire_at = recurrence.next_for(reminder, self._clock())
        if fire_at is None:
            return None

        execution = Execution(reminder_id=reminder.id, scheduled_time=fire_at)
        if not self._dispatcher.schedule(execution.id, execution.scheduled_time, self._payload(reminder, execution)):
            with self._backlog_lock:
                self._backlog.add(reminder.id)
            raise CapacityExceeded(reminder.id, self._settings.max_pending_notifications)

        try:
            self._ledger.append(execution)
        except Exception:
            self._dispatcher.cancel(execution.id)
            raise

        self._slots[reminder.id] = ReminderSlot(
            reminder_id=reminder.id,
            state=SlotState.SCHEDULED,
            request_id=execution.id,
            execution_id=execution.id,
            fire_at=execution.scheduled_time,
        )
        self._discard_backlog(reminder.id)
        logger.info(f"Scheduled '{reminder.title}' ({reminder.id}) at {execution.scheduled_time}")
        return execution

    def _cancel_locked(self, reminder_id: str) -> List[Execution]:
        # Ledger first: if the store fails, the live request is still intact
        dismissed = self._ledger.dismiss_pending(reminder_id)
        slot = self._slots.pop(reminder_id, None)
        if slot and slot.request_id:
            self._dispatcher.cancel(slot.request_id)
        for execution in dismissed:
            self._dispatcher.cancel(execution.id)
        return dismissed

    def _live(self, payload: dict):
        """Return (reminder, execution) when the callback still matches, else None."""
        reminder_id = payload.get("reminderId")
        execution_id = payload.get("executionId")
        reminder = self._reminders.get(reminder_id) if reminder_id else None
        if reminder is None or not (reminder.is_enabled and reminder.status == "active"):
            logger.debug(f"Stale callback: reminder {reminder_id} is gone or inactive")
            return None
        execution = self._ledger.get(execution_id) if execution_id else None
        if execution is None or execution.reminder_id != reminder_id or execution.is_terminal:
            logger.debug(f"Stale callback: execution {execution_id} is gone or settled")
            return None
        slot = self._slots.get(reminder_id)
        if slot is None or slot.execution_id != execution_id:
            logger.debug(f"Stale callback: {execution_id} is not the live request of {reminder_id}")
            return None
        return reminder, execution

    def _settle(self, payload: dict, response: Optional[str]) -> Optional[Execution]:
        reminder_id = payload.get("reminderId")
        if not reminder_id:
            logger.debug(f"Ignoring callback without reminderId: {payload}")
            return None

        with self.lock_for(reminder_id):
            live = self._live(payload)
            if live is None:
                return None
            reminder, execution = live

            if response == "dismissed":
                settled = self._ledger.dismiss(execution.id, user_response="dismissed")
            else:
                settled = self._ledger.complete(execution.id, user_response=response, at=self._clock())
            if settled is None:
                return None
            self._slots.pop(reminder_id, None)
            self._dispatcher.cancel(execution.id)
            logger.info(f"Execution {execution.id} of '{reminder.title}' {settled.status}")

            try:
                self._schedule_locked(reminder)
            except CapacityExceeded as e:
                logger.warning(str(e))
            if response is None:
                self._delivered[reminder_id] = execution.id
            # After re-scheduling, so totalScheduled includes the next pending execution
            self._stats.recompute(reminder_id)

        self._notify(settled)
        self._retry_backlog(exclude=reminder_id)
        return settled

    def _snooze(self, payload: dict, minutes: Optional[int]) -> Optional[Execution]:
        reminder_id = payload.get("reminderId")
        if not reminder_id:
            return None
        minutes = minutes or self._settings.default_snooze_minutes
        if minutes < 1:
            raise ValueError(f"Snooze must be at least one minute, got {minutes}")

        with self.lock_for(reminder_id):
            live = self._live(payload)
            if live is None:
                return None
            reminder, execution = live

            if execution.snooze_count < self._settings.max_snooze_count:
                until = self._clock() + timedelta(minutes=minutes)
                snoozed = self._ledger.snooze(execution.id, until)
                self._redispatch(reminder, snoozed)
                logger.info(f"Snoozed {execution.id} for {minutes} min (until {until})")
                return snoozed

        logger.info(f"Snooze limit reached for {execution.id}; dismissing")
        return self._settle(payload, response="dismissed")

    def _after_delivery(self, payload: dict, response: str, minutes: Optional[int]) -> Optional[Execution]:
        """
        Record the response on the execution a fire completed.  A snooze
        also moves the reminder's next pending execution to now + minutes,
        carrying the snooze count so the limit holds across re-deliveries;
        past the limit the snooze is recorded as a dismissal.
        """
        reminder_id = payload["reminderId"]
        execution_id = payload["executionId"]
        minutes = minutes or self._settings.default_snooze_minutes
        if minutes < 1:
            raise ValueError(f"Snooze must be at least one minute, got {minutes}")

        with self.lock_for(reminder_id):
            if self._delivered.get(reminder_id) != execution_id:
                return None
            reminder = self._reminders.get(reminder_id)
            delivered = self._ledger.get(execution_id)
            if reminder is None or delivered is None:
                return None
            if not (reminder.is_enabled and reminder.status == "active"):
                logger.debug(f"Stale action: reminder {reminder_id} is inactive")
                return None

            if response == "snoozed" and delivered.snooze_count >= self._settings.max_snooze_count:
                logger.info(f"Snooze limit reached for {execution_id}; recording dismissal")
                response = "dismissed"

            recorded = self._ledger.record_response(execution_id, response)
            if recorded is None:
                return None
            del self._delivered[reminder_id]
            logger.info(f"Delivered execution {execution_id} of '{reminder.title}' {response}")

            if response == "snoozed":
                self._pull_forward(reminder, delivered.snooze_count + 1, minutes)

        self._notify(recorded)
        return recorded

    def _pull_forward(self, reminder: Reminder, count: int, minutes: int) -> None:
        slot = self._slots.get(reminder.id)
        if slot is None:
            self._schedule_locked(reminder)
            slot = self._slots.get(reminder.id)
            if slot is None:
                return
        upcoming = self._ledger.get(slot.execution_id)
        until = self._clock() + timedelta(minutes=minutes)
        snoozed = self._ledger.snooze(upcoming.id, until, count=max(count, upcoming.snooze_count + 1))
        self._redispatch(reminder, snoozed)
        logger.info(f"Re-delivering '{reminder.title}' in {minutes} min (until {until})")

    def _redispatch(self, reminder: Reminder, execution: Execution) -> None:
        """Move the live request to the execution's due time."""
        self._dispatcher.cancel(execution.id)
        if not self._dispatcher.schedule(execution.id, execution.due_at, self._payload(reminder, execution)):
            self._cancel_locked(reminder.id)
            with self._backlog_lock:
                self._backlog.add(reminder.id)
            raise CapacityExceeded(reminder.id, self._settings.max_pending_notifications)
        self._slots[reminder.id] = replace(self._slots[reminder.id], fire_at=execution.due_at)

    def _retry_backlog(self, exclude: Optional[str] = None) -> None:
        with self._backlog_lock:
            waiting = [r for r in self._backlog if r != exclude]
        for reminder_id in waiting:
            reminder = self._reminders.get(reminder_id)
            if reminder is None:
                self._discard_backlog(reminder_id)
                continue
            try:
                self.schedule(reminder)
            except CapacityExceeded:
                # Still full; the next fire will try again
                break

    def _discard_backlog(self, reminder_id: str) -> None:
        with self._backlog_lock:
            self._backlog.discard(reminder_id)

    def _notify(self, execution: Execution) -> None:
        for listener in self._listeners:
            try:
                listener(execution)
            except Exception:
                logger.exception(f"Settled-execution listener {listener!r} failed")

    def _payload(self, reminder: Reminder, execution: Execution) -> dict:
        preferences = self._preferences.get()
        quiet = preferences.quiet_hours
        silent = quiet.enabled and recurrence.is_quiet_hours(execution.due_at, quiet.start_time, quiet.end_time)
        return {
            "reminderId": reminder.id,
            "executionId": execution.id,
            "category": reminder.category,
            "title": reminder.title,
            "body": reminder.description or "Time for your health reminder!",
            "sound": reminder.sound_enabled and preferences.sound_enabled,
            "vibration": reminder.vibration_enabled and preferences.vibration_enabled,
            "silent": silent,
        }
