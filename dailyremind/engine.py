"""
engine.py
─────────
Composition root.  The store and the dispatcher are constructed by the caller
and injected; everything else is built here and shared by reference.

The engine also owns the user-initiated flows (add / edit / toggle / delete,
preferences, import / export).  Each flow that touches one reminder runs
under that reminder's scheduler lock, so it serialises with dispatcher
callbacks for the same reminder.
"""

import json
from datetime import datetime
from typing import Callable, List, Optional, Union

from pydantic import ValidationError

from dailyremind import recurrence, storage
from dailyremind.config import Settings, get_settings
from dailyremind.dispatcher import Dispatcher, LocalDispatcher
from dailyremind.errors import (
    ExecutionNotFound,
    InvalidImport,
    InvalidRecurrence,
    ReminderNotFound,
    TemplateNotFound,
)
from dailyremind.ledger import ExecutionLedger
from dailyremind.logger import logger
from dailyremind.models import (
    AppState,
    Dashboard,
    Execution,
    PreferencesUpdate,
    Reminder,
    ReminderCreate,
    ReminderUpdate,
    UserPreferences,
)
from dailyremind.reminders import PreferenceRepository, ReminderRepository
from dailyremind.scheduler import NotificationScheduler
from dailyremind.stats import StatsAggregator
from dailyremind.templates import get_template


class Engine:

    def __init__(
        self,
        store: storage.Store,
        dispatcher: Dispatcher,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.dispatcher = dispatcher
        self._clock = clock

        self.reminders = ReminderRepository(store)
        self.preferences = PreferenceRepository(store)
        self.ledger = ExecutionLedger(store)
        self.stats = StatsAggregator(self.ledger, store, clock=clock)
        self.scheduler = NotificationScheduler(
            reminders=self.reminders,
            preferences=self.preferences,
            ledger=self.ledger,
            stats=self.stats,
            dispatcher=dispatcher,
            settings=self.settings,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Engine":
        settings = settings or get_settings()
        dispatcher = LocalDispatcher(
            max_pending=settings.max_pending_notifications,
            tick_seconds=settings.dispatcher_tick_seconds,
            desktop_notifications=settings.desktop_notifications,
        )
        return cls(storage.JsonFileStore(settings.data_dir), dispatcher, settings)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> bool:
        """Initialise the scheduler, reconcile, and queue every active reminder."""
        granted = self.scheduler.initialize()
        self.dispatcher.start()
        self.scheduler.reconcile_missed()
        if granted and self.preferences.get().notifications_enabled:
            self.scheduler.schedule_all(self.reminders.get_all())
        return granted

    def stop(self) -> None:
        self.dispatcher.stop()

    # ── Reminders ─────────────────────────────────────────────────────────────

    def list_reminders(self) -> List[Reminder]:
        now = self._clock()
        return [self._with_next(r, now) for r in self.reminders.get_all()]

    def get_reminder(self, reminder_id: str) -> Reminder:
        return self._with_next(self._require(reminder_id), self._clock())

    def add_reminder(self, body: ReminderCreate) -> Reminder:
        recurrence.validate_recurrence(body.recurrence)
        now = self._clock()
        reminder = Reminder(**body.model_dump(), created_at=now, updated_at=now)

        with self.scheduler.lock_for(reminder.id):
            self.reminders.add(reminder)
            logger.info(f"Added reminder '{reminder.title}' ({reminder.id})")
            self.scheduler.schedule(reminder)
        return self._with_next(reminder, now)

    def add_from_template(self, template_id: str) -> Reminder:
        template = get_template(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return self.add_reminder(ReminderCreate(
            title=template.title,
            description=template.description,
            category=template.category,
            recurrence=template.default_recurrence,
            icon=template.icon,
        ))

    def update_reminder(self, reminder_id: str, body: ReminderUpdate) -> Reminder:
        """Edits invalidate the outstanding request: save, cancel, re-schedule."""
        with self.scheduler.lock_for(reminder_id):
            current = self._require(reminder_id)
            changes = body.model_dump(exclude_none=True)
            updated = Reminder.model_validate(
                {**current.model_dump(), **changes, "updated_at": self._clock()}
            )
            recurrence.validate_recurrence(updated.recurrence)

            self.reminders.save(updated)
            self.scheduler.cancel(reminder_id)
            self.scheduler.schedule(updated)
        logger.info(f"Updated reminder '{updated.title}' ({reminder_id})")
        return self._with_next(updated, self._clock())

    def toggle_reminder(self, reminder_id: str, enabled: bool) -> Reminder:
        return self.update_reminder(reminder_id, ReminderUpdate(is_enabled=enabled))

    def delete_reminder(self, reminder_id: str) -> None:
        """Cascade: request, executions and stats go before the reminder itself."""
        with self.scheduler.lock_for(reminder_id):
            self._require(reminder_id)
            self.scheduler.cancel(reminder_id)
            self.ledger.delete_for_reminder(reminder_id)
            self.stats.delete(reminder_id)
            self.reminders.delete(reminder_id)
        self.scheduler.forget(reminder_id)
        logger.info(f"Deleted reminder {reminder_id}")

    def clear_reminders(self) -> int:
        reminders = self.reminders.get_all()
        for reminder in reminders:
            self.delete_reminder(reminder.id)
        return len(reminders)

    # ── Executions ────────────────────────────────────────────────────────────

    def executions_for(self, reminder_id: str) -> List[Execution]:
        self._require(reminder_id)
        return self.ledger.for_reminder(reminder_id)

    def respond(
        self,
        execution_id: str,
        response: str,
        snooze_minutes: Optional[int] = None,
    ) -> Optional[Execution]:
        """User acted on an execution from the app rather than the notification."""
        execution = self.ledger.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        payload = {"reminderId": execution.reminder_id, "executionId": execution.id}
        return self.scheduler.handle_action(payload, response, snooze_minutes)

    def reconcile(self) -> List[Execution]:
        return self.scheduler.reconcile_missed()

    # ── Preferences ───────────────────────────────────────────────────────────

    def get_preferences(self) -> UserPreferences:
        return self.preferences.get()

    def update_preferences(self, body: PreferencesUpdate) -> UserPreferences:
        current = self.preferences.get()
        merged = UserPreferences.model_validate(
            {**current.model_dump(), **body.model_dump(exclude_none=True)}
        )
        self.preferences.set(merged)

        if current.notifications_enabled and not merged.notifications_enabled:
            self.scheduler.cancel_all()
        elif merged.notifications_enabled and not current.notifications_enabled:
            self.scheduler.schedule_all(self.reminders.get_all())
        return merged

    # ── Stats ─────────────────────────────────────────────────────────────────

    def dashboard(self) -> Dashboard:
        reminders = self.reminders.get_all()
        return Dashboard(
            today=self.stats.today_summary(),
            week=self.stats.week_summary(),
            overall=self.stats.global_summary(reminders),
            categories=self.stats.category_summary(reminders),
        )

    # ── Export / import ───────────────────────────────────────────────────────

    def export_state(self) -> str:
        last_sync = self.store.get(storage.LAST_SYNC)
        state = AppState(
            reminders=self.reminders.get_all(),
            executions=self.ledger.all(),
            stats={s.reminder_id: s for s in self.stats.all()},
            preferences=self.preferences.get(),
            last_sync=last_sync or self._clock(),
        )
        return state.model_dump_json(by_alias=True, indent=2, exclude={"reminders": {"__all__": {"next_notification"}}})

    def import_state(self, document: Union[str, dict]) -> AppState:
        """Replace the whole state with ``document`` after structural validation."""
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError as e:
                raise InvalidImport(f"Import is not valid JSON: {e}") from e
        if not isinstance(document, dict):
            raise InvalidImport("Import must be a JSON object")
        missing = [key for key in ("reminders", "preferences") if key not in document]
        if missing:
            raise InvalidImport(f"Import is missing required section(s): {', '.join(missing)}")

        try:
            state = AppState.model_validate(document)
        except ValidationError as e:
            raise InvalidImport(f"Import has malformed records: {e}") from e
        for reminder in state.reminders:
            try:
                recurrence.validate_recurrence(reminder.recurrence)
            except InvalidRecurrence as e:
                raise InvalidImport(f"Reminder {reminder.id}: {e}") from e

        # No execution or stats record may reference a reminder that is not imported
        known = {r.id for r in state.reminders}
        executions = [e for e in state.executions if e.reminder_id in known]
        stats = [s for s in state.stats.values() if s.reminder_id in known]

        self.scheduler.cancel_all()
        for reminder in self.reminders.get_all():
            self.scheduler.forget(reminder.id)
        self.reminders.replace_all(state.reminders)
        self.ledger.replace_all(executions)
        self.stats.replace_all(stats)
        self.preferences.set(state.preferences)
        # Imported pending executions have no live request behind them
        self.ledger.dismiss_pending()

        logger.info(f"Imported {len(state.reminders)} reminder(s) and {len(executions)} execution(s)")
        if self.scheduler.permission_granted and state.preferences.notifications_enabled:
            self.scheduler.schedule_all(self.reminders.get_all())
        return state

    # ── Internal ──────────────────────────────────────────────────────────────

    def _require(self, reminder_id: str) -> Reminder:
        reminder = self.reminders.get(reminder_id)
        if reminder is None:
            raise ReminderNotFound(reminder_id)
        return reminder

    @staticmethod
    def _with_next(reminder: Reminder, now: datetime) -> Reminder:
        try:
            upcoming = recurrence.next_for(reminder, now)
        except InvalidRecurrence:
            upcoming = None
        return reminder.model_copy(update={"next_notification": upcoming})

