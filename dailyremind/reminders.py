"""
reminders.py
────────────
Reminder and preference repositories.

Both keep an in-memory copy guarded by a threading.Lock and persist through
the injected store.  Writes go to the store first; the in-memory copy is
swapped only once the store accepted them.
"""

import threading
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from dailyremind import storage
from dailyremind.logger import logger
from dailyremind.models import Reminder, UserPreferences


class ReminderRepository:

    def __init__(self, store: storage.Store):
        self._store = store
        self._reminders: Dict[str, Reminder] = {}
        self._lock = threading.Lock()
        self._load()

    def get_all(self) -> List[Reminder]:
        with self._lock:
            return list(self._reminders.values())

    def get(self, reminder_id: str) -> Optional[Reminder]:
        with self._lock:
            return self._reminders.get(reminder_id)

    def add(self, reminder: Reminder) -> Reminder:
        with self._lock:
            if reminder.id in self._reminders:
                raise ValueError(f"Reminder already exists: {reminder.id}")
            staged = dict(self._reminders)
            staged[reminder.id] = reminder
            self._commit(staged)
        return reminder

    def save(self, reminder: Reminder) -> Reminder:
        """Replace an existing reminder wholesale."""
        with self._lock:
            staged = dict(self._reminders)
            staged[reminder.id] = reminder
            self._commit(staged)
        return reminder

    def delete(self, reminder_id: str) -> bool:
        with self._lock:
            if reminder_id not in self._reminders:
                return False
            staged = {k: r for k, r in self._reminders.items() if k != reminder_id}
            self._commit(staged)
        return True

    def replace_all(self, reminders: Iterable[Reminder]) -> None:
        with self._lock:
            self._commit({r.id: r for r in reminders})

    def _commit(self, staged: Dict[str, Reminder]) -> None:
        # next_notification is derived; never persist it
        self._store.set(
            storage.REMINDERS,
            [r.model_dump(mode="json", by_alias=True, exclude={"next_notification"}) for r in staged.values()],
        )
        self._reminders = staged

    def _load(self):
        rows = self._store.get(storage.REMINDERS, [])
        for row in rows:
            try:
                reminder = Reminder.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed reminder record: {e}")
                continue
            self._reminders[reminder.id] = reminder


class PreferenceRepository:

    def __init__(self, store: storage.Store):
        self._store = store
        self._lock = threading.Lock()
        row = store.get(storage.PREFERENCES)
        try:
            self._preferences = UserPreferences.model_validate(row) if row else UserPreferences()
        except ValidationError as e:
            logger.warning(f"Stored preferences are malformed, using defaults: {e}")
            self._preferences = UserPreferences()

    def get(self) -> UserPreferences:
        with self._lock:
            return self._preferences

    def set(self, preferences: UserPreferences) -> UserPreferences:
        with self._lock:
            self._store.set(storage.PREFERENCES, preferences.dump())
            self._preferences = preferences
        return preferences
