"""
errors.py
─────────
Error taxonomy of the engine.  Every error is recoverable at the operation
boundary; none of them should take the process down.
"""

from typing import Optional


class DailyRemindError(Exception):
    pass


class InvalidRecurrence(DailyRemindError):
    """Recurrence config is missing a field its variant requires."""


class InvalidImport(DailyRemindError):
    """Import document failed structural validation."""


class ReminderNotFound(DailyRemindError):
    def __init__(self, reminder_id: str):
        super().__init__(f"Reminder not found: {reminder_id}")
        self.reminder_id = reminder_id


class ExecutionNotFound(DailyRemindError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class PermissionDenied(DailyRemindError):
    """The dispatcher refused notification permission; scheduling is degraded."""


class CapacityExceeded(DailyRemindError):
    def __init__(self, reminder_id: str, limit: Optional[int] = None):
        detail = f" (limit {limit})" if limit else ""
        super().__init__(
            f"Dispatcher cannot accept more requests{detail}; reminder {reminder_id} stays idle"
        )
        self.reminder_id = reminder_id
        self.limit = limit


class StorageFailure(DailyRemindError):
    """Persistent store read or write failed."""


class TemplateNotFound(DailyRemindError):
    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id
