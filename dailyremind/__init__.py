"""DailyRemind: recurrence scheduling and execution tracking for habit reminders."""

__version__ = "1.0.0"
