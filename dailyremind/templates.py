"""
templates.py
────────────
Predefined reminder templates and category metadata.
"""

from typing import Dict, Optional

from dailyremind.models import RecurrenceConfig, ReminderTemplate, TimeSlot

REMINDER_CATEGORIES: Dict[str, Dict[str, str]] = {
    "posture":   {"name": "Posture",     "description": "Maintain good posture throughout the day", "icon": "posture"},
    "vision":    {"name": "Vision Care", "description": "Protect your eyes from digital strain",    "icon": "eye"},
    "jaw":       {"name": "Jaw Health",  "description": "Relieve jaw tension and TMJ symptoms",     "icon": "jaw"},
    "hydration": {"name": "Hydration",   "description": "Stay properly hydrated",                   "icon": "water"},
    "breathing": {"name": "Breathing",   "description": "Mindful breathing exercises",              "icon": "lungs"},
    "custom":    {"name": "Custom",      "description": "Your personalized reminders",              "icon": "bell"},
}


def _slots(*pairs) -> list:
    return [TimeSlot(hour=h, minute=m) for h, m in pairs]


DEFAULT_REMINDER_TEMPLATES = [
    ReminderTemplate(
        id="posture-30min",
        title="Posture Check",
        description="Straighten your back and shoulders. Check your sitting position.",
        category="posture",
        default_recurrence=RecurrenceConfig(type="interval", interval_minutes=30),
        icon="posture",
        is_default=True,
    ),
    ReminderTemplate(
        id="vision-20-20-20",
        title="20-20-20 Rule",
        description="Look at something 20 feet away for 20 seconds to rest your eyes.",
        category="vision",
        default_recurrence=RecurrenceConfig(type="interval", interval_minutes=20),
        icon="eye",
        is_default=True,
    ),
    ReminderTemplate(
        id="jaw-exercises",
        title="Jaw Exercise",
        description="Gentle jaw stretches and movements to relieve tension.",
        category="jaw",
        default_recurrence=RecurrenceConfig(type="multiple", multiple_times=_slots((9, 0), (13, 0), (18, 0))),
        icon="jaw",
        is_default=True,
    ),
    ReminderTemplate(
        id="hydration-hourly",
        title="Drink Water",
        description="Stay hydrated! Take a sip of water.",
        category="hydration",
        default_recurrence=RecurrenceConfig(type="interval", interval_minutes=60),
        icon="water",
    ),
    ReminderTemplate(
        id="breathing-exercise",
        title="Deep Breathing",
        description="Take 5 deep breaths to reduce stress and improve focus.",
        category="breathing",
        default_recurrence=RecurrenceConfig(type="multiple", multiple_times=_slots((10, 0), (15, 0), (20, 0))),
        icon="lungs",
    ),
]


def get_template(template_id: str) -> Optional[ReminderTemplate]:
    return next((t for t in DEFAULT_REMINDER_TEMPLATES if t.id == template_id), None)


def category_name(category: str) -> str:
    return REMINDER_CATEGORIES.get(category, REMINDER_CATEGORIES["custom"])["name"]
