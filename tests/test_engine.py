import json
from datetime import datetime, timedelta

import pytest

from dailyremind.engine import Engine
from dailyremind.errors import (
    ExecutionNotFound,
    InvalidImport,
    InvalidRecurrence,
    ReminderNotFound,
    StorageFailure,
    TemplateNotFound,
)
from dailyremind.models import PreferencesUpdate, RecurrenceConfig, ReminderCreate, ReminderUpdate, TimeSlot
from dailyremind.storage import MemoryStore

from conftest import REFERENCE, FakeDispatcher, daily, interval


def test_add_sets_next_notification(engine):
    reminder = engine.add_reminder(daily(18, 30))
    assert reminder.next_notification == datetime(2024, 5, 15, 18, 30)
    assert reminder.created_at == reminder.updated_at == REFERENCE
    assert engine.get_reminder(reminder.id).next_notification == datetime(2024, 5, 15, 18, 30)


def test_invalid_recurrence_persists_nothing(engine, dispatcher):
    body = ReminderCreate(title="Broken", recurrence=RecurrenceConfig(type="weekly", weekly_days=[1]))
    with pytest.raises(InvalidRecurrence):
        engine.add_reminder(body)
    assert engine.list_reminders() == []
    assert engine.ledger.all() == []
    assert dispatcher.pending == {}


def test_storage_failure_on_add_leaves_no_state(engine, store, dispatcher):
    store.fail = True
    with pytest.raises(StorageFailure):
        engine.add_reminder(interval(30))
    store.fail = False

    assert engine.list_reminders() == []
    assert engine.ledger.all() == []
    assert dispatcher.pending == {}


def test_failed_last_sync_stamp_does_not_fail_add(engine, store, dispatcher):
    store.fail_only = "last_sync"

    reminder = engine.add_reminder(interval(30))

    assert [r["id"] for r in store.get("reminders")] == [reminder.id]
    assert [r.id for r in engine.list_reminders()] == [reminder.id]
    assert len(store.get("executions")) == len(engine.ledger.all()) == 1
    assert len(dispatcher.pending) == 1


def test_add_from_template(engine):
    reminder = engine.add_from_template("vision-20-20-20")
    assert reminder.category == "vision"
    assert reminder.recurrence.type == "interval"
    assert reminder.recurrence.interval_minutes == 20
    assert reminder.icon

    with pytest.raises(TemplateNotFound):
        engine.add_from_template("no-such-template")


def test_update_reschedules_with_new_recurrence(engine, dispatcher):
    reminder = engine.add_reminder(daily(18))
    old_id, _, _ = dispatcher.only()

    updated = engine.update_reminder(reminder.id, ReminderUpdate(
        recurrence=RecurrenceConfig(type="daily", daily_time=TimeSlot(hour=20, minute=0)),
    ))

    assert updated.next_notification == datetime(2024, 5, 15, 20, 0)
    assert engine.ledger.get(old_id).status == "dismissed"
    _, fire_at, _ = dispatcher.only()
    assert fire_at == datetime(2024, 5, 15, 20, 0)


def test_update_keeps_unspecified_fields(engine, clock):
    reminder = engine.add_reminder(interval(30, description="Shoulders back"))
    clock.advance(minutes=5)

    updated = engine.update_reminder(reminder.id, ReminderUpdate(title="Posture"))

    assert updated.title == "Posture"
    assert updated.description == "Shoulders back"
    assert updated.created_at == REFERENCE
    assert updated.updated_at == clock.now


def test_update_with_invalid_recurrence_changes_nothing(engine):
    reminder = engine.add_reminder(interval(30))
    with pytest.raises(InvalidRecurrence):
        engine.update_reminder(reminder.id, ReminderUpdate(recurrence=RecurrenceConfig(type="daily")))
    assert engine.get_reminder(reminder.id).recurrence.interval_minutes == 30


def test_toggle_back_on_reschedules(engine, dispatcher):
    reminder = engine.add_reminder(interval(30))
    engine.toggle_reminder(reminder.id, False)
    assert dispatcher.pending == {}
    assert engine.get_reminder(reminder.id).next_notification is None

    engine.toggle_reminder(reminder.id, True)
    dispatcher.only()


def test_delete_cascades(engine, dispatcher, clock):
    reminder = engine.add_reminder(interval(30))
    other = engine.add_reminder(interval(60, title="Water"))
    request_id = engine.scheduler.state(reminder.id).request_id
    clock.advance(minutes=30)
    dispatcher.fire(request_id)
    assert engine.stats.get(reminder.id) is not None

    engine.delete_reminder(reminder.id)

    with pytest.raises(ReminderNotFound):
        engine.get_reminder(reminder.id)
    assert engine.ledger.for_reminder(reminder.id) == []
    assert engine.stats.get(reminder.id) is None
    assert [p["reminderId"] for _, p in dispatcher.pending.values()] == [other.id]


def test_delete_unknown_raises(engine):
    with pytest.raises(ReminderNotFound):
        engine.delete_reminder("reminder_0_missing")


def test_clear_reminders(engine, dispatcher):
    engine.add_reminder(interval(30))
    engine.add_reminder(daily(18))
    assert engine.clear_reminders() == 2
    assert engine.list_reminders() == []
    assert engine.ledger.all() == []
    assert dispatcher.pending == {}


def test_respond_to_unknown_execution(engine):
    with pytest.raises(ExecutionNotFound):
        engine.respond("execution_0_missing", "acknowledged")


def test_respond_from_app(engine, dispatcher):
    reminder = engine.add_reminder(interval(30))
    execution_id = engine.scheduler.state(reminder.id).execution_id

    settled = engine.respond(execution_id, "acknowledged")

    assert settled.status == "completed"
    assert engine.respond(execution_id, "acknowledged") is None


def test_preferences_partial_update(engine):
    updated = engine.update_preferences(PreferencesUpdate(theme="dark", snooze_options=[5, 20]))
    assert updated.theme == "dark"
    assert updated.snooze_options == [5, 20]
    assert updated.notifications_enabled is True
    assert engine.get_preferences() == updated


def test_dashboard(engine, dispatcher, clock):
    posture = engine.add_reminder(interval(30, category="posture"))
    engine.add_reminder(interval(60, title="Water", category="hydration"))
    clock.advance(minutes=30)
    dispatcher.fire(engine.scheduler.state(posture.id).request_id)

    dashboard = engine.dashboard()

    assert dashboard.today.total == 3
    assert dashboard.today.completed == 1
    assert dashboard.today.completion_rate == 33
    assert dashboard.overall.total_reminders == 2
    assert dashboard.overall.total_completed == 1
    assert dashboard.overall.longest_streak == 1
    names = {c.category: c.name for c in dashboard.categories}
    assert names == {"posture": "Posture", "hydration": "Hydration"}


# ── Export / import ───────────────────────────────────────────────────────────

def test_export_document_shape(engine):
    engine.add_reminder(interval(30))
    document = json.loads(engine.export_state())

    assert set(document) == {"reminders", "executions", "stats", "preferences", "lastSync"}
    assert "nextNotification" not in document["reminders"][0]
    assert document["reminders"][0]["recurrence"]["intervalMinutes"] == 30
    assert document["executions"][0]["scheduledTime"] == "2024-05-15T10:30:00.000"


def test_export_import_round_trip(engine, dispatcher, settings, clock):
    posture = engine.add_reminder(interval(30))
    engine.add_reminder(daily(18, title="Stretch"))
    first_request = engine.scheduler.state(posture.id).request_id
    clock.advance(minutes=30)
    dispatcher.fire(first_request)
    engine.update_preferences(PreferencesUpdate(theme="dark"))
    exported = engine.export_state()

    target_dispatcher = FakeDispatcher()
    target = Engine(MemoryStore(), target_dispatcher, settings, clock=clock)
    target.start()
    target.add_reminder(interval(10, title="Will be replaced"))

    state = target.import_state(exported)

    assert sorted(r.title for r in target.list_reminders()) == ["Posture check", "Stretch"]
    assert target.get_preferences().theme == "dark"
    assert target.ledger.get(first_request).status == "completed"
    assert target.stats.get(posture.id).total_completed == 1
    assert len(state.executions) == 3
    # Imported pending executions were dismissed and replaced by fresh requests
    assert len(target_dispatcher.pending) == 2
    for reminder in target.list_reminders():
        assert len(target.ledger.pending_for(reminder.id)) == 1


def test_import_drops_orphan_records(engine):
    document = json.loads(engine.export_state())
    document["executions"] = [{
        "id": "execution_1_orphan",
        "reminderId": "reminder_1_gone",
        "scheduledTime": "2024-05-14T09:00:00.000",
        "status": "completed",
    }]
    document["stats"] = {"reminder_1_gone": {"reminderId": "reminder_1_gone", "totalScheduled": 1}}

    engine.import_state(document)

    assert engine.ledger.all() == []
    assert engine.stats.all() == []


@pytest.mark.parametrize("document", [
    "not json at all",
    "[1, 2, 3]",
    {"reminders": []},
    {"preferences": {}},
    {"reminders": [{"title": "no recurrence"}], "preferences": {}},
    {"reminders": [{"title": "x", "recurrence": {"type": "daily"}}], "preferences": {}},
])
def test_invalid_import_changes_nothing(engine, dispatcher, document):
    existing = engine.add_reminder(interval(30))

    with pytest.raises(InvalidImport):
        engine.import_state(document)

    assert [r.id for r in engine.list_reminders()] == [existing.id]
    assert len(dispatcher.pending) == 1


def test_reload_from_store(store, settings, clock):
    first = Engine(store, FakeDispatcher(), settings, clock=clock)
    first.start()
    reminder = first.add_reminder(daily(7, 15))

    second = Engine(store, FakeDispatcher(), settings, clock=clock)

    loaded = second.get_reminder(reminder.id)
    assert loaded.recurrence == reminder.recurrence
    assert loaded.created_at == reminder.created_at
    assert loaded.next_notification == datetime(2024, 5, 16, 7, 15)
    assert second.ledger.pending_for(reminder.id)[0].scheduled_time == REFERENCE.replace(hour=7, minute=15) + timedelta(days=1)
