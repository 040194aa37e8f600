from datetime import datetime, timedelta

import pytest

from dailyremind.errors import StorageFailure
from dailyremind.ledger import ExecutionLedger

from conftest import REFERENCE, FlakyStore, add_pending


@pytest.fixture
def ledger(store):
    return ExecutionLedger(store)


def test_append_pending(ledger):
    execution = add_pending(ledger, "r1", REFERENCE)
    assert execution.status == "pending"
    assert ledger.get(execution.id) == execution
    assert ledger.pending_for("r1") == [execution]


def test_complete_then_immutable(ledger):
    execution = add_pending(ledger, "r1", REFERENCE)
    done_at = REFERENCE + timedelta(minutes=1)

    completed = ledger.complete(execution.id, user_response="acknowledged", at=done_at)
    assert completed.status == "completed"
    assert completed.executed_time == done_at
    assert completed.user_response == "acknowledged"

    # Terminal executions never change again
    assert ledger.dismiss(execution.id) is None
    assert ledger.mark_missed(execution.id) is None
    assert ledger.get(execution.id).status == "completed"


def test_unknown_execution_transition_is_noop(ledger):
    assert ledger.complete("nope") is None


def test_dismiss_pending_scoped_to_reminder(ledger):
    a = add_pending(ledger, "r1", REFERENCE)
    b = add_pending(ledger, "r2", REFERENCE)

    dismissed = ledger.dismiss_pending("r1")

    assert [e.id for e in dismissed] == [a.id]
    assert ledger.get(a.id).status == "dismissed"
    assert ledger.get(b.id).status == "pending"


def test_dismiss_pending_all(ledger):
    add_pending(ledger, "r1", REFERENCE)
    add_pending(ledger, "r2", REFERENCE)
    assert len(ledger.dismiss_pending()) == 2
    assert all(e.status == "dismissed" for e in ledger.all())


def test_snooze_keeps_pending(ledger):
    execution = add_pending(ledger, "r1", REFERENCE)
    until = REFERENCE + timedelta(minutes=10)

    snoozed = ledger.snooze(execution.id, until)

    assert snoozed.status == "pending"
    assert snoozed.user_response == "snoozed"
    assert snoozed.snooze_until == until
    assert snoozed.snooze_count == 1
    assert snoozed.due_at == until


def test_snooze_count_can_be_carried_over(ledger):
    execution = add_pending(ledger, "r1", REFERENCE)
    snoozed = ledger.snooze(execution.id, REFERENCE + timedelta(minutes=5), count=3)
    assert snoozed.snooze_count == 3


def test_record_response_only_on_completed_without_response(ledger):
    execution = add_pending(ledger, "r1", REFERENCE)
    assert ledger.record_response(execution.id, "acknowledged") is None

    ledger.complete(execution.id, at=REFERENCE)
    recorded = ledger.record_response(execution.id, "dismissed")

    assert recorded.status == "completed"
    assert recorded.executed_time == REFERENCE
    assert recorded.user_response == "dismissed"
    assert ledger.record_response(execution.id, "acknowledged") is None
    assert ledger.get(execution.id).user_response == "dismissed"
    assert ledger.record_response("execution_0_missing", "acknowledged") is None


def test_in_range_is_half_open(ledger):
    start = datetime(2024, 5, 15)
    inside = add_pending(ledger, "r1", start)
    add_pending(ledger, "r1", start + timedelta(days=1))
    add_pending(ledger, "r1", start - timedelta(milliseconds=1))

    assert ledger.in_range(start, start + timedelta(days=1)) == [inside]


def test_stale_pending_uses_snooze_time(ledger):
    old = add_pending(ledger, "r1", REFERENCE - timedelta(hours=1))
    snoozed = add_pending(ledger, "r2", REFERENCE - timedelta(hours=1))
    ledger.snooze(snoozed.id, REFERENCE + timedelta(minutes=5))

    assert [e.id for e in ledger.stale_pending(REFERENCE)] == [old.id]


def test_delete_for_reminder(ledger):
    add_pending(ledger, "r1", REFERENCE)
    add_pending(ledger, "r1", REFERENCE + timedelta(hours=1))
    keep = add_pending(ledger, "r2", REFERENCE)

    assert ledger.delete_for_reminder("r1") == 2
    assert ledger.all() == [keep]


def test_reload_from_store_preserves_millis(store):
    ledger = ExecutionLedger(store)
    at = REFERENCE.replace(microsecond=456789)
    execution = add_pending(ledger, "r1", at)
    assert execution.scheduled_time == REFERENCE.replace(microsecond=456000)

    reloaded = ExecutionLedger(store)
    assert reloaded.get(execution.id) == execution


def test_storage_failure_leaves_ledger_unchanged():
    store = FlakyStore()
    ledger = ExecutionLedger(store)
    execution = add_pending(ledger, "r1", REFERENCE)

    store.fail = True
    with pytest.raises(StorageFailure):
        ledger.complete(execution.id)
    with pytest.raises(StorageFailure):
        add_pending(ledger, "r1", REFERENCE)

    assert ledger.all() == [execution]
    store.fail = False
    assert ledger.complete(execution.id).status == "completed"
