"""
ledger.py
─────────
The execution ledger: an append-structured log of every due occurrence.

Executions are appended as ``pending`` and mutated exactly once into a
terminal status.  Nothing is removed except through the cascade delete of the
owning reminder.  The ledger records what it is told; keeping one pending
execution per reminder is the scheduler's job.

Every mutation persists a staged copy first and swaps the in-memory map only
after the store accepted it, so a StorageFailure leaves the ledger unchanged.
"""

import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from dailyremind import storage
from dailyremind.logger import logger
from dailyremind.models import Execution, UserResponse


class ExecutionLedger:

    def __init__(self, store: storage.Store):
        self._store = store
        self._executions: Dict[str, Execution] = {}
        self._lock = threading.RLock()
        self._load()

    # ── Queries ───────────────────────────────────────────────────────────────

    def all(self) -> List[Execution]:
        with self._lock:
            return list(self._executions.values())

    def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            return self._executions.get(execution_id)

    def for_reminder(self, reminder_id: str) -> List[Execution]:
        with self._lock:
            return [e for e in self._executions.values() if e.reminder_id == reminder_id]

    def pending_for(self, reminder_id: str) -> List[Execution]:
        return [e for e in self.for_reminder(reminder_id) if e.status == "pending"]

    def in_range(self, start: datetime, end: datetime) -> List[Execution]:
        """Executions whose scheduled_time falls in [start, end)."""
        with self._lock:
            return [e for e in self._executions.values() if start <= e.scheduled_time < end]

    def stale_pending(self, before: datetime) -> List[Execution]:
        with self._lock:
            return [
                e for e in self._executions.values()
                if e.status == "pending" and e.due_at < before
            ]

    # ── Append ────────────────────────────────────────────────────────────────

    def append(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Execution already recorded: {execution.id}")
            staged = dict(self._executions)
            staged[execution.id] = execution
            self._commit(staged)
        logger.debug(f"Recorded pending execution {execution.id} for {execution.reminder_id} at {execution.scheduled_time}")
        return execution

    # ── Transitions ───────────────────────────────────────────────────────────

    def complete(
        self,
        execution_id: str,
        user_response: Optional[UserResponse] = None,
        at: Optional[datetime] = None,
    ) -> Optional[Execution]:
        return self._transition(
            execution_id,
            status="completed",
            executed_time=at or datetime.now(),
            user_response=user_response,
        )

    def dismiss(self, execution_id: str, user_response: Optional[UserResponse] = None) -> Optional[Execution]:
        changes = {"status": "dismissed"}
        if user_response is not None:
            changes["user_response"] = user_response
        return self._transition(execution_id, **changes)

    def mark_missed(self, execution_id: str) -> Optional[Execution]:
        return self._transition(execution_id, status="missed")

    def snooze(self, execution_id: str, until: datetime, count: Optional[int] = None) -> Optional[Execution]:
        """
        Keeps the execution pending; it is re-delivered at ``until``.
        ``count`` overrides the incremented snooze count.
        """
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None or current.is_terminal:
                return None
            return self._transition(
                execution_id,
                user_response="snoozed",
                snooze_until=until,
                snooze_count=current.snooze_count + 1 if count is None else count,
            )

    def record_response(self, execution_id: str, user_response: UserResponse) -> Optional[Execution]:
        """
        Attach the user's answer to an execution its delivery already
        completed.  Status and times are left alone; only an execution
        without a response can take one.
        """
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None or current.status != "completed" or current.user_response is not None:
                logger.debug(f"Ignoring response {user_response} for {execution_id}")
                return None
            updated = self._updated(current, user_response=user_response)
            staged = dict(self._executions)
            staged[execution_id] = updated
            self._commit(staged)
            return updated

    def dismiss_pending(self, reminder_id: Optional[str] = None) -> List[Execution]:
        """Bulk-dismiss pending executions of one reminder, or of all when None."""
        with self._lock:
            targets = [
                e for e in self._executions.values()
                if e.status == "pending" and (reminder_id is None or e.reminder_id == reminder_id)
            ]
            if not targets:
                return []
            staged = dict(self._executions)
            dismissed = []
            for execution in targets:
                updated = self._updated(execution, status="dismissed")
                staged[execution.id] = updated
                dismissed.append(updated)
            self._commit(staged)
        logger.debug(f"Dismissed {len(dismissed)} pending execution(s) for {reminder_id or 'all reminders'}")
        return dismissed

    # ── Cascade / bulk replace ────────────────────────────────────────────────

    def delete_for_reminder(self, reminder_id: str) -> int:
        with self._lock:
            staged = {k: e for k, e in self._executions.items() if e.reminder_id != reminder_id}
            removed = len(self._executions) - len(staged)
            if removed:
                self._commit(staged)
        return removed

    def replace_all(self, executions: Iterable[Execution]) -> None:
        with self._lock:
            self._commit({e.id: e for e in executions})

    # ── Internal ──────────────────────────────────────────────────────────────

    @staticmethod
    def _updated(execution: Execution, **changes) -> Execution:
        return Execution.model_validate({**execution.model_dump(), **changes})

    def _transition(self, execution_id: str, **changes) -> Optional[Execution]:
        with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                logger.debug(f"Ignoring transition of unknown execution {execution_id}")
                return None
            if current.is_terminal:
                logger.debug(f"Ignoring transition of terminal execution {execution_id} ({current.status})")
                return None
            updated = self._updated(current, **changes)
            staged = dict(self._executions)
            staged[execution_id] = updated
            self._commit(staged)
            return updated

    def _commit(self, staged: Dict[str, Execution]) -> None:
        self._store.set(storage.EXECUTIONS, [e.dump() for e in staged.values()])
        self._executions = staged

    def _load(self):
        rows = self._store.get(storage.EXECUTIONS, [])
        for row in rows:
            try:
                execution = Execution.model_validate(row)
            except ValidationError as e:
                logger.warning(f"Skipping malformed execution record: {e}")
                continue
            self._executions[execution.id] = execution
