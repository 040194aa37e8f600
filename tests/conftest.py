from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytest

from dailyremind.config import Settings
from dailyremind.dispatcher import Dispatcher
from dailyremind.engine import Engine
from dailyremind.errors import StorageFailure
from dailyremind.ledger import ExecutionLedger
from dailyremind.models import Execution, RecurrenceConfig, ReminderCreate, TimeSlot
from dailyremind.storage import MemoryStore

# A Wednesday
REFERENCE = datetime(2024, 5, 15, 10, 0)


class Clock:
    def __init__(self, now: datetime = REFERENCE):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDispatcher(Dispatcher):
    """Records requests; tests fire them by hand."""

    def __init__(self, granted: bool = True, capacity: int = 64):
        super().__init__()
        self.granted = granted
        self.capacity = capacity
        self.pending: Dict[str, Tuple[datetime, dict]] = {}
        self.delivered: Dict[str, dict] = {}
        self.cancelled: List[str] = []

    def request_permission(self) -> bool:
        return self.granted

    def schedule(self, request_id, fire_at, payload) -> bool:
        if request_id not in self.pending and len(self.pending) >= self.capacity:
            return False
        self.pending[request_id] = (fire_at, dict(payload))
        return True

    def cancel(self, request_id) -> None:
        if self.pending.pop(request_id, None) is not None:
            self.cancelled.append(request_id)

    def list_pending(self) -> List[str]:
        return list(self.pending)

    def fire(self, request_id: str):
        _, payload = self.pending.pop(request_id)
        self.delivered[request_id] = payload
        return self._on_fire(payload)

    def act(self, request_id: str, response: str, snooze_minutes=None):
        """Like a real notification, only a delivered request can be acted on."""
        payload = self.delivered.pop(request_id)
        return self._on_action(payload, response, snooze_minutes)

    def drop(self, request_id: str) -> None:
        """Simulate the platform silently losing a request."""
        self.pending.pop(request_id)

    def only(self) -> Tuple[str, datetime, dict]:
        assert len(self.pending) == 1, self.pending
        request_id, (fire_at, payload) = next(iter(self.pending.items()))
        return request_id, fire_at, payload


class FlakyStore(MemoryStore):
    fail = False
    # Fail writes of this one collection only
    fail_only: Optional[str] = None

    def _write(self, collection, value):
        if self.fail or collection == self.fail_only:
            raise StorageFailure(f"disk full while writing {collection}")
        super()._write(collection, value)


def add_pending(ledger: ExecutionLedger, reminder_id: str, scheduled_time: datetime) -> Execution:
    return ledger.append(Execution(reminder_id=reminder_id, scheduled_time=scheduled_time))


def interval(minutes: int = 30, title: str = "Posture check", **kwargs) -> ReminderCreate:
    return ReminderCreate(
        title=title,
        recurrence=RecurrenceConfig(type="interval", interval_minutes=minutes),
        **kwargs,
    )


def daily(hour: int, minute: int = 0, title: str = "Stretch", **kwargs) -> ReminderCreate:
    return ReminderCreate(
        title=title,
        recurrence=RecurrenceConfig(type="daily", daily_time=TimeSlot(hour=hour, minute=minute)),
        **kwargs,
    )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path, desktop_notifications=False)


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture
def engine(store, dispatcher, settings, clock) -> Engine:
    engine = Engine(store, dispatcher, settings, clock=clock)
    engine.start()
    return engine
