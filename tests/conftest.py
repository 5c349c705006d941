"""Shared fixtures for the retry queue tests.

Settings are read from the environment at import time, so the environment
is pinned here before any ``calendar_retry`` module is imported.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

_scratch = tempfile.mkdtemp(prefix="calendar-retry-tests-")
os.environ["LOGS_DIR"] = os.path.join(_scratch, "logs")
os.environ["SPOOL_DIR"] = os.path.join(_scratch, "spool")
os.environ["QUEUE_BACKEND"] = "spool"
os.environ.pop("BETTERSTACK_SOURCE_TOKEN", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

from calendar_retry.queue.models import ExecutionResult, Operation, OperationType  # noqa: E402
from calendar_retry.queue.processor import QueueProcessor  # noqa: E402
from calendar_retry.queue.spool_store import MemoryStore  # noqa: E402
from calendar_retry.state import MemoryProperties  # noqa: E402

T0 = datetime(2026, 3, 7, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class FakeTrigger:
    def __init__(self) -> None:
        self.active = False
        self.created = 0
        self.removed = 0
        self.calls: list[tuple[str, int]] = []

    def ensure_exists(self, callback_name: str, interval_minutes: int) -> None:
        self.calls.append((callback_name, interval_minutes))
        if not self.active:
            self.active = True
            self.created += 1

    def remove_if_exists(self) -> None:
        if self.active:
            self.active = False
            self.removed += 1

    def is_active(self) -> bool:
        return self.active


class ScriptedExecutor:
    """Returns queued results in order, then repeats the last one.

    A result may be a callable taking the item, for side effects mid-pass.
    """

    def __init__(self, *results: Any) -> None:
        self.results = list(results) or [ExecutionResult.ok()]
        self.calls: list = []

    def execute(self, item):
        self.calls.append(item)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if callable(result):
            return result(item)
        return result


class RecordingNotifier:
    def __init__(self) -> None:
        self.successes: list = []
        self.failures: list = []

    def notify_success(self, item) -> None:
        self.successes.append(item)

    def notify_failure(self, item) -> None:
        self.failures.append(item)


def make_operation(**overrides: Any) -> Operation:
    fields = {
        "type": OperationType.CREATE,
        "target_id": "club-rides@group.calendar.google.com",
        "correlation_key": "https://ridewithgps.com/events/1001",
        "owner_email": "ride.leader@example.org",
        "params": {
            "title": "Sat B Ride",
            "startTime": "2026-03-14T09:00:00-08:00",
            "endTime": "2026-03-14T12:00:00-08:00",
            "location": "Seascape Park",
            "description": "Regroup at the top",
        },
        "display_title": "Sat B Ride",
        "display_ref": "42",
    }
    fields.update(overrides)
    return Operation(**fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def properties() -> MemoryProperties:
    return MemoryProperties()


@pytest.fixture
def trigger() -> FakeTrigger:
    return FakeTrigger()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def operation_factory() -> Callable[..., Operation]:
    return make_operation


@pytest.fixture
def make_processor(store, properties, trigger, notifier, clock):
    """Build a processor around the shared fakes with a given executor."""
    counter = iter(range(1, 10_000))

    def _make(executor=None, **kwargs: Any) -> QueueProcessor:
        return QueueProcessor(
            store=store,
            executor=executor or ScriptedExecutor(),
            notifier=notifier,
            trigger=trigger,
            properties=properties,
            clock=clock,
            id_generator=lambda: f"item-{next(counter)}",
            interval_minutes=5,
            **kwargs,
        )

    return _make
