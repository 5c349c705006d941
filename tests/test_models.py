"""Unit tests for queue item models and their lifecycle."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from calendar_retry.errors import InvalidTransitionError
from calendar_retry.queue import scheduler
from calendar_retry.queue.models import (
    ItemStatus,
    Operation,
    OperationType,
    QueueItem,
    parse_timestamp,
)
from conftest import T0, make_operation

pytestmark = pytest.mark.unit


def _item() -> QueueItem:
    return scheduler.create_queue_item(make_operation(), lambda: "id-1", lambda: T0)


class TestTransitions:
    @pytest.mark.parametrize(
        ("start", "target"),
        [
            (ItemStatus.PENDING, ItemStatus.RETRYING),
            (ItemStatus.FAILED, ItemStatus.RETRYING),
            (ItemStatus.RETRYING, ItemStatus.RETRYING),
            (ItemStatus.RETRYING, ItemStatus.SUCCEEDED),
            (ItemStatus.RETRYING, ItemStatus.FAILED),
            (ItemStatus.RETRYING, ItemStatus.ABANDONED),
        ],
    )
    def test_allowed(self, start, target) -> None:
        item = replace(_item(), status=start)
        assert item.transition(target).status is target
        assert item.status is start

    @pytest.mark.parametrize(
        ("start", "target"),
        [
            (ItemStatus.PENDING, ItemStatus.SUCCEEDED),
            (ItemStatus.FAILED, ItemStatus.SUCCEEDED),
            (ItemStatus.PENDING, ItemStatus.ABANDONED),
            (ItemStatus.ABANDONED, ItemStatus.RETRYING),
            (ItemStatus.SUCCEEDED, ItemStatus.RETRYING),
        ],
    )
    def test_rejected(self, start, target) -> None:
        item = replace(_item(), status=start)
        with pytest.raises(InvalidTransitionError):
            item.transition(target)

    def test_terminal_states(self) -> None:
        assert _item().transition(ItemStatus.RETRYING).transition(ItemStatus.ABANDONED).is_terminal
        assert not _item().is_terminal


class TestSerialization:
    def test_dict_round_trip_keeps_every_field(self) -> None:
        item = _item().transition(ItemStatus.RETRYING).with_error("timeout")
        assert QueueItem.from_dict(item.to_dict()) == item

    def test_to_dict_uses_camel_case_and_iso_timestamps(self) -> None:
        data = _item().to_dict()
        assert data["enqueuedAt"] == "2026-03-07T09:00:00Z"
        assert data["nextRetryAt"] == "2026-03-07T09:00:00Z"
        assert data["type"] == "create"
        assert data["status"] == "pending"
        assert data["correlationKey"] == "https://ridewithgps.com/events/1001"

    def test_from_dict_accepts_legacy_field_names_and_millis(self) -> None:
        millis = int(T0.timestamp() * 1000)
        item = QueueItem.from_dict({
            "id": "legacy-1",
            "type": "delete",
            "calendarId": "cal",
            "rideUrl": "https://ridewithgps.com/events/7",
            "rideTitle": "Tue Social",
            "rowNum": 12,
            "userEmail": "a@example.org",
            "params": {"eventId": "evt"},
            "enqueuedAt": millis,
            "nextRetryAt": millis + 5 * 60 * 1000,
            "attemptCount": 3,
            "lastError": "Calendar not found",
        })
        assert item.type is OperationType.DELETE
        assert item.target_id == "cal"
        assert item.correlation_key == "https://ridewithgps.com/events/7"
        assert item.display_ref == "12"
        assert item.enqueued_at == T0
        assert item.next_retry_at == T0 + timedelta(minutes=5)
        assert item.status is ItemStatus.PENDING

    def test_from_dict_requires_enqueued_at(self) -> None:
        with pytest.raises(ValueError):
            QueueItem.from_dict({"id": "x", "type": "create"})

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        assert parse_timestamp("2026-03-07T09:00:00") == T0


class TestOperationFromDict:
    def test_camel_case_keys(self) -> None:
        op = Operation.from_dict({
            "type": "update",
            "targetId": "cal",
            "correlationKey": "ride-1",
            "ownerEmail": "o@example.org",
            "params": {"eventId": "e1"},
            "displayTitle": "Sun Long",
        })
        assert op.type is OperationType.UPDATE
        assert op.target_id == "cal"
        assert op.display_title == "Sun Long"

    def test_unknown_type_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            Operation.from_dict({"type": "archive"})

    def test_missing_type_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            Operation.from_dict({"targetId": "cal"})
