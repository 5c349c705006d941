"""Unit tests for the pure retry scheduling rules."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from calendar_retry.queue import scheduler
from calendar_retry.queue.models import ItemStatus, OperationType
from conftest import T0, make_operation

pytestmark = pytest.mark.unit


def _item(item_id: str = "a", **overrides):
    item = scheduler.create_queue_item(make_operation(), lambda: item_id, lambda: T0)
    return replace(item, **overrides) if overrides else item


# ---------------------------------------------------------------------------
# create_queue_item
# ---------------------------------------------------------------------------


class TestCreateQueueItem:
    def test_new_item_is_due_immediately(self) -> None:
        item = _item()
        assert item.enqueued_at == T0
        assert item.next_retry_at == T0
        assert item.attempt_count == 0
        assert item.last_error is None
        assert item.status is ItemStatus.PENDING

    def test_copies_operation_fields(self) -> None:
        op = make_operation(type=OperationType.DELETE, params={"eventId": "evt-1"})
        item = scheduler.create_queue_item(op, lambda: "x1", lambda: T0)
        assert item.id == "x1"
        assert item.type is OperationType.DELETE
        assert item.correlation_key == op.correlation_key
        assert item.params == {"eventId": "evt-1"}
        assert item.params is not op.params

    def test_freshly_enqueued_item_is_due_at_its_enqueue_time(self) -> None:
        item = _item()
        assert scheduler.get_due_items([item], item.enqueued_at) == [item]


# ---------------------------------------------------------------------------
# calculate_next_retry
# ---------------------------------------------------------------------------


class TestCalculateNextRetry:
    @pytest.mark.parametrize("age", [timedelta(0), timedelta(minutes=30), timedelta(minutes=59, seconds=59)])
    def test_first_hour_retries_every_five_minutes(self, age) -> None:
        now = T0 + age
        assert scheduler.calculate_next_retry(3, T0, now) == now + timedelta(minutes=5)

    @pytest.mark.parametrize("age", [timedelta(hours=1), timedelta(hours=24), timedelta(hours=47, minutes=59)])
    def test_until_48_hours_retries_hourly(self, age) -> None:
        now = T0 + age
        assert scheduler.calculate_next_retry(20, T0, now) == now + timedelta(hours=1)

    @pytest.mark.parametrize("age", [timedelta(hours=48), timedelta(days=5)])
    def test_gives_up_after_48_hours(self, age) -> None:
        assert scheduler.calculate_next_retry(60, T0, T0 + age) is None

    def test_attempt_count_does_not_change_schedule(self) -> None:
        now = T0 + timedelta(minutes=10)
        assert scheduler.calculate_next_retry(0, T0, now) == scheduler.calculate_next_retry(99, T0, now)


# ---------------------------------------------------------------------------
# get_due_items
# ---------------------------------------------------------------------------


class TestGetDueItems:
    def test_returns_due_subset_in_queue_order(self) -> None:
        late = _item("late", next_retry_at=T0 + timedelta(minutes=10))
        first = _item("first", next_retry_at=T0 - timedelta(minutes=1))
        exact = _item("exact", next_retry_at=T0)
        queue = [late, first, exact]

        assert [i.id for i in scheduler.get_due_items(queue, T0)] == ["first", "exact"]
        assert queue == [late, first, exact]

    def test_abandoned_items_are_never_due(self) -> None:
        abandoned = _item("gone", status=ItemStatus.ABANDONED, next_retry_at=None)
        stale_abandoned = _item("gone2", status=ItemStatus.ABANDONED)
        assert scheduler.get_due_items([abandoned, stale_abandoned], T0 + timedelta(days=30)) == []

    def test_succeeded_items_are_never_due(self) -> None:
        done = _item("done", status=ItemStatus.SUCCEEDED, next_retry_at=T0 - timedelta(hours=1))
        assert scheduler.get_due_items([done], T0) == []

    def test_empty_queue(self) -> None:
        assert scheduler.get_due_items([], T0) == []


# ---------------------------------------------------------------------------
# update_after_failure
# ---------------------------------------------------------------------------


class TestUpdateAfterFailure:
    def test_schedules_retry_and_counts_attempt(self) -> None:
        item = _item()
        now = T0 + timedelta(minutes=5)
        should_retry, updated = scheduler.update_after_failure(item, "Calendar not found", now)

        assert should_retry is True
        assert updated.attempt_count == item.attempt_count + 1
        assert updated.last_error == "Calendar not found"
        assert updated.next_retry_at == now + timedelta(minutes=5)
        assert updated.enqueued_at == item.enqueued_at

    def test_does_not_mutate_input(self) -> None:
        item = _item(attempt_count=4)
        before = item.to_dict()
        scheduler.update_after_failure(item, "boom", T0 + timedelta(hours=2))
        assert item.to_dict() == before

    def test_exhausted_window_stops_retrying(self) -> None:
        item = _item(attempt_count=59)
        should_retry, updated = scheduler.update_after_failure(item, "still down", T0 + timedelta(hours=48))
        assert should_retry is False
        assert updated.next_retry_at is None
        assert updated.attempt_count == 60


# ---------------------------------------------------------------------------
# collection helpers
# ---------------------------------------------------------------------------


class TestCollectionHelpers:
    def test_remove_item_is_idempotent(self) -> None:
        queue = [_item("a"), _item("b"), _item("c")]
        once = scheduler.remove_item(queue, "b")
        twice = scheduler.remove_item(once, "b")
        assert [i.id for i in once] == ["a", "c"]
        assert twice == once
        assert len(queue) == 3

    def test_remove_unknown_id_is_noop(self) -> None:
        queue = [_item("a")]
        assert scheduler.remove_item(queue, "zzz") == queue

    def test_update_item_keeps_position(self) -> None:
        queue = [_item("a"), _item("b"), _item("c")]
        changed = replace(queue[1], last_error="nope")
        updated = scheduler.update_item(queue, changed)
        assert [i.id for i in updated] == ["a", "b", "c"]
        assert updated[1].last_error == "nope"
        assert queue[1].last_error is None

    def test_update_unknown_id_is_noop(self) -> None:
        queue = [_item("a")]
        assert scheduler.update_item(queue, _item("zzz")) == queue


# ---------------------------------------------------------------------------
# statistics and formatting
# ---------------------------------------------------------------------------


class TestStatistics:
    def test_counts_by_age_and_due(self) -> None:
        now = T0 + timedelta(hours=30)
        queue = [
            _item("fresh", enqueued_at=now - timedelta(minutes=10), next_retry_at=now + timedelta(minutes=5)),
            _item("day", enqueued_at=now - timedelta(hours=5), next_retry_at=now),
            _item("old", enqueued_at=now - timedelta(hours=30), next_retry_at=now - timedelta(hours=1)),
        ]
        stats = scheduler.get_statistics(queue, now)

        assert stats.total_items == 3
        assert stats.due_now == 2
        assert stats.less_than_1_hour == 1
        assert stats.less_than_24_hours == 2
        assert stats.more_than_24_hours == 1
        assert stats.to_dict()["byAge"] == {
            "lessThan1Hour": 1,
            "lessThan24Hours": 2,
            "moreThan24Hours": 1,
        }

    def test_counts_by_status_and_type(self) -> None:
        queue = [
            _item("a"),
            _item("b", status=ItemStatus.FAILED, type=OperationType.UPDATE),
            _item("c", status=ItemStatus.ABANDONED, next_retry_at=None),
        ]
        stats = scheduler.get_statistics(queue, T0)
        assert stats.by_status == {"pending": 1, "failed": 1, "abandoned": 1}
        assert stats.by_type == {"create": 2, "update": 1}

    def test_empty_queue(self) -> None:
        stats = scheduler.get_statistics([], T0)
        assert stats.total_items == 0
        assert stats.due_now == 0


class TestFormatItems:
    def test_projects_display_fields(self) -> None:
        item = _item("a", attempt_count=2, last_error="timeout")
        [record] = scheduler.format_items([item], T0 + timedelta(hours=2, minutes=5))

        assert record["id"] == "a"
        assert record["title"] == "Sat B Ride"
        assert record["ref"] == "42"
        assert record["ageMinutes"] == 125
        assert record["age"] == "2h 5m"
        assert record["enqueuedAt"] == "2026-03-07T09:00:00Z"
        assert record["attemptCount"] == 2
        assert record["lastError"] == "timeout"

    def test_missing_display_fields_fall_back_to_unknown(self) -> None:
        item = _item("a", display_title=None, display_ref=None, next_retry_at=None)
        [record] = scheduler.format_items([item], T0)
        assert record["title"] == "Unknown"
        assert record["ref"] == "Unknown"
        assert record["nextRetryAt"] is None

    @pytest.mark.parametrize(
        ("delta", "label"),
        [
            (timedelta(seconds=30), "0m"),
            (timedelta(minutes=45), "45m"),
            (timedelta(days=1, hours=3, minutes=20), "1d 3h"),
        ],
    )
    def test_humanize_age(self, delta, label) -> None:
        assert scheduler.humanize_age(delta) == label
