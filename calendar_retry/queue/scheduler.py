"""Retry scheduling rules for the calendar queue.

Everything here is pure: functions take the queue (a list of ``QueueItem``)
and the current time, and return new values. Nothing touches storage, the
clock or the network, so the processor and the tests share one set of rules.

Backoff is driven by the age of the item, not by how many attempts it has had:

- younger than 1 hour: retry every 5 minutes
- younger than 48 hours: retry every hour
- older: give up (the item is abandoned)
"""
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

from calendar_retry.queue.models import (
    ALLOWED_TRANSITIONS,
    ItemStatus,
    Operation,
    QueueItem,
    format_timestamp,
)

FAST_RETRY_INTERVAL = timedelta(minutes=5)
SLOW_RETRY_INTERVAL = timedelta(hours=1)
FAST_RETRY_WINDOW = timedelta(hours=1)
BACKOFF_WINDOW = timedelta(hours=48)
DAY = timedelta(hours=24)


class FailureUpdate(NamedTuple):
    should_retry: bool
    updated_item: QueueItem


@dataclass
class QueueStatistics:
    """Aggregate counts for operator dashboards."""

    total_items: int
    due_now: int
    less_than_1_hour: int
    less_than_24_hours: int
    more_than_24_hours: int
    by_status: Dict[str, int] = field(default_factory=dict)
    by_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "dueNow": self.due_now,
            "byAge": {
                "lessThan1Hour": self.less_than_1_hour,
                "lessThan24Hours": self.less_than_24_hours,
                "moreThan24Hours": self.more_than_24_hours,
            },
            "byStatus": dict(self.by_status),
            "byType": dict(self.by_type),
        }


def create_queue_item(
    operation: Operation,
    id_generator: Callable[[], str],
    clock: Callable[[], datetime],
) -> QueueItem:
    """Build a fresh item that is due immediately."""
    if operation.type is None:
        raise ValueError("operation type is required")
    now = clock()
    return QueueItem(
        id=id_generator(),
        type=operation.type,
        target_id=operation.target_id,
        correlation_key=operation.correlation_key,
        owner_email=operation.owner_email,
        params=dict(operation.params),
        enqueued_at=now,
        next_retry_at=now,
        attempt_count=0,
        last_error=None,
        status=ItemStatus.PENDING,
        display_title=operation.display_title,
        display_ref=operation.display_ref,
    )


def calculate_next_retry(
    attempt_count: int, enqueued_at: datetime, now: datetime
) -> Optional[datetime]:
    """Return when the next attempt is allowed, or None once the window is spent.

    ``attempt_count`` is part of the signature for callers that log it; the
    schedule itself only looks at age.
    """
    age = now - enqueued_at
    if age >= BACKOFF_WINDOW:
        return None
    if age < FAST_RETRY_WINDOW:
        return now + FAST_RETRY_INTERVAL
    return now + SLOW_RETRY_INTERVAL


def is_due(item: QueueItem, now: datetime) -> bool:
    # Only statuses that can start an attempt; abandoned and succeeded never run
    if ItemStatus.RETRYING not in ALLOWED_TRANSITIONS[item.status] or item.next_retry_at is None:
        return False
    return item.next_retry_at <= now


def get_due_items(queue: Sequence[QueueItem], now: datetime) -> List[QueueItem]:
    return [item for item in queue if is_due(item, now)]


def update_after_failure(item: QueueItem, error_message: str, now: datetime) -> FailureUpdate:
    attempt_count = item.attempt_count + 1
    next_retry_at = calculate_next_retry(attempt_count, item.enqueued_at, now)
    updated = replace(
        item,
        attempt_count=attempt_count,
        last_error=error_message,
        next_retry_at=next_retry_at,
    )
    return FailureUpdate(next_retry_at is not None, updated)


def remove_item(queue: Sequence[QueueItem], item_id: str) -> List[QueueItem]:
    return [item for item in queue if item.id != item_id]


def update_item(queue: Sequence[QueueItem], updated_item: QueueItem) -> List[QueueItem]:
    return [updated_item if item.id == updated_item.id else item for item in queue]


def find_item(queue: Sequence[QueueItem], item_id: str) -> Optional[QueueItem]:
    return next((item for item in queue if item.id == item_id), None)


def get_statistics(queue: Sequence[QueueItem], now: datetime) -> QueueStatistics:
    ages = [now - item.enqueued_at for item in queue]
    return QueueStatistics(
        total_items=len(queue),
        due_now=len(get_due_items(queue, now)),
        less_than_1_hour=sum(1 for age in ages if age < FAST_RETRY_WINDOW),
        # Cumulative: includes the < 1 hour items
        less_than_24_hours=sum(1 for age in ages if age < DAY),
        more_than_24_hours=sum(1 for age in ages if age >= DAY),
        by_status=dict(Counter(item.status.value for item in queue)),
        by_type=dict(Counter(item.type.value for item in queue)),
    )


def humanize_age(delta: timedelta) -> str:
    """Short relative label such as ``45m``, ``2h 5m`` or ``1d 3h``."""
    minutes = max(int(delta.total_seconds() // 60), 0)
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_items(queue: Sequence[QueueItem], now: datetime) -> List[Dict[str, Any]]:
    records = []
    for item in queue:
        age = now - item.enqueued_at
        records.append({
            "id": item.id,
            "type": item.type.value,
            "correlationKey": item.correlation_key,
            "title": item.display_title or "Unknown",
            "ref": item.display_ref or "Unknown",
            "ownerEmail": item.owner_email,
            "status": item.status.value,
            "attemptCount": item.attempt_count,
            "lastError": item.last_error,
            "enqueuedAt": format_timestamp(item.enqueued_at),
            "nextRetryAt": format_timestamp(item.next_retry_at),
            "ageMinutes": int(age.total_seconds() // 60),
            "age": humanize_age(age),
        })
    return records
