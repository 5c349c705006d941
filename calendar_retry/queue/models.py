"""Queue data models."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from calendar_retry.errors import InvalidTransitionError


class OperationType(str, Enum):
    """Calendar side effect carried by a queue item."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ItemStatus(str, Enum):
    """Lifecycle of a queue item."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


ALLOWED_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.RETRYING},
    ItemStatus.FAILED: {ItemStatus.RETRYING},
    # RETRYING -> RETRYING picks up an attempt orphaned by a crashed pass
    ItemStatus.RETRYING: {
        ItemStatus.RETRYING,
        ItemStatus.SUCCEEDED,
        ItemStatus.FAILED,
        ItemStatus.ABANDONED,
    },
    ItemStatus.SUCCEEDED: set(),
    ItemStatus.ABANDONED: set(),
}


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read an ISO string or epoch-milliseconds number into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat().replace("+00:00", "Z")


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass(frozen=True)
class Operation:
    """A fully-formed calendar operation handed to ``enqueue``."""

    type: OperationType
    target_id: str
    correlation_key: str
    owner_email: str
    params: Dict[str, Any] = field(default_factory=dict)
    display_title: Optional[str] = None
    display_ref: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Operation":
        """Build an operation from camelCase or snake_case keys.

        The legacy ride-sheet names (``calendarId``, ``rideUrl``, ``userEmail``,
        ``rideTitle``, ``rowNum``) are accepted as aliases.
        """
        if not data.get("type"):
            raise ValueError("Operation is missing required field: type")
        ref = _pick(data, "display_ref", "displayRef", "rowNum")
        return cls(
            type=OperationType(data["type"]),
            target_id=_pick(data, "target_id", "targetId", "calendarId", default=""),
            correlation_key=_pick(data, "correlation_key", "correlationKey", "rideUrl", default=""),
            owner_email=_pick(data, "owner_email", "ownerEmail", "userEmail", default=""),
            params=dict(_pick(data, "params", default={})),
            display_title=_pick(data, "display_title", "displayTitle", "rideTitle"),
            display_ref=str(ref) if ref is not None else None,
        )


@dataclass(frozen=True)
class QueueItem:
    """A durable record of one pending calendar operation and its retry state.

    Items are immutable values; every state change produces a new item via
    ``dataclasses.replace`` so a pass can log or compare the before and after.
    """

    id: str
    type: OperationType
    target_id: str
    correlation_key: str
    owner_email: str
    params: Dict[str, Any]
    enqueued_at: datetime
    next_retry_at: Optional[datetime]
    attempt_count: int = 0
    last_error: Optional[str] = None
    status: ItemStatus = ItemStatus.PENDING
    display_title: Optional[str] = None
    display_ref: Optional[str] = None

    def transition(self, status: ItemStatus) -> "QueueItem":
        """Return a copy in ``status``, rejecting moves the lifecycle does not allow."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, status)
        return replace(self, status=status)

    def with_error(self, message: str) -> "QueueItem":
        return replace(self, last_error=message)

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "targetId": self.target_id,
            "correlationKey": self.correlation_key,
            "displayTitle": self.display_title,
            "displayRef": self.display_ref,
            "ownerEmail": self.owner_email,
            "params": self.params,
            "enqueuedAt": format_timestamp(self.enqueued_at),
            "nextRetryAt": format_timestamp(self.next_retry_at),
            "attemptCount": self.attempt_count,
            "lastError": self.last_error,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QueueItem":
        enqueued_at = parse_timestamp(_pick(data, "enqueuedAt", "enqueued_at"))
        if enqueued_at is None:
            raise ValueError(f"Queue item {data.get('id')} has no enqueuedAt")
        status = _pick(data, "status", default=ItemStatus.PENDING.value)
        ref = _pick(data, "displayRef", "display_ref", "rowNum")
        return cls(
            id=str(data["id"]),
            type=OperationType(data["type"]),
            target_id=_pick(data, "targetId", "target_id", "calendarId", default=""),
            correlation_key=_pick(data, "correlationKey", "correlation_key", "rideUrl", default=""),
            owner_email=_pick(data, "ownerEmail", "owner_email", "userEmail", default=""),
            params=dict(_pick(data, "params", default={})),
            enqueued_at=enqueued_at,
            next_retry_at=parse_timestamp(_pick(data, "nextRetryAt", "next_retry_at")),
            attempt_count=int(_pick(data, "attemptCount", "attempt_count", default=0)),
            last_error=_pick(data, "lastError", "last_error"),
            status=ItemStatus(status),
            display_title=_pick(data, "displayTitle", "display_title", "rideTitle"),
            display_ref=str(ref) if ref is not None else None,
        )


@dataclass(frozen=True)
class ExecutionResult:
    """Uniform outcome of running one operation against the calendar."""

    success: bool
    error: Optional[str] = None
    result_id: Optional[str] = None

    @classmethod
    def ok(cls, result_id: Optional[str] = None) -> "ExecutionResult":
        return cls(success=True, result_id=result_id)

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(success=False, error=error)
