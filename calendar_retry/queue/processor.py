"""Processing passes over the calendar retry queue."""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from calendar_retry import settings
from calendar_retry.logging_conf import logger
from calendar_retry.queue import scheduler
from calendar_retry.queue.lock import ProcessingLock
from calendar_retry.queue.models import ItemStatus, Operation, OperationType, QueueItem

DEFAULT_CALLBACK_NAME = "process_retry_queue"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _context(item: QueueItem) -> Dict[str, str]:
    return {"item_id": item.id, "correlation_key": item.correlation_key}


@dataclass
class ProcessResult:
    """Counts for one processing pass."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "remaining": self.remaining,
        }
        if self.skipped:
            result["skipped"] = True
        return result


class QueueProcessor:
    """Enqueues calendar operations and drains them with bounded retries.

    Collaborators:
        store: ``load_all/append/update/remove/clear`` over ``QueueItem``
        executor: ``execute(item) -> ExecutionResult``
        notifier: ``notify_success(item)`` / ``notify_failure(item)``
        trigger: ``ensure_exists(name, minutes)`` / ``remove_if_exists()``
        properties: ``get/set/delete`` string store holding the processing lock
        on_created: optional ``(item, result_id)`` hook for new event ids
    """

    def __init__(
        self,
        store,
        executor,
        notifier,
        trigger,
        properties,
        on_created: Optional[Callable[[QueueItem, str], None]] = None,
        clock: Callable[[], datetime] = utc_now,
        id_generator: Callable[[], str] = new_id,
        callback_name: str = DEFAULT_CALLBACK_NAME,
        interval_minutes: Optional[int] = None,
        lock_stale_after: Optional[timedelta] = None,
    ):
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.trigger = trigger
        self.on_created = on_created
        self.clock = clock
        self.id_generator = id_generator
        self.callback_name = callback_name
        self.interval_minutes = interval_minutes or settings.TRIGGER_INTERVAL_MINUTES
        self.lock = ProcessingLock(
            properties,
            clock,
            lock_stale_after or timedelta(minutes=settings.LOCK_STALE_MINUTES),
        )

    def enqueue(self, operation: Union[Operation, Mapping[str, Any]]) -> str:
        """Durably record an operation and make sure a pass will pick it up.

        Store failures propagate: an operation that cannot be recorded must
        not be reported as queued.
        """
        if not isinstance(operation, Operation):
            operation = Operation.from_dict(operation)

        item = scheduler.create_queue_item(operation, self.id_generator, self.clock)
        self.store.append(item)
        self.trigger.ensure_exists(self.callback_name, self.interval_minutes)

        logger.info(f"Enqueued {item.type.value} operation for ride {item.correlation_key}",
                    extra=_context(item))
        return item.id

    def process_queue(self) -> ProcessResult:
        """Run one pass over the due items. Invoked by the periodic trigger."""
        with self.lock.hold() as acquired:
            if not acquired:
                logger.info("Already processing, skipping run")
                return ProcessResult(skipped=True)
            return self._process_due_items()

    def _process_due_items(self) -> ProcessResult:
        queue = self._purge_succeeded(self.store.load_all())
        if not queue:
            logger.info("Queue empty, removing trigger")
            self.trigger.remove_if_exists()
            return ProcessResult()

        now = self.clock()
        due_items = scheduler.get_due_items(queue, now)
        logger.info(f"Processing {len(due_items)} due items out of {len(queue)} total")

        result = ProcessResult(processed=len(due_items))
        for item in due_items:
            outcome = self._process_item(item)
            if outcome is ItemStatus.SUCCEEDED:
                result.succeeded += 1
            elif outcome is ItemStatus.ABANDONED:
                result.failed += 1

        remaining = self.store.load_all()
        result.remaining = len(remaining)
        if not remaining:
            self.trigger.remove_if_exists()

        logger.info(f"Pass complete: {result.to_dict()}")
        return result

    def _purge_succeeded(self, queue):
        """Drop records already marked succeeded (hand-edited or migrated); they never run again."""
        kept = []
        for item in queue:
            if item.status is ItemStatus.SUCCEEDED:
                logger.warning(f"Removing item {item.id} already marked succeeded", extra=_context(item))
                self.store.remove(item.id)
            else:
                kept.append(item)
        return kept

    def _process_item(self, item: QueueItem) -> Optional[ItemStatus]:
        """Attempt one item; returns its resulting status, or None if the attempt broke."""
        current = item
        try:
            current = item.transition(ItemStatus.RETRYING)
            self.store.update(current)

            execution = self.executor.execute(current)
            now = self.clock()

            if execution.success:
                return self._handle_success(current, execution.result_id)
            return self._handle_failure(current, execution.error or "Unknown error", now)
        except Exception as e:
            logger.error(f"Unexpected error processing item {item.id}: {e}",
                         exc_info=True, extra=_context(item))
            self._record_unexpected_error(current, str(e))
            return None

    def _handle_success(self, item: QueueItem, result_id: Optional[str]) -> ItemStatus:
        done = item.transition(ItemStatus.SUCCEEDED)
        self.store.remove(done.id)
        logger.info(f"Operation {done.id} succeeded on attempt {done.attempt_count + 1}",
                    extra=_context(done))

        self._safely(self.notifier.notify_success, done, "success notification")
        if result_id and done.type is OperationType.CREATE and self.on_created:
            self._safely(lambda i: self.on_created(i, result_id), done, "result linking")
        return ItemStatus.SUCCEEDED

    def _handle_failure(self, item: QueueItem, error: str, now: datetime) -> ItemStatus:
        should_retry, updated = scheduler.update_after_failure(item, error, now)

        if should_retry:
            updated = updated.transition(ItemStatus.FAILED)
            self.store.update(updated)
            logger.info(
                f"Operation {updated.id} failed ({error}), will retry at "
                f"{updated.next_retry_at.isoformat()}",
                extra=_context(updated),
            )
            return ItemStatus.FAILED

        # Kept in the store for investigation; never due again
        updated = updated.transition(ItemStatus.ABANDONED)
        self.store.update(updated)
        logger.error(f"Operation {updated.id} abandoned after {updated.attempt_count} attempts",
                     extra=_context(updated))
        self._safely(self.notifier.notify_failure, updated, "failure notification")
        return ItemStatus.ABANDONED

    def _record_unexpected_error(self, item: QueueItem, message: str) -> None:
        recorded = item.with_error(message)
        if recorded.status is ItemStatus.RETRYING:
            recorded = recorded.transition(ItemStatus.FAILED)
        try:
            self.store.update(recorded)
        except Exception as e:
            logger.error(f"Could not record error for item {item.id}: {e}",
                         exc_info=True, extra=_context(item))

    def _safely(self, action: Callable[[QueueItem], None], item: QueueItem, label: str) -> None:
        try:
            action(item)
        except Exception as e:
            logger.error(f"{label.capitalize()} failed for item {item.id}: {e}",
                         exc_info=True, extra=_context(item))

    def remove_by_correlation_key(self, key: str, match_field: Optional[str] = None) -> bool:
        """Drop a pending operation whose outcome is no longer wanted.

        With ``match_field`` the key is compared to ``params[match_field]``
        (e.g. ``"eventId"``), otherwise to the item's correlation key.
        """
        for item in self.store.load_all():
            if match_field:
                matches = item.params.get(match_field) == key
            else:
                matches = item.correlation_key == key
            if matches:
                self.store.remove(item.id)
                logger.info(f"Removed queued {item.type.value} for {key}", extra=_context(item))
                return True

        logger.info(f"No queued item found for {key}")
        return False

    def requeue_abandoned(self, item_id: str) -> Optional[str]:
        """Re-enqueue an abandoned item's operation after manual remediation.

        The operation gets a new item with its own backoff window; the
        abandoned record is dropped. Returns the new id, or None when
        ``item_id`` is not an abandoned item.
        """
        item = scheduler.find_item(self.store.load_all(), item_id)
        if item is None or item.status is not ItemStatus.ABANDONED:
            logger.warning(f"Item {item_id} is not an abandoned queue item; nothing to requeue")
            return None

        new_item_id = self.enqueue(Operation(
            type=item.type,
            target_id=item.target_id,
            correlation_key=item.correlation_key,
            owner_email=item.owner_email,
            params=dict(item.params),
            display_title=item.display_title,
            display_ref=item.display_ref,
        ))
        self.store.remove(item.id)
        logger.info(f"Requeued abandoned item {item_id} as {new_item_id}", extra=_context(item))
        return new_item_id

    def get_status(self) -> Dict[str, Any]:
        queue = self.store.load_all()
        now = self.clock()
        trigger_active = getattr(self.trigger, "is_active", None)
        return {
            "statistics": scheduler.get_statistics(queue, now).to_dict(),
            "items": scheduler.format_items(queue, now),
            "processing": self.lock.is_held(),
            "triggerActive": trigger_active() if callable(trigger_active) else None,
        }

    def clear_queue(self) -> None:
        self.store.clear()
        self.trigger.remove_if_exists()
        logger.info("Queue cleared")
