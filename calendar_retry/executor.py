"""Run queued calendar operations against Google Calendar."""
import requests

from calendar_retry.calendar_client import CalendarApiError, CalendarAuthError, CalendarClient
from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import ExecutionResult, OperationType, QueueItem

FORCED_FAILURE_MESSAGE = "Calendar Not Found - Forced Test Failure"


class CalendarOperationExecutor:
    """Turns a queue item into one calendar API call and a uniform result.

    Errors never escape ``execute``: every failure becomes
    ``ExecutionResult.failed`` so the processor only deals with one shape.
    """

    def __init__(self, client: CalendarClient, force_failure: bool = False):
        self.client = client
        self.force_failure = force_failure

    def execute(self, item: QueueItem) -> ExecutionResult:
        if self.force_failure:
            logger.info("Forcing failure (test mode)", extra={"item_id": item.id})
            return ExecutionResult.failed(FORCED_FAILURE_MESSAGE)

        handlers = {
            OperationType.CREATE: self._create,
            OperationType.UPDATE: self._update,
            OperationType.DELETE: self._delete,
        }
        handler = handlers.get(item.type)
        if handler is None:
            return ExecutionResult.failed(f"Unknown operation type: {item.type}")

        try:
            return handler(item)
        except (CalendarApiError, CalendarAuthError, ValueError) as e:
            return ExecutionResult.failed(str(e))
        except requests.exceptions.RequestException as e:
            return ExecutionResult.failed(f"Calendar request failed: {e}")

    def _create(self, item: QueueItem) -> ExecutionResult:
        event_id = self.client.create_event(item.target_id, item.params)
        return ExecutionResult.ok(result_id=event_id)

    def _update(self, item: QueueItem) -> ExecutionResult:
        event_id = item.params.get("eventId")
        if not event_id:
            return ExecutionResult.failed("Update is missing params.eventId")
        try:
            self.client.update_event(item.target_id, event_id, item.params)
        except CalendarApiError as e:
            if e.is_not_found:
                return ExecutionResult.failed("Event not found")
            raise
        return ExecutionResult.ok(result_id=event_id)

    def _delete(self, item: QueueItem) -> ExecutionResult:
        event_id = item.params.get("eventId")
        if not event_id:
            return ExecutionResult.failed("Delete is missing params.eventId")
        # A missing event counts as deleted
        self.client.delete_event(item.target_id, event_id)
        return ExecutionResult.ok()
