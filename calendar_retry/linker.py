"""Hand event ids created on retry back to the ride that asked for them."""
from typing import Optional

from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import QueueItem

RESULT_KEY_PREFIX = "createdEvent:"


class PropertyResultLinker:
    """Records ``correlation key -> event id`` in the property store.

    The ride scheduler looks rides up by their permanent URL, so that is the
    key; the event id did not exist when the create was enqueued.
    """

    def __init__(self, properties):
        self.properties = properties

    def __call__(self, item: QueueItem, result_id: str) -> None:
        self.properties.set(RESULT_KEY_PREFIX + item.correlation_key, result_id)
        logger.info(f"Linked ride {item.correlation_key} to event {result_id}",
                    extra={"item_id": item.id, "correlation_key": item.correlation_key})

    def lookup(self, correlation_key: str) -> Optional[str]:
        return self.properties.get(RESULT_KEY_PREFIX + correlation_key)

    def forget(self, correlation_key: str) -> None:
        self.properties.delete(RESULT_KEY_PREFIX + correlation_key)
