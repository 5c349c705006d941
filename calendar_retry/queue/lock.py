"""Durable processing lock guarding against overlapping queue passes."""
import json
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import format_timestamp, parse_timestamp

PROCESSING_KEY = "RETRY_QUEUE_PROCESSING"


def lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ProcessingLock:
    """A single flag kept in the property store, acquired around one pass.

    The flag records when it was taken and a per-acquisition token. A flag
    older than ``stale_after`` belongs to a pass that died before its cleanup
    ran and is taken over. Every write goes through the store's
    ``compare_and_set``, so two processes cannot both win the same flag and a
    pass whose lock was taken over cannot release its successor's.
    """

    def __init__(self, properties, clock: Callable[[], datetime], stale_after: timedelta):
        self.properties = properties
        self.clock = clock
        self.stale_after = stale_after
        self._held_value: Optional[str] = None

    def holder(self) -> Optional[dict]:
        return self._decode(self.properties.get(PROCESSING_KEY))

    def is_held(self) -> bool:
        holder = self.holder()
        return holder is not None and not self._is_stale(holder)

    def acquire(self) -> bool:
        current = self.properties.get(PROCESSING_KEY)
        holder = self._decode(current)
        if holder is not None:
            if not self._is_stale(holder):
                return False
            logger.warning(
                f"Taking over stale processing lock from {holder.get('owner')} "
                f"(acquired {holder.get('acquiredAt') or 'at an unknown time'})"
            )

        value = json.dumps({
            "acquiredAt": format_timestamp(self.clock()),
            "owner": lock_owner(),
            "token": uuid.uuid4().hex,
        })
        if not self.properties.compare_and_set(PROCESSING_KEY, current, value):
            logger.info("Processing lock changed hands while acquiring; backing off")
            return False
        self._held_value = value
        return True

    def release(self) -> None:
        """Drop the flag if it is still the one this lock wrote."""
        if self._held_value is None:
            return
        value, self._held_value = self._held_value, None
        if not self.properties.compare_and_set(PROCESSING_KEY, value, None):
            holder = self.holder()
            logger.warning(
                f"Processing lock was taken over by {holder.get('owner') if holder else 'nobody'} "
                f"before release; leaving it in place"
            )

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Yield True with the lock held, or False if another pass owns it.

        The lock is released on every exit path once acquired.
        """
        if not self.acquire():
            yield False
            return
        try:
            yield True
        finally:
            self.release()

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[dict]:
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            value = None
        if not isinstance(value, dict):
            # Bare "true" flag from before locks carried timestamps
            return {"acquiredAt": None, "owner": "unknown"}
        return value

    def _is_stale(self, holder: dict) -> bool:
        acquired_at = holder.get("acquiredAt")
        if not acquired_at:
            return True
        try:
            return self.clock() - parse_timestamp(acquired_at) >= self.stale_after
        except ValueError:
            return True
