"""Periodic trigger that wakes the queue processor on a fixed interval."""
import threading
from typing import Callable, Dict, Optional

from calendar_retry.logging_conf import logger


class ThreadTrigger:
    """Calls a registered callback every ``interval_minutes`` from a daemon thread.

    Callbacks are registered by name so the processor can ask for its own
    wakeup without holding a reference to the function it lives in.
    """

    def __init__(self, callbacks: Optional[Dict[str, Callable[[], object]]] = None):
        self.callbacks: Dict[str, Callable[[], object]] = dict(callbacks or {})
        self.callback_name: Optional[str] = None
        self.interval_seconds = 0
        self.thread: Optional[threading.Thread] = None
        self._stop: Optional[threading.Event] = None
        self._guard = threading.Lock()

    def register(self, name: str, callback: Callable[[], object]) -> None:
        self.callbacks[name] = callback

    def is_active(self) -> bool:
        return (
            self.thread is not None
            and self.thread.is_alive()
            and self._stop is not None
            and not self._stop.is_set()
        )

    def ensure_exists(self, callback_name: str, interval_minutes: int) -> None:
        """Start the timer unless one is already running."""
        if callback_name not in self.callbacks:
            raise KeyError(f"No callback registered as {callback_name!r}")

        with self._guard:
            if self.is_active():
                return
            self.callback_name = callback_name
            self.interval_seconds = interval_minutes * 60
            self._stop = threading.Event()
            self.thread = threading.Thread(
                target=self._run,
                args=(callback_name, self.interval_seconds, self._stop),
                name=f"trigger-{callback_name}",
                daemon=True,
            )
            self.thread.start()
        logger.info(f"Created trigger for {callback_name} (every {interval_minutes} min)")

    def remove_if_exists(self) -> None:
        """Stop the timer. Safe to call from inside the callback itself."""
        with self._guard:
            if self._stop is None or self._stop.is_set():
                return
            self._stop.set()
            thread = self.thread
            self.thread = None

        if thread and thread is not threading.current_thread():
            thread.join(timeout=10)
        logger.info(f"Deleted trigger for {self.callback_name}")

    def _run(self, callback_name: str, interval_seconds: int, stop: threading.Event):
        """Trigger loop; exits once ``stop`` is set."""
        logger.info(f"Trigger thread started for {callback_name}")
        while not stop.wait(interval_seconds):
            try:
                self.callbacks[callback_name]()
            except Exception as e:
                logger.error(f"Trigger callback {callback_name} failed: {e}", exc_info=True)
        logger.info(f"Trigger thread stopped for {callback_name}")
