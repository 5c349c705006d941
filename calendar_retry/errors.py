"""Exceptions raised by the retry queue."""


class RetryQueueError(Exception):
    """Base class for retry queue errors."""


class ConfigError(RetryQueueError, ValueError):
    """Raised when the environment configuration is invalid."""


class StoreError(RetryQueueError):
    """Raised when a queue or property store cannot be read or written."""


class InvalidTransitionError(RetryQueueError):
    """Raised when a queue item is moved to a status its current status cannot reach."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition: {current.value} -> {target.value}")
