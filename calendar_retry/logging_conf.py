"""Logging configuration for the retry queue, with Betterstack support.

Per-item log lines pass ``extra={"item_id": ..., "correlation_key": ...}``;
the context filter fills those fields in for every other record so one
format string serves both.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

from calendar_retry import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(item_id)s] %(message)s"
CONTEXT_FIELDS = ("item_id", "correlation_key")


class QueueContextFilter(logging.Filter):
    """Give every record the queue context attributes the formatter expects."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, "-")
        return True


def _level() -> int:
    return getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)


def setup_logging():
    root_logger = logging.getLogger()
    root_logger.setLevel(_level())
    root_logger.handlers = []

    context_filter = QueueContextFilter()
    formatter = logging.Formatter(LOG_FORMAT)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(_level())

    # Operators read the rotating file when a pass misbehaves overnight
    queue_log = RotatingFileHandler(
        settings.LOGS_DIR / "retry_queue.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    queue_log.setLevel(logging.INFO)

    for handler in (stdout_handler, queue_log):
        handler.addFilter(context_filter)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if settings.BETTERSTACK_SOURCE_TOKEN:
        try:
            logtail_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
            if settings.BETTERSTACK_INGEST_HOST:
                logtail_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
            remote = LogtailHandler(**logtail_kwargs)
            remote.setLevel(logging.DEBUG)
            remote.addFilter(context_filter)
            remote.setFormatter(formatter)
            root_logger.addHandler(remote)
            root_logger.info(
                f"BetterStack logging enabled (host: {settings.BETTERSTACK_INGEST_HOST or 'default'})"
            )
        except Exception as e:
            root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    # requests retries are already summarized by the calendar client
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logging.getLogger("calendar_retry")


logger = setup_logging()
