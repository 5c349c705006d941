"""Spool-directory based queue store."""
import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from calendar_retry import settings
from calendar_retry.errors import StoreError
from calendar_retry.logging_conf import logger
from calendar_retry.queue import scheduler
from calendar_retry.queue.models import QueueItem


def write_json_atomic(path: Path, data) -> None:
    """Write JSON next to ``path`` and swap it in, so readers never see half a file."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class SpoolStore:
    """Queue store keeping the ordered item list in one JSON document.

    Every call re-reads the file, so the store itself holds no state between
    operations. Concurrent writers are last-writer-wins.
    """

    def __init__(self, spool_dir: Optional[Path] = None, filename: str = "queue.json"):
        self.spool_dir: Path = Path(spool_dir or settings.SPOOL_DIR)
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self.path: Path = self.spool_dir / filename

    def load_all(self) -> List[QueueItem]:
        """Return every stored item in insertion order."""
        items = []
        for record in self._read_raw():
            try:
                items.append(QueueItem.from_dict(record))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                # Leave the record in the file for an operator; don't let one bad row stop the queue
                logger.error(f"Skipping unreadable spool record: {e}")
        return items

    def append(self, item: QueueItem) -> None:
        raw = self._read_raw()
        raw.append(item.to_dict())
        self._write_raw(raw)
        logger.info(
            f"Spool enqueued {item.type.value} for {item.correlation_key}",
            extra={"item_id": item.id, "correlation_key": item.correlation_key},
        )

    def update(self, item: QueueItem) -> None:
        raw = self._read_raw()
        for index, record in enumerate(raw):
            if isinstance(record, dict) and record.get("id") == item.id:
                raw[index] = item.to_dict()
                self._write_raw(raw)
                return
        logger.debug("Spool update ignored, item not found", extra={"item_id": item.id})

    def remove(self, item_id: str) -> None:
        raw = self._read_raw()
        kept = [record for record in raw if not (isinstance(record, dict) and record.get("id") == item_id)]
        if len(kept) != len(raw):
            self._write_raw(kept)

    def clear(self) -> None:
        self._write_raw([])

    def size(self) -> int:
        return len(self._read_raw())

    def _read_raw(self) -> list:
        try:
            with open(self.path, "r") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read spool queue {self.path}: {e}") from e
        if not isinstance(raw, list):
            raise StoreError(f"Spool queue {self.path} is not a JSON list")
        return raw

    def _write_raw(self, raw: list) -> None:
        try:
            write_json_atomic(self.path, raw)
        except OSError as e:
            logger.error(f"Failed to write spool queue {self.path}: {e}", exc_info=True)
            raise StoreError(f"Failed to write spool queue {self.path}: {e}") from e


class MemoryStore:
    """In-process queue store with the same contract, for drills and tests."""

    def __init__(self, items: Optional[List[QueueItem]] = None):
        self._items: List[QueueItem] = list(items or [])

    def load_all(self) -> List[QueueItem]:
        return list(self._items)

    def append(self, item: QueueItem) -> None:
        self._items.append(item)

    def update(self, item: QueueItem) -> None:
        self._items = scheduler.update_item(self._items, item)

    def remove(self, item_id: str) -> None:
        self._items = scheduler.remove_item(self._items, item_id)

    def clear(self) -> None:
        self._items = []
