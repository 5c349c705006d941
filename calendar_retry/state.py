"""Small key/value property store for queue bookkeeping (processing lock, linked results)."""
import fcntl
import json
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from calendar_retry import settings
from calendar_retry.errors import StoreError
from calendar_retry.logging_conf import logger
from calendar_retry.queue.spool_store import write_json_atomic


class StateFile:
    """String properties persisted in a JSON file beside the spool queue.

    Every read-modify-write holds an exclusive ``flock`` on a sidecar
    ``.lock`` file, so processes sharing the spool directory see
    ``compare_and_set`` as one step. POSIX only.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path: Path = Path(path or settings.SPOOL_DIR / "state.json")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path: Path = self.path.with_name(self.path.name + ".lock")

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._locked():
            data = self._load()
            data[key] = value
            self._save(data)
        logger.debug(f"Saved property {key}")

    def delete(self, key: str) -> None:
        with self._locked():
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)

    def compare_and_set(self, key: str, expected: Optional[str], value: Optional[str]) -> bool:
        """Write ``value`` only if ``key`` currently holds ``expected``.

        ``expected=None`` means the key must be absent; ``value=None`` deletes it.
        """
        with self._locked():
            data = self._load()
            if data.get(key) != expected:
                return False
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._save(data)
            return True

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            lock_file = open(self.lock_path, "a")
        except OSError as e:
            raise StoreError(f"Cannot open state lock {self.lock_path}: {e}") from e
        with lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read state file {self.path}: {e}") from e

    def _save(self, data: Dict[str, str]) -> None:
        try:
            write_json_atomic(self.path, data)
        except OSError as e:
            logger.error(f"Failed to save state file {self.path}: {e}", exc_info=True)
            raise StoreError(f"Failed to save state file {self.path}: {e}") from e


class MemoryProperties:
    """Property store held in a dict."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(values or {})
        self._guard = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)

    def compare_and_set(self, key: str, expected: Optional[str], value: Optional[str]) -> bool:
        with self._guard:
            if self.values.get(key) != expected:
                return False
            if value is None:
                self.values.pop(key, None)
            else:
                self.values[key] = value
            return True
