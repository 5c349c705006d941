"""PostgreSQL storage for the retry queue and its properties."""
import psycopg2
from psycopg2.extras import Json, RealDictCursor
from typing import List, Optional, Dict, Any
from contextlib import contextmanager

from calendar_retry import settings
from calendar_retry.errors import StoreError
from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import ItemStatus, OperationType, QueueItem

SCHEMA = """
CREATE TABLE IF NOT EXISTS calendar_retry_queue (
    position        BIGSERIAL,
    id              TEXT PRIMARY KEY,
    type            TEXT NOT NULL,
    target_id       TEXT NOT NULL DEFAULT '',
    correlation_key TEXT NOT NULL DEFAULT '',
    display_title   TEXT,
    display_ref     TEXT,
    owner_email     TEXT NOT NULL DEFAULT '',
    params          JSONB NOT NULL DEFAULT '{}'::jsonb,
    enqueued_at     TIMESTAMPTZ NOT NULL,
    next_retry_at   TIMESTAMPTZ,
    attempt_count   INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS calendar_retry_queue_position_idx ON calendar_retry_queue (position);
CREATE TABLE IF NOT EXISTS calendar_retry_state (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

ITEM_COLUMNS = (
    "id, type, target_id, correlation_key, display_title, display_ref, owner_email, "
    "params, enqueued_at, next_retry_at, attempt_count, last_error, status"
)


def row_to_item(row: Dict[str, Any]) -> QueueItem:
    """Convert a ``RealDictCursor`` row to a queue item."""
    return QueueItem(
        id=row["id"],
        type=OperationType(row["type"]),
        target_id=row["target_id"],
        correlation_key=row["correlation_key"],
        owner_email=row["owner_email"],
        params=dict(row["params"] or {}),
        enqueued_at=row["enqueued_at"],
        next_retry_at=row["next_retry_at"],
        attempt_count=row["attempt_count"],
        last_error=row["last_error"],
        status=ItemStatus(row["status"]),
        display_title=row["display_title"],
        display_ref=row["display_ref"],
    )


def item_to_params(item: QueueItem) -> tuple:
    return (
        item.id,
        item.type.value,
        item.target_id,
        item.correlation_key,
        item.display_title,
        item.display_ref,
        item.owner_email,
        Json(item.params),
        item.enqueued_at,
        item.next_retry_at,
        item.attempt_count,
        item.last_error,
        item.status.value,
    )


class Database:
    """Database connection plus the queue-store and property-store operations.

    Each operation runs in its own transaction; the queue contract is
    last-writer-wins per item.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.DATABASE_URL
        self._conn = None

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn)
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    @contextmanager
    def cursor(self):
        """Context manager for cursor with auto-commit/rollback."""
        try:
            cur = self.conn.cursor(cursor_factory=RealDictCursor)
        except psycopg2.Error as e:
            raise StoreError(f"Cannot open database connection: {e}") from e
        try:
            yield cur
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise StoreError(f"Database operation failed: {e}") from e
        except Exception:
            self.conn.rollback()
            raise
        finally:
            cur.close()

    def ensure_schema(self) -> None:
        with self.cursor() as cur:
            cur.execute(SCHEMA)
        logger.info("Retry queue schema ready")

    # Queue store

    def load_all(self) -> List[QueueItem]:
        with self.cursor() as cur:
            cur.execute(f"""
                SELECT {ITEM_COLUMNS}
                FROM calendar_retry_queue
                ORDER BY position ASC
            """)
            rows = cur.fetchall()
        return [row_to_item(row) for row in rows]

    def append(self, item: QueueItem) -> None:
        with self.cursor() as cur:
            cur.execute(f"""
                INSERT INTO calendar_retry_queue ({ITEM_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """, item_to_params(item))
        logger.info(
            f"Enqueued {item.type.value} for {item.correlation_key}",
            extra={"item_id": item.id, "correlation_key": item.correlation_key},
        )

    def update(self, item: QueueItem) -> None:
        with self.cursor() as cur:
            cur.execute("""
                UPDATE calendar_retry_queue
                SET next_retry_at = %s,
                    attempt_count = %s,
                    last_error = %s,
                    status = %s,
                    params = %s,
                    updated_at = NOW()
                WHERE id = %s
            """, (
                item.next_retry_at,
                item.attempt_count,
                item.last_error,
                item.status.value,
                Json(item.params),
                item.id,
            ))

    def remove(self, item_id: str) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM calendar_retry_queue WHERE id = %s", (item_id,))

    def clear(self) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM calendar_retry_queue")
            count = cur.rowcount
        logger.warning(f"Cleared {count} queue rows")

    # Property store

    def get(self, key: str) -> Optional[str]:
        with self.cursor() as cur:
            cur.execute("SELECT value FROM calendar_retry_state WHERE key = %s", (key,))
            row = cur.fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO calendar_retry_state (key, value, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = NOW()
            """, (key, value))

    def delete(self, key: str) -> None:
        with self.cursor() as cur:
            cur.execute("DELETE FROM calendar_retry_state WHERE key = %s", (key,))

    def compare_and_set(self, key: str, expected: Optional[str], value: Optional[str]) -> bool:
        """Single-statement conditional write; ``None`` means absent."""
        with self.cursor() as cur:
            if expected is None:
                if value is None:
                    cur.execute("SELECT 1 FROM calendar_retry_state WHERE key = %s", (key,))
                    return cur.fetchone() is None
                cur.execute("""
                    INSERT INTO calendar_retry_state (key, value, updated_at)
                    VALUES (%s, %s, NOW())
                    ON CONFLICT (key) DO NOTHING
                    RETURNING key
                """, (key, value))
            elif value is None:
                cur.execute("""
                    DELETE FROM calendar_retry_state
                    WHERE key = %s AND value = %s
                    RETURNING key
                """, (key, expected))
            else:
                cur.execute("""
                    UPDATE calendar_retry_state
                    SET value = %s, updated_at = NOW()
                    WHERE key = %s AND value = %s
                    RETURNING key
                """, (value, key, expected))
            return cur.fetchone() is not None
