"""Persistent queue of sync operations deferred while offline.

Operations are stored in a small SQLite database so they survive a restart.
At most one operation of each kind is kept per note: enqueueing a newer
upload for a note replaces the pending one.
"""

import sqlite3
import logging
from pathlib import Path
from typing import List, Optional

from .sync_models import OperationType, QueuedOperation
from .sync_config import get_data_dir


logger = logging.getLogger(__name__)


class OfflineQueue:
    """SQLite-backed store for queued sync operations."""

    # An operation is dropped once a failed attempt brings it to this count
    MAX_RETRIES = 5

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the queue.

        Args:
            db_path: Optional custom database path
        """
        if db_path is None:
            data_dir = get_data_dir()
            data_dir.mkdir(parents=True, exist_ok=True)
            db_path = data_dir / "sync_queue.db"

        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self):
        """Create the queue table if needed."""
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_queue (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        type TEXT NOT NULL,
                        note_id INTEGER NOT NULL,
                        remote_path TEXT,
                        note_data TEXT,
                        created_at INTEGER NOT NULL,
                        retry_count INTEGER NOT NULL DEFAULT 0
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_sync_queue_note_id
                    ON sync_queue(note_id)
                """)
                conn.commit()
                self.logger.debug(f"Initialized offline queue at {self.db_path}")
        except sqlite3.Error as e:
            self.logger.error(f"Failed to initialize offline queue: {e}")
            raise

    async def enqueue(self, operation: QueuedOperation) -> int:
        """Add an operation, replacing a pending one of the same kind for the note.

        A replaced operation keeps its retry count, so repeated offline edits
        cannot keep a failing upload in the queue forever.

        Returns:
            Row id of the stored operation
        """
        row = operation.to_row()
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM sync_queue WHERE note_id = ? AND type = ?",
                (row['note_id'], row['type'])
            ).fetchone()

            if existing is not None:
                conn.execute("""
                    UPDATE sync_queue
                    SET remote_path = ?, note_data = ?, created_at = ?
                    WHERE id = ?
                """, (
                    row['remote_path'],
                    row['note_data'],
                    row['created_at'],
                    existing['id'],
                ))
                op_id = existing['id']
            else:
                cursor = conn.execute("""
                    INSERT INTO sync_queue
                    (type, note_id, remote_path, note_data, created_at, retry_count)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    row['type'],
                    row['note_id'],
                    row['remote_path'],
                    row['note_data'],
                    row['created_at'],
                    row['retry_count'],
                ))
                op_id = cursor.lastrowid
            conn.commit()

        operation.id = op_id
        self.logger.debug(f"Queued {operation.kind.value} for note {operation.note_id}")
        return op_id

    async def dequeue(self, operation_id: int):
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_queue WHERE id = ?", (operation_id,))
            conn.commit()

    async def get(self, operation_id: int) -> Optional[QueuedOperation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE id = ?", (operation_id,)
            ).fetchone()
        return QueuedOperation.from_row(dict(row)) if row else None

    async def list_all(self) -> List[QueuedOperation]:
        """All queued operations, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue ORDER BY created_at ASC, id ASC"
            ).fetchall()
        return [QueuedOperation.from_row(dict(row)) for row in rows]

    async def list_for_note(self, note_id: int) -> List[QueuedOperation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE note_id = ? ORDER BY created_at ASC, id ASC",
                (note_id,)
            ).fetchall()
        return [QueuedOperation.from_row(dict(row)) for row in rows]

    async def increment_retry(self, operation_id: int) -> int:
        """Record a failed attempt.

        Returns:
            The new retry count, or 0 if the operation no longer exists
        """
        with self._connect() as conn:
            conn.execute(
                "UPDATE sync_queue SET retry_count = retry_count + 1 WHERE id = ?",
                (operation_id,)
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (operation_id,)
            ).fetchone()
            conn.commit()
        return row['retry_count'] if row else 0

    async def clear_for_note(self, note_id: int, kind: Optional[OperationType] = None):
        """Remove pending operations for a note, optionally of one kind only."""
        with self._connect() as conn:
            if kind is None:
                conn.execute("DELETE FROM sync_queue WHERE note_id = ?", (note_id,))
            else:
                conn.execute(
                    "DELETE FROM sync_queue WHERE note_id = ? AND type = ?",
                    (note_id, kind.value)
                )
            conn.commit()

    async def clear(self):
        with self._connect() as conn:
            conn.execute("DELETE FROM sync_queue")
            conn.commit()
        self.logger.info("Cleared offline queue")

    async def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM sync_queue").fetchone()
        return row['n']
