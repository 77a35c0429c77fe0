"""SQLite backed write-ahead queue for expenses that have not reached Google yet.

Every public method opens its own connection and commits before returning, so
an item handed to :meth:`OfflineQueue.enqueue` survives a process crash the
moment the call completes.  Storage failures are never swallowed: they are
raised as :class:`QueueStorageError` and the caller must not report the
capture as saved.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from receiptsync import app_paths
from receiptsync.models import ELIGIBLE_STATUSES, QueueItem, QueueKind, QueueStatus

logger = logging.getLogger(__name__)

QUEUE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS queue (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    blob BLOB,
    content_type TEXT NOT NULL DEFAULT 'application/pdf',
    remote_file_id TEXT NOT NULL DEFAULT '',
    remote_link TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
)
"""

QUEUE_INDEX_SQL = "CREATE INDEX IF NOT EXISTS queue_status_created ON queue (status, created_at)"

_COLUMNS = (
    "id",
    "kind",
    "payload",
    "blob",
    "content_type",
    "remote_file_id",
    "remote_link",
    "status",
    "retry_count",
    "last_error",
    "created_at",
    "updated_at",
)


class QueueStorageError(RuntimeError):
    """Raised when the local queue database cannot be read or written."""


def _row_to_item(row: sqlite3.Row) -> QueueItem:
    blob = row["blob"]
    return QueueItem(
        id=row["id"],
        kind=QueueKind(row["kind"]),
        payload=json.loads(row["payload"]),
        blob=bytes(blob) if blob is not None else None,
        content_type=row["content_type"],
        remote_file_id=row["remote_file_id"],
        remote_link=row["remote_link"],
        status=QueueStatus(row["status"]),
        retry_count=int(row["retry_count"]),
        last_error=row["last_error"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
    )


class OfflineQueue:
    """Persist pending expense operations until the sync engine confirms them."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path else app_paths.data_path("queue.db")
        self._lock = threading.Lock()
        self._schema_ready = False
        try:
            if self._path.parent and not self._path.parent.exists():
                self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise QueueStorageError(f"Queue directory unavailable: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
        if not self._schema_ready:
            conn.execute(QUEUE_TABLE_SQL)
            conn.execute(QUEUE_INDEX_SQL)
            conn.commit()
            self._schema_ready = True
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._connect()
            except (sqlite3.Error, OSError) as exc:
                raise QueueStorageError(f"Queue database unavailable at {self._path}: {exc}") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except (sqlite3.Error, OSError) as exc:
                conn.rollback()
                raise QueueStorageError(f"Queue operation failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def enqueue(self, item: QueueItem) -> QueueItem:
        """Durably store ``item``; the row is committed before this returns."""

        now = time.time()
        item.updated_at = now
        values = (
            item.id,
            item.kind.value,
            json.dumps(item.payload, ensure_ascii=False),
            sqlite3.Binary(item.blob) if item.blob is not None else None,
            item.content_type,
            item.remote_file_id,
            item.remote_link,
            item.status.value,
            item.retry_count,
            item.last_error,
            item.created_at,
            item.updated_at,
        )
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO queue ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                values,
            )
        logger.info("Queued %s item %s", item.kind.value, item.id)
        return item

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM queue WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row else None

    def _select(self, statuses: Optional[Sequence[QueueStatus]] = None) -> List[QueueItem]:
        query = "SELECT * FROM queue"
        params: List[str] = []
        if statuses:
            query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params = [status.value for status in statuses]
        query += " ORDER BY created_at, id"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_item(row) for row in rows]

    def list_pending(self) -> List[QueueItem]:
        """Return the items eligible for processing, oldest first."""

        return self._select(ELIGIBLE_STATUSES)

    def list_failed(self) -> List[QueueItem]:
        return self._select((QueueStatus.FAILED,))

    def list_all(self) -> List[QueueItem]:
        return self._select()

    def update_status(
        self,
        item_id: str,
        status: QueueStatus,
        *,
        retry_count: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Atomically update the bookkeeping fields of ``item_id``."""

        assignments = ["status = ?", "updated_at = ?"]
        params: List[object] = [status.value, time.time()]
        if retry_count is not None:
            assignments.append("retry_count = ?")
            params.append(retry_count)
        if last_error is not None:
            assignments.append("last_error = ?")
            params.append(last_error)
        params.append(item_id)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE queue SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise KeyError(item_id)

    def record_upload(self, item_id: str, file_id: str, link: str) -> None:
        """Persist the remote identity of an uploaded blob."""

        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE queue SET remote_file_id = ?, remote_link = ?, updated_at = ? WHERE id = ?",
                (file_id, link, time.time(), item_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(item_id)
        logger.info("Recorded remote file %s for queue item %s", file_id, item_id)

    def requeue(self, item_id: str) -> None:
        """Give a FAILED item a fresh retry budget."""

        self.update_status(item_id, QueueStatus.PENDING, retry_count=0, last_error="")
        logger.info("Queue item %s re-queued manually", item_id)

    def remove(self, item_id: str) -> bool:
        with self._transaction() as conn:
            removed = conn.execute("DELETE FROM queue WHERE id = ?", (item_id,)).rowcount
        return removed > 0

    def count(self, statuses: Optional[Iterable[QueueStatus]] = None) -> int:
        """Return the number of queued items, optionally filtered by status."""

        query = "SELECT COUNT(*) FROM queue"
        params: List[str] = []
        selected = list(statuses) if statuses is not None else []
        if selected:
            query += f" WHERE status IN ({', '.join('?' for _ in selected)})"
            params = [status.value for status in selected]
        with self._transaction() as conn:
            (total,) = conn.execute(query, params).fetchone()
        return int(total)


__all__ = ["OfflineQueue", "QueueStorageError"]
