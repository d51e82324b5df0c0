"""SQLite storage for the classification queue, email records and settings."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Generator, Iterable

from mailsweep.models import (
    ClassificationResult,
    EmailRecord,
    MailMessage,
    QueueItem,
    QueueStatus,
    ScanStats,
    UnsubscribeMethod,
    UnsubscribeTask,
)

logger = logging.getLogger(__name__)

# Statuses that block re-enqueueing the same message. Failed items may be retried.
_DEDUP_STATUSES = (
    QueueStatus.PENDING.value,
    QueueStatus.PROCESSING.value,
    QueueStatus.COMPLETED.value,
)


class StorageError(Exception):
    """Base class for storage errors."""


class DuplicateError(StorageError):
    """Raised when a message is already queued or processed."""


class InvalidTransitionError(StorageError):
    """Raised when a queue item is not in the status an operation requires."""


class NotFoundError(StorageError):
    """Raised when a referenced record does not exist."""


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat(timespec="microseconds") if value else None


class Storage:
    """SQLite-based storage for the durable queue and classification results."""

    SCHEMA_VERSION = 1
    BUSY_TIMEOUT = 30.0

    def __init__(self, db_path: str | Path):
        """Initialize storage with database path."""
        self.db_path = Path(db_path)
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                );

                CREATE TABLE IF NOT EXISTS emails (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL UNIQUE,
                    from_addr TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body_preview TEXT,
                    date TEXT,
                    classification TEXT NOT NULL DEFAULT 'unknown',
                    confidence REAL NOT NULL DEFAULT 0,
                    reasoning TEXT,
                    processed_at TEXT,
                    deleted INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS email_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id TEXT NOT NULL,
                    from_addr TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body_preview TEXT,
                    email_date TEXT,
                    headers TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    worker_id TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    result TEXT,
                    error TEXT
                );

                CREATE TABLE IF NOT EXISTS unsubscribe_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email_id INTEGER REFERENCES emails(id),
                    sender TEXT NOT NULL,
                    unsubscribe_url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    result TEXT
                );

                CREATE TABLE IF NOT EXISTS scan_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    emails_processed INTEGER NOT NULL DEFAULT 0,
                    spam_count INTEGER NOT NULL DEFAULT 0,
                    newsletter_count INTEGER NOT NULL DEFAULT 0,
                    keep_count INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_queue_status ON email_queue(status, worker_id);
                CREATE INDEX IF NOT EXISTS idx_queue_message ON email_queue(message_id);
                CREATE INDEX IF NOT EXISTS idx_emails_classification ON emails(classification);
                """
            )

            cursor = conn.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper handling."""
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run statements in a write transaction that holds the database lock.

        ``BEGIN IMMEDIATE`` takes the reserved lock up front, so a
        check-then-write sequence cannot interleave with another writer.
        """
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, message: MailMessage, preview_chars: int = 500) -> int:
        """Add a message to the queue and return the new item id.

        Args:
            message: Parsed message to enqueue
            preview_chars: Number of body characters to keep

        Raises:
            DuplicateError: If the message is already pending, processing or completed.
        """
        placeholders = ", ".join("?" for _ in _DEDUP_STATUSES)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                SELECT id FROM email_queue
                WHERE message_id = ? AND status IN ({placeholders})
                LIMIT 1
                """,
                (message.message_id, *_DEDUP_STATUSES),
            )
            if cursor.fetchone() is not None:
                raise DuplicateError(f"Message already queued: {message.message_id}")

            cursor = conn.execute(
                """
                INSERT INTO email_queue
                (message_id, from_addr, subject, body_preview, email_date, headers, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id,
                    message.from_addr,
                    message.subject,
                    message.body[:preview_chars],
                    _isoformat(message.date),
                    json.dumps(message.headers),
                    QueueStatus.PENDING.value,
                    _now(),
                ),
            )
            item_id = cursor.lastrowid
        logger.debug(f"Enqueued {message.message_id} as item {item_id}")
        return item_id

    def claim_next(self, worker_id: str) -> QueueItem | None:
        """Atomically claim the oldest pending, unowned item for a worker.

        Args:
            worker_id: Name recorded as the owner of the claimed item

        Returns:
            The claimed item, or None when nothing is pending or another
            worker won the race
        """
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT id FROM email_queue
                WHERE status = ? AND worker_id IS NULL
                ORDER BY id
                LIMIT 1
                """,
                (QueueStatus.PENDING.value,),
            ).fetchone()
            if row is None:
                return None

            cursor = conn.execute(
                """
                UPDATE email_queue
                SET status = ?, worker_id = ?, started_at = ?
                WHERE id = ? AND status = ? AND worker_id IS NULL
                """,
                (
                    QueueStatus.PROCESSING.value,
                    worker_id,
                    _now(),
                    row["id"],
                    QueueStatus.PENDING.value,
                ),
            )
            if cursor.rowcount != 1:
                return None

            claimed = conn.execute(
                "SELECT * FROM email_queue WHERE id = ?", (row["id"],)
            ).fetchone()

        return QueueItem.from_row(claimed)

    def complete(self, item_id: int, result: ClassificationResult) -> None:
        """Mark a processing item as completed with its classification result."""
        self._finish(item_id, QueueStatus.COMPLETED, result=result.model_dump_json())

    def fail(self, item_id: int, error: str) -> None:
        """Mark a processing item as failed."""
        self._finish(item_id, QueueStatus.FAILED, error=error)

    def _finish(
        self,
        item_id: int,
        status: QueueStatus,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE email_queue
                SET status = ?, completed_at = ?, result = ?, error = ?
                WHERE id = ? AND status = ?
                """,
                (status.value, _now(), result, error, item_id, QueueStatus.PROCESSING.value),
            )
            if cursor.rowcount != 1:
                raise InvalidTransitionError(
                    f"Queue item {item_id} is not processing, cannot mark {status.value}"
                )

    def get_queue_item(self, item_id: int) -> QueueItem | None:
        """Get a queue item by id, or None."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM email_queue WHERE id = ?", (item_id,)
            ).fetchone()
            return QueueItem.from_row(row) if row else None

    def list_queue_items(
        self, status: QueueStatus | None = None, limit: int = 100
    ) -> list[QueueItem]:
        """List queue items, newest first.

        Args:
            status: Only return items in this status
            limit: Maximum number of items
        """
        with self._get_connection() as conn:
            if status:
                cursor = conn.execute(
                    "SELECT * FROM email_queue WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status.value, limit),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM email_queue ORDER BY id DESC LIMIT ?", (limit,)
                )
            return [QueueItem.from_row(row) for row in cursor.fetchall()]

    def queue_stats(self) -> dict[str, int]:
        """Count queue items by status."""
        counts = {status.value: 0 for status in QueueStatus}
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT status, COUNT(*) AS count FROM email_queue GROUP BY status"
            )
            for row in cursor.fetchall():
                counts[row["status"]] = row["count"]
        return counts

    def clear_queue(self, status: QueueStatus | None = None) -> int:
        """Delete queue items with the given status (completed by default)."""
        status = status or QueueStatus.COMPLETED
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM email_queue WHERE status = ?", (status.value,)
            )
            deleted = cursor.rowcount
        logger.info(f"Cleared {deleted} {status.value} queue item(s)")
        return deleted

    def recover_stale(self, older_than: float) -> int:
        """Return processing items claimed more than ``older_than`` seconds ago to pending."""
        cutoff = (datetime.now() - timedelta(seconds=older_than)).isoformat(
            timespec="microseconds"
        )
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE email_queue
                SET status = ?, worker_id = NULL, started_at = NULL
                WHERE status = ? AND (started_at IS NULL OR started_at < ?)
                """,
                (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value, cutoff),
            )
            recovered = cursor.rowcount
        if recovered:
            logger.warning(f"Recovered {recovered} orphaned queue item(s) to pending")
        return recovered

    # ------------------------------------------------------------------
    # Email records
    # ------------------------------------------------------------------

    def insert_email(
        self,
        message_id: str,
        from_addr: str,
        subject: str,
        body_preview: str | None = None,
        date: datetime | None = None,
        result: ClassificationResult | None = None,
    ) -> int | None:
        """Insert an email record, ignoring duplicates.

        Args:
            message_id: Email Message-ID, unique per record
            from_addr: Sender address
            subject: Subject line
            body_preview: Leading part of the body
            date: Date header, if parsed
            result: Classification, or None to store the record as unknown

        Returns:
            The new record id, or None if the Message-ID was already stored
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO emails
                (message_id, from_addr, subject, body_preview, date,
                 classification, confidence, reasoning, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    from_addr,
                    subject,
                    body_preview,
                    _isoformat(date),
                    result.classification.value if result else "unknown",
                    result.confidence if result else 0.0,
                    result.reasoning if result else None,
                    _now(),
                ),
            )
            return cursor.lastrowid if cursor.rowcount == 1 else None

    def email_exists(self, message_id: str) -> bool:
        """Check whether a record exists for this Message-ID."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM emails WHERE message_id = ?", (message_id,)
            )
            return cursor.fetchone() is not None

    def get_email(self, email_id: int) -> EmailRecord | None:
        """Get an email record by id, or None."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM emails WHERE id = ?", (email_id,)).fetchone()
            return EmailRecord.from_row(row) if row else None

    def get_emails_by_ids(self, email_ids: Iterable[int]) -> dict[int, EmailRecord]:
        """Fetch records for ``email_ids`` keyed by id. Missing ids are left out."""
        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return {}
        records: dict[int, EmailRecord] = {}
        with self._get_connection() as conn:
            # Chunk to stay below SQLite's host parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT * FROM emails WHERE id IN ({placeholders})", chunk
                )
                for row in cursor.fetchall():
                    records[row["id"]] = EmailRecord.from_row(row)
        return records

    def list_emails(
        self, classification: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[EmailRecord]:
        """List email records, newest first.

        Args:
            classification: Only return records with this label
            limit: Maximum number of records
            offset: Number of records to skip
        """
        with self._get_connection() as conn:
            if classification:
                cursor = conn.execute(
                    """
                    SELECT * FROM emails WHERE classification = ?
                    ORDER BY id DESC LIMIT ? OFFSET ?
                    """,
                    (classification, limit, offset),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM emails ORDER BY id DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                )
            return [EmailRecord.from_row(row) for row in cursor.fetchall()]

    def unclassified_email_ids(self) -> list[int]:
        """Ids of records still labelled unknown and not trashed, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT id FROM emails WHERE classification = 'unknown' AND deleted = 0 ORDER BY id"
            )
            return [row["id"] for row in cursor.fetchall()]

    def update_classification(self, email_id: int, result: ClassificationResult) -> None:
        """Store a classification result on an email record."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE emails
                SET classification = ?, confidence = ?, reasoning = ?, processed_at = ?
                WHERE id = ?
                """,
                (
                    result.classification.value,
                    result.confidence,
                    result.reasoning,
                    _now(),
                    email_id,
                ),
            )

    def untrashed_spam(self) -> list[EmailRecord]:
        """Records classified as spam that have not been moved to the trash."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM emails WHERE classification = 'spam' AND deleted = 0 ORDER BY id"
            )
            return [EmailRecord.from_row(row) for row in cursor.fetchall()]

    def mark_deleted(self, email_id: int) -> None:
        """Flag a record as moved to the trash."""
        with self._get_connection() as conn:
            conn.execute("UPDATE emails SET deleted = 1 WHERE id = ?", (email_id,))

    def get_statistics(self) -> dict[str, Any]:
        """Get classification statistics."""
        with self._get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) AS total FROM emails").fetchone()["total"]

            cursor = conn.execute(
                "SELECT classification, COUNT(*) AS count FROM emails GROUP BY classification"
            )
            by_classification = {row["classification"]: row["count"] for row in cursor.fetchall()}

            pending_unsubscribes = conn.execute(
                "SELECT COUNT(*) AS count FROM unsubscribe_tasks WHERE status = 'pending'"
            ).fetchone()["count"]

            return {
                "total_emails": total,
                "spam_count": by_classification.get("spam", 0),
                "newsletter_count": by_classification.get("newsletter", 0),
                "keep_count": by_classification.get("keep", 0),
                "unknown_count": by_classification.get("unknown", 0),
                "pending_unsubscribes": pending_unsubscribes,
            }

    # ------------------------------------------------------------------
    # Unsubscribe tasks
    # ------------------------------------------------------------------

    def add_unsubscribe_task(
        self,
        email_id: int | None,
        sender: str,
        url: str,
        method: UnsubscribeMethod,
    ) -> int:
        """Record a pending unsubscribe request.

        Args:
            email_id: Email record the request came from, if any
            sender: Sender address shown to the user
            url: Unsubscribe URL (http(s) or mailto)
            method: How the URL should be acted on

        Returns:
            The new task id
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO unsubscribe_tasks
                (email_id, sender, unsubscribe_url, method, status, created_at)
                VALUES (?, ?, ?, ?, 'pending', ?)
                """,
                (email_id, sender, url, method.value, _now()),
            )
            return cursor.lastrowid

    def get_unsubscribe_task(self, task_id: int) -> UnsubscribeTask | None:
        """Get an unsubscribe task by id, or None."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM unsubscribe_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            return UnsubscribeTask.from_row(row) if row else None

    def pending_unsubscribe_tasks(self) -> list[UnsubscribeTask]:
        """Unsubscribe tasks not yet attempted, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM unsubscribe_tasks WHERE status = 'pending' ORDER BY id"
            )
            return [UnsubscribeTask.from_row(row) for row in cursor.fetchall()]

    def finish_unsubscribe_task(
        self, task_id: int, success: bool, result: dict[str, Any] | None = None
    ) -> None:
        """Close an unsubscribe task.

        Args:
            task_id: Task to close
            success: Marks the task completed when true, failed otherwise
            result: Outcome details, stored as JSON
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE unsubscribe_tasks
                SET status = ?, completed_at = ?, result = ?
                WHERE id = ?
                """,
                (
                    "completed" if success else "failed",
                    _now(),
                    json.dumps(result) if result is not None else None,
                    task_id,
                ),
            )

    # ------------------------------------------------------------------
    # Scan logs
    # ------------------------------------------------------------------

    def start_scan_log(self) -> int:
        """Open a scan log row and return its id."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "INSERT INTO scan_logs (started_at) VALUES (?)", (_now(),)
            )
            return cursor.lastrowid

    def finish_scan_log(self, scan_id: int, stats: ScanStats) -> None:
        """Close a scan log row with the counts of the run."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE scan_logs
                SET completed_at = ?, emails_processed = ?, spam_count = ?,
                    newsletter_count = ?, keep_count = ?
                WHERE id = ?
                """,
                (
                    _now(),
                    stats.emails_processed,
                    stats.spam_count,
                    stats.newsletter_count,
                    stats.keep_count,
                    scan_id,
                ),
            )

    def get_scan_logs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent scan log rows, newest first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM scan_logs ORDER BY started_at DESC LIMIT ?", (limit,)
            )
            return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        """Get a runtime setting, or None when it is unset."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        """Create or overwrite a runtime setting."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, _now()),
            )

    def get_settings(self) -> dict[str, str]:
        """All runtime settings as a dict."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key, value FROM settings ORDER BY key")
            return {row["key"]: row["value"] for row in cursor.fetchall()}

    def seed_settings(self, defaults: dict[str, str]) -> None:
        """Store default settings without overwriting values already present."""
        with self._get_connection() as conn:
            conn.executemany(
                "INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                [(key, value, _now()) for key, value in defaults.items()],
            )

    def close(self) -> None:
        """Close any open connections."""
        pass  # Connections are closed after each operation
