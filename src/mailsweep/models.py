"""Core data types shared by the queue, the workers and the classifiers."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_validator, model_validator


class Classification(str, Enum):
    """Classification labels produced by the LLM."""

    SPAM = "spam"
    NEWSLETTER = "newsletter"
    KEEP = "keep"
    UNKNOWN = "unknown"


class QueueStatus(str, Enum):
    """Status of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UnsubscribeMethod(str, Enum):
    """How an unsubscribe action is carried out."""

    ONE_CLICK = "one-click"
    MAILTO = "mailto"
    LINK = "link"
    NONE = "none"


class ClassificationResult(BaseModel):
    """Classifier output.

    An ``unknown`` result always carries confidence 0 and a reasoning
    explaining why no label could be produced.
    """

    classification: Classification
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, value))

    @model_validator(mode="after")
    def _normalize_unknown(self) -> ClassificationResult:
        if self.classification is Classification.UNKNOWN:
            self.confidence = 0.0
            if not self.reasoning:
                self.reasoning = "No classification available"
        return self

    @classmethod
    def failed(cls, reason: str) -> ClassificationResult:
        """Build the fallback result used when classification could not run."""
        return cls(classification=Classification.UNKNOWN, confidence=0.0, reasoning=reason)

    @property
    def is_unknown(self) -> bool:
        return self.classification is Classification.UNKNOWN


@dataclass
class MailMessage:
    """A message fetched from a mail source."""

    message_id: str
    from_addr: str
    subject: str
    body: str
    date: datetime | None = None
    headers: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class MailSource(Protocol):
    """Mailbox capability consumed by the processor."""

    def fetch_messages(self, limit: int = 50) -> list[MailMessage]: ...

    def move_to_trash(self, message_id: str) -> bool: ...


@runtime_checkable
class FolderMailSource(MailSource, Protocol):
    """A mail source that can also walk every folder, used by full imports."""

    def list_folders(self) -> list[str]: ...

    def fetch_folder(self, folder: str) -> list[MailMessage]: ...


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class QueueItem:
    """One message awaiting, undergoing or having undergone classification."""

    id: int
    message_id: str
    from_addr: str
    subject: str
    body_preview: str | None = None
    email_date: datetime | None = None
    headers_json: str | None = None
    status: QueueStatus = QueueStatus.PENDING
    worker_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result_json: str | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> QueueItem:
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            from_addr=row["from_addr"],
            subject=row["subject"],
            body_preview=row["body_preview"],
            email_date=_parse_timestamp(row["email_date"]),
            headers_json=row["headers"],
            status=QueueStatus(row["status"]),
            worker_id=row["worker_id"],
            created_at=_parse_timestamp(row["created_at"]),
            started_at=_parse_timestamp(row["started_at"]),
            completed_at=_parse_timestamp(row["completed_at"]),
            result_json=row["result"],
            error=row["error"],
        )

    @property
    def headers(self) -> dict[str, str]:
        if not self.headers_json:
            return {}
        return json.loads(self.headers_json)

    @property
    def result(self) -> ClassificationResult | None:
        if not self.result_json:
            return None
        return ClassificationResult.model_validate_json(self.result_json)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "from_addr": self.from_addr,
            "subject": self.subject,
            "status": self.status.value,
            "worker_id": self.worker_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": json.loads(self.result_json) if self.result_json else None,
            "error": self.error,
        }


@dataclass
class EmailRecord:
    """A persisted, possibly classified, email."""

    id: int
    message_id: str
    from_addr: str
    subject: str
    body_preview: str | None = None
    date: datetime | None = None
    classification: Classification = Classification.UNKNOWN
    confidence: float = 0.0
    reasoning: str | None = None
    processed_at: datetime | None = None
    deleted: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EmailRecord:
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            from_addr=row["from_addr"],
            subject=row["subject"],
            body_preview=row["body_preview"],
            date=_parse_timestamp(row["date"]),
            classification=Classification(row["classification"]),
            confidence=row["confidence"] or 0.0,
            reasoning=row["reasoning"],
            processed_at=_parse_timestamp(row["processed_at"]),
            deleted=bool(row["deleted"]),
        )


@dataclass
class UnsubscribeInfo:
    """Unsubscribe action derived from headers or body."""

    url: str | None
    method: UnsubscribeMethod


@dataclass
class UnsubscribeTask:
    """A pending or executed unsubscribe request."""

    id: int
    email_id: int | None
    sender: str
    unsubscribe_url: str
    method: UnsubscribeMethod
    status: str = "pending"
    created_at: datetime | None = None
    completed_at: datetime | None = None
    result: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> UnsubscribeTask:
        return cls(
            id=row["id"],
            email_id=row["email_id"],
            sender=row["sender"],
            unsubscribe_url=row["unsubscribe_url"],
            method=UnsubscribeMethod(row["method"]),
            status=row["status"],
            created_at=_parse_timestamp(row["created_at"]),
            completed_at=_parse_timestamp(row["completed_at"]),
            result=row["result"],
        )


@dataclass
class ScanStats:
    """Counters for a scan or classification run."""

    emails_processed: int = 0
    spam_count: int = 0
    newsletter_count: int = 0
    keep_count: int = 0

    def record(self, classification: Classification) -> None:
        self.emails_processed += 1
        if classification is Classification.SPAM:
            self.spam_count += 1
        elif classification is Classification.NEWSLETTER:
            self.newsletter_count += 1
        elif classification is Classification.KEEP:
            self.keep_count += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "emails_processed": self.emails_processed,
            "spam_count": self.spam_count,
            "newsletter_count": self.newsletter_count,
            "keep_count": self.keep_count,
        }


@dataclass
class WorkerState:
    """Runtime descriptor of one pool worker. Never persisted."""

    id: str
    running: bool = False
    current_item: int | None = None
    processed_count: int = 0
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "running": self.running,
            "current_item": self.current_item,
            "processed_count": self.processed_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }
