"""Structured logging for mailsweep."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class StructuredLogger:
    """Append-only JSON Lines audit trail."""

    def __init__(self, log_file: str | None = None):
        """Initialize the audit trail.

        Args:
            log_file: Path to the JSONL file. Events are dropped when None.
        """
        self.log_file = Path(log_file) if log_file else None
        self._lock = threading.Lock()

    def log_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Append one event line stamped with UTC time.

        Args:
            event_type: Event name, e.g. 'item_classified' or 'error'
            data: Event fields merged into the line
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **data,
        }

        if self.log_file:
            try:
                with self._lock, open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event) + "\n")
            except OSError as e:
                logger.error(f"Failed to write to audit log: {e}")

    def log_item_classified(
        self,
        worker_id: str,
        item_id: int,
        message_id: str,
        classification: str,
        confidence: float,
        reasoning: str | None = None,
    ) -> None:
        """Log a queue item classified by a pool worker.

        Args:
            worker_id: Name of the worker, e.g. worker-0
            item_id: Queue item id
            message_id: Email Message-ID
            classification: Assigned label
            confidence: Model confidence score
            reasoning: Model reasoning, if any
        """
        self.log_event(
            "item_classified",
            {
                "worker_id": worker_id,
                "item_id": item_id,
                "message_id": self._sanitize_for_json(message_id),
                "classification": classification,
                "confidence": confidence,
                "reasoning": self._sanitize_for_json(reasoning) if reasoning else None,
            },
        )

    def log_batch_round(
        self,
        round_number: int,
        batches: int,
        failures: int,
        concurrency_before: int,
        concurrency_after: int,
        emails_classified: int,
    ) -> None:
        """Log one round of the adaptive batch classifier."""
        self.log_event(
            "batch_round",
            {
                "round": round_number,
                "batches": batches,
                "failures": failures,
                "concurrency_before": concurrency_before,
                "concurrency_after": concurrency_after,
                "emails_classified": emails_classified,
            },
        )

    def log_scan_completed(self, mode: str, stats: dict[str, int]) -> None:
        self.log_event("scan_completed", {"mode": mode, **stats})

    def log_unsubscribe(self, task_id: int, url: str, method: str, success: bool, explanation: str) -> None:
        self.log_event(
            "unsubscribe_executed",
            {
                "task_id": task_id,
                "url": self._sanitize_for_json(url),
                "method": method,
                "success": success,
                "explanation": self._sanitize_for_json(explanation),
            },
        )

    def log_error(self, error_type: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Record a failure that an operator may need to act on.

        Args:
            error_type: Short machine-readable error kind
            message: Error message
            details: Additional context
        """
        self.log_event(
            "error",
            {
                "error_type": error_type,
                "message": message,
                "details": details or {},
            },
        )

    def log_startup(self, settings: dict[str, Any]) -> None:
        """Record process start with the non-secret parts of the configuration."""
        self.log_event("startup", settings)

    def log_shutdown(self, reason: str = "normal") -> None:
        self.log_event("shutdown", {"reason": reason})

    def _sanitize_for_json(self, value: str) -> str:
        """Strip control characters and cap length."""
        sanitized = ''.join(c for c in value if c.isprintable() or c in [' ', '\t'])
        if len(sanitized) > 500:
            sanitized = sanitized[:497] + "..."
        return sanitized
