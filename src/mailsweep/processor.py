"""Scan, import, reclassify and trash workflows."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from mailsweep.models import (
    Classification,
    ClassificationResult,
    FolderMailSource,
    MailMessage,
    MailSource,
    ScanStats,
)
from mailsweep.status import ImportStatus, ScanStatus, StatusReporter
from mailsweep.storage import DuplicateError, NotFoundError
from mailsweep.unsubscribe import extract_unsubscribe_info

if TYPE_CHECKING:
    from mailsweep.batch_classifier import BatchClassifier
    from mailsweep.llm_client import LLMClient
    from mailsweep.storage import Storage
    from mailsweep.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)

QUEUE_PREVIEW_CHARS = 500
RECORD_PREVIEW_CHARS = 200
IMPORT_PROGRESS_EVERY = 10


class EmailProcessor:
    """Ties a mail source, the classifier and the store together.

    A scan either enqueues new messages for the worker pool (when the
    ``queue_enabled`` setting is on) or classifies them one by one.
    """

    def __init__(
        self,
        storage: Storage,
        source: MailSource,
        classifier: LLMClient,
        batch_classifier: BatchClassifier,
        scan_status: StatusReporter[ScanStatus],
        import_status: StatusReporter[ImportStatus],
        audit: StructuredLogger | None = None,
    ):
        self.storage = storage
        self.source = source
        self.classifier = classifier
        self.batch_classifier = batch_classifier
        self.scan_status = scan_status
        self.import_status = import_status
        self.audit = audit

    def queue_enabled(self) -> bool:
        return self.storage.get_setting("queue_enabled") == "true"

    def process_emails(self, limit: int = 50) -> ScanStats:
        """Fetch up to ``limit`` messages and enqueue or classify the new ones."""
        mode = "queue" if self.queue_enabled() else "direct"
        self.scan_status.update(ScanStatus(active=True, phase="Starting scan..."))
        scan_id = self.storage.start_scan_log()
        stats = ScanStats()

        try:
            self.scan_status.update(ScanStatus(active=True, phase="Fetching emails from server..."))
            messages = self.source.fetch_messages(limit)
            total = len(messages)
            logger.info(f"Fetched {total} message(s), processing in {mode} mode")

            for i, message in enumerate(messages):
                self.scan_status.update(
                    ScanStatus(
                        active=True,
                        phase="Queueing emails..." if mode == "queue" else "Classifying with AI...",
                        current=i + 1,
                        total=total,
                        current_email=message.subject[:50],
                        current_email_from=message.from_addr,
                    )
                )
                if self.storage.email_exists(message.message_id):
                    continue

                if mode == "queue":
                    if self._enqueue(message):
                        stats.emails_processed += 1
                else:
                    result = self._classify_and_store(message)
                    stats.record(result.classification)
        except Exception as e:
            logger.error(f"Scan failed: {e}")
            if self.audit:
                self.audit.log_error("scan_failed", str(e), {"mode": mode})
            self.scan_status.update(ScanStatus(phase=f"Error: {e}"))
            raise
        finally:
            self.storage.finish_scan_log(scan_id, stats)

        if self.audit:
            self.audit.log_scan_completed(mode, stats.to_dict())
        self.scan_status.update(ScanStatus(phase="Complete", current=total, total=total))
        logger.info(f"Scan complete: {stats.to_dict()}")
        return stats

    def _enqueue(self, message: MailMessage) -> bool:
        try:
            self.storage.enqueue(message, preview_chars=QUEUE_PREVIEW_CHARS)
            return True
        except DuplicateError:
            logger.debug(f"Skipping already queued message {message.message_id}")
            return False

    def _classify_and_store(self, message: MailMessage) -> ClassificationResult:
        result = self.classifier.classify_email(
            message.from_addr, message.subject, message.body[:QUEUE_PREVIEW_CHARS]
        )
        email_id = self.storage.insert_email(
            message_id=message.message_id,
            from_addr=message.from_addr,
            subject=message.subject,
            body_preview=message.body[:RECORD_PREVIEW_CHARS],
            date=message.date,
            result=result,
        )

        if email_id is not None and result.classification is Classification.NEWSLETTER:
            info = extract_unsubscribe_info(message.headers, message.body)
            if info.url:
                self.storage.add_unsubscribe_task(email_id, message.from_addr, info.url, info.method)
        return result

    def classify_unclassified(self) -> ScanStats:
        """Batch classify every stored record still marked unknown."""
        return self.batch_classifier.classify_by_ids(self.storage.unclassified_email_ids())

    def classify_single(self, email_id: int) -> ClassificationResult | None:
        """Classify one stored record. Returns None if it was already classified.

        Raises:
            NotFoundError: If no record has this id.
        """
        record = self.storage.get_email(email_id)
        if record is None:
            raise NotFoundError(f"Email {email_id} not found")
        if record.classification is not Classification.UNKNOWN:
            return None

        self.scan_status.update(
            ScanStatus(
                active=True,
                phase="Classifying...",
                total=1,
                current_email=(record.subject or "")[:60],
                current_email_from=record.from_addr,
                current_email_id=email_id,
                start_time=time.time(),
                concurrency=1,
            )
        )
        try:
            result = self.classifier.classify_email(
                record.from_addr, record.subject or "", record.body_preview or ""
            )
            self.storage.update_classification(email_id, result)
        except Exception as e:
            logger.error(f"Classification of email {email_id} failed: {e}")
            if self.audit:
                self.audit.log_error("classification_failed", str(e), {"email_id": email_id})
            self.scan_status.update(ScanStatus(phase=f"Error: {e}"))
            raise
        self.scan_status.update(ScanStatus(phase="Complete", current=1, total=1))
        return result

    def import_all(self) -> ImportStatus:
        """Import every message from every folder as an unclassified record."""
        source = self.source
        if not isinstance(source, FolderMailSource):
            raise TypeError(f"{type(source).__name__} cannot list folders")

        status = ImportStatus(active=True, phase="Listing folders...")
        self.import_status.update(status)
        seen: set[str] = set()

        try:
            folders = source.list_folders()
            status = status.model_copy(update={"total_folders": len(folders)})

            for folder in folders:
                status = status.model_copy(
                    update={"phase": "Importing emails...", "current_folder": folder}
                )
                self.import_status.update(status)

                try:
                    messages = source.fetch_folder(folder)
                except (RuntimeError, OSError) as e:
                    logger.warning(f"Skipping folder {folder}: {e}")
                    messages = []

                found = imported = skipped = 0
                for message in messages:
                    found += 1
                    if message.message_id in seen:
                        skipped += 1
                        continue
                    seen.add(message.message_id)

                    email_id = self.storage.insert_email(
                        message_id=message.message_id,
                        from_addr=message.from_addr,
                        subject=message.subject,
                        body_preview=message.body[:QUEUE_PREVIEW_CHARS],
                        date=message.date,
                    )
                    if email_id is None:
                        skipped += 1
                        continue
                    imported += 1

                    if imported % IMPORT_PROGRESS_EVERY == 0:
                        self.import_status.update(
                            status.model_copy(
                                update={
                                    "emails_found": status.emails_found + found,
                                    "emails_imported": status.emails_imported + imported,
                                    "duplicates_skipped": status.duplicates_skipped + skipped,
                                }
                            )
                        )

                status = status.model_copy(
                    update={
                        "folders_processed": status.folders_processed + 1,
                        "emails_found": status.emails_found + found,
                        "emails_imported": status.emails_imported + imported,
                        "duplicates_skipped": status.duplicates_skipped + skipped,
                    }
                )
                logger.info(f"Imported {imported}/{found} message(s) from {folder}")

        except Exception as e:
            logger.error(f"Import failed: {e}")
            if self.audit:
                self.audit.log_error("import_failed", str(e), {"folder": status.current_folder})
            status = status.model_copy(update={"active": False, "phase": "Error", "error": str(e)})
            self.import_status.update(status)
            raise

        status = status.model_copy(update={"active": False, "phase": "Complete", "current_folder": ""})
        self.import_status.update(status)
        return status

    def trash_spam(self) -> dict[str, Any]:
        """Move every untrashed spam record's message to the trash folder."""
        spam = self.storage.untrashed_spam()
        trashed = 0
        errors: list[str] = []

        for record in spam:
            try:
                if self.source.move_to_trash(record.message_id):
                    self.storage.mark_deleted(record.id)
                    trashed += 1
            except (RuntimeError, OSError, ConnectionError, ValueError) as e:
                errors.append(f"Failed to trash {record.subject}: {e}")

        logger.info(f"Trashed {trashed}/{len(spam)} spam message(s)")
        return {"trashed_count": trashed, "total_spam": len(spam), "errors": errors}

    def trash_email(self, email_id: int) -> bool:
        """Move one record's message to the trash folder.

        Raises:
            NotFoundError: If no record has this id.
        """
        record = self.storage.get_email(email_id)
        if record is None:
            raise NotFoundError(f"Email {email_id} not found")
        if record.deleted:
            return False
        if self.source.move_to_trash(record.message_id):
            self.storage.mark_deleted(email_id)
            return True
        return False
