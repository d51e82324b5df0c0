"""Adaptive batch classification of stored emails.

Unclassified records are cut into contiguous groups of ``emails_per_batch``
and classified in rounds of concurrent batch requests. The number of groups
per round follows AIMD: a clean round adds ``increase_step`` up to the cap,
any failed group halves it down to the floor and cools down briefly.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

from mailsweep.llm_client import BatchEmail
from mailsweep.models import Classification, ClassificationResult, EmailRecord, ScanStats
from mailsweep.status import ScanStatus, StatusReporter, average_time_per_email

if TYPE_CHECKING:
    from mailsweep.config import BatchConfig
    from mailsweep.llm_client import LLMClient
    from mailsweep.storage import Storage
    from mailsweep.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


class BatchGroupError(Exception):
    """Raised when a batch group yields no usable classification."""


class ConcurrencyController:
    """Additive-increase, multiplicative-decrease concurrency level."""

    def __init__(self, initial: int, minimum: int, maximum: int, step: int):
        self.minimum = minimum
        self.maximum = maximum
        self.step = step
        self.value = min(maximum, max(minimum, initial))

    @classmethod
    def from_config(cls, config: BatchConfig) -> ConcurrencyController:
        return cls(
            initial=config.initial_concurrency,
            minimum=config.min_concurrency,
            maximum=config.max_concurrency,
            step=config.increase_step,
        )

    def on_round(self, failures: int) -> int:
        """Adjust after a round and return the new level."""
        if failures > 0:
            self.value = max(self.minimum, self.value // 2)
        else:
            self.value = min(self.maximum, self.value + self.step)
        return self.value


@dataclass
class BatchRound:
    """Outcome of one round, kept for inspection."""

    number: int
    batches: int
    failures: int
    concurrency_before: int
    concurrency_after: int
    emails_classified: int


class BatchClassifier:
    """Classifies stored emails by id in adaptive concurrent rounds."""

    def __init__(
        self,
        storage: Storage,
        classifier: LLMClient,
        config: BatchConfig,
        scan_status: StatusReporter[ScanStatus],
        audit: StructuredLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.classifier = classifier
        self.config = config
        self.scan_status = scan_status
        self.audit = audit
        self._sleep = sleep
        self._cancel = threading.Event()
        self.rounds: list[BatchRound] = []

    def cancel(self) -> None:
        """Stop after the round in flight."""
        self._cancel.set()

    def reset_cancel(self) -> None:
        """Clear a previous cancel before a new run is scheduled.

        A run never clears the flag itself, so a cancel issued between
        scheduling and the first round still takes effect.
        """
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def classify_by_ids(self, email_ids: Iterable[int]) -> ScanStats:
        """Classify the still-unknown records among ``email_ids``, in input order."""
        email_ids = list(email_ids)
        self.rounds = []
        self.scan_status.update(ScanStatus(active=True, phase="Starting classification..."))

        try:
            return self._classify(email_ids)
        except Exception as e:
            logger.error(f"Batch classification failed: {e}")
            if self.audit:
                self.audit.log_error("classification_failed", str(e), {"emails": len(email_ids)})
            self.scan_status.update(ScanStatus(phase=f"Error: {e}"))
            raise

    def _classify(self, email_ids: list[int]) -> ScanStats:
        stats = ScanStats()
        scan_id = self.storage.start_scan_log()

        records = self.storage.get_emails_by_ids(email_ids)
        ordered = [records[i] for i in dict.fromkeys(email_ids) if i in records]
        to_classify = [r for r in ordered if r.classification is Classification.UNKNOWN]
        total = len(to_classify)

        if total == 0:
            self.storage.finish_scan_log(scan_id, stats)
            self.scan_status.update(ScanStatus(phase="No emails to classify"))
            return stats

        per_batch = self.config.emails_per_batch
        controller = ConcurrencyController.from_config(self.config)
        start_time = time.time()
        completed = 0
        index = 0

        self.scan_status.update(
            ScanStatus(
                active=True,
                phase="Starting batch classification...",
                total=total,
                start_time=start_time,
                concurrency=controller.value,
            )
        )
        logger.info(f"Batch classifying {total} email(s), {per_batch} per batch")

        with ThreadPoolExecutor(
            max_workers=self.config.max_concurrency, thread_name_prefix="batch"
        ) as executor:
            while index < total and not self._cancel.is_set():
                remaining = total - index
                num_batches = min(controller.value, math.ceil(remaining / per_batch))
                groups = [
                    to_classify[index + b * per_batch : index + (b + 1) * per_batch]
                    for b in range(num_batches)
                ]

                first = groups[0][0]
                self._publish(first, completed, total, start_time, controller.value)

                futures = [executor.submit(self._classify_group, group) for group in groups]
                wait(futures)

                failures = 0
                classified = 0
                for future in futures:
                    error = future.exception()
                    if error is not None:
                        failures += 1
                        logger.error(f"Batch classification error: {error}")
                        continue
                    for result in future.result():
                        stats.record(result.classification)
                        classified += 1

                completed += classified
                index += num_batches * per_batch

                before = controller.value
                after = controller.on_round(failures)
                self._record_round(num_batches, failures, before, after, classified)
                self._publish(first, completed, total, start_time, after)

                if failures:
                    logger.warning(f"Errors detected, reducing concurrency to {after}")
                    self.scan_status.update(
                        self.scan_status.get().model_copy(
                            update={"phase": f"Errors detected, reducing concurrency to {after}"}
                        )
                    )
                    self._sleep(self.config.cooldown)

        self.storage.finish_scan_log(scan_id, stats)
        if self.audit:
            self.audit.log_scan_completed("batch", stats.to_dict())

        phase = "Cancelled" if self._cancel.is_set() else "Complete"
        self.scan_status.update(ScanStatus(phase=phase, current=completed, total=total))
        logger.info(
            f"Batch classification {phase.lower()}: {stats.emails_processed}/{total} classified "
            f"in {len(self.rounds)} round(s)"
        )
        return stats

    def _classify_group(self, group: Sequence[EmailRecord]) -> list[ClassificationResult]:
        results = self.classifier.classify_batch(
            [
                BatchEmail(
                    from_addr=record.from_addr,
                    subject=record.subject or "",
                    body_preview=record.body_preview or "",
                )
                for record in group
            ]
        )
        if len(results) != len(group):
            raise BatchGroupError(f"got {len(results)} results for {len(group)} emails")
        if all(result.is_unknown for result in results):
            raise BatchGroupError(results[0].reasoning or "batch returned no classifications")

        for record, result in zip(group, results):
            self.storage.update_classification(record.id, result)
        return results

    def _publish(
        self,
        current_email: EmailRecord,
        completed: int,
        total: int,
        start_time: float,
        concurrency: int,
    ) -> None:
        per_batch = self.config.emails_per_batch
        self.scan_status.update(
            ScanStatus(
                active=True,
                phase=f"Batch: {per_batch}x{concurrency} = {per_batch * concurrency}/round",
                current=completed,
                total=total,
                current_email=(current_email.subject or "")[:60],
                current_email_from=current_email.from_addr,
                current_email_id=current_email.id,
                start_time=start_time,
                avg_time_per_email=average_time_per_email(start_time, completed),
                concurrency=concurrency,
            )
        )

    def _record_round(
        self, batches: int, failures: int, before: int, after: int, classified: int
    ) -> None:
        entry = BatchRound(
            number=len(self.rounds) + 1,
            batches=batches,
            failures=failures,
            concurrency_before=before,
            concurrency_after=after,
            emails_classified=classified,
        )
        self.rounds.append(entry)
        logger.debug(
            f"Round {entry.number}: {batches} batch(es), {failures} failed, "
            f"concurrency {before} -> {after}"
        )
        if self.audit:
            self.audit.log_batch_round(
                round_number=entry.number,
                batches=batches,
                failures=failures,
                concurrency_before=before,
                concurrency_after=after,
                emails_classified=classified,
            )
