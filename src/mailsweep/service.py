"""Wiring of the long-lived components shared by the CLI and the web app."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from mailsweep.batch_classifier import BatchClassifier
from mailsweep.config import Config
from mailsweep.imap_client import IMAPClient, MockMailSource
from mailsweep.llm_client import LLMClient
from mailsweep.models import MailSource
from mailsweep.processor import EmailProcessor
from mailsweep.queue_worker import WorkerPool
from mailsweep.status import import_reporter, scan_reporter
from mailsweep.storage import Storage
from mailsweep.structured_logger import StructuredLogger

logger = logging.getLogger(__name__)


def build_mail_source(config: Config) -> MailSource:
    """Return the IMAP client, or the mock mailbox when IMAP is not configured."""
    if config.use_mock_imap or config.imap is None:
        logger.info("Using mock mail source")
        return MockMailSource()
    return IMAPClient(config.imap)


class ServiceContext:
    """Owns one instance of each component for the lifetime of the process."""

    def __init__(
        self,
        config: Config,
        classifier: LLMClient | None = None,
        source: MailSource | None = None,
        run_threads: bool = True,
    ):
        self.config = config
        self.storage = Storage(config.database_path)
        self.storage.seed_settings(config.default_settings())

        self.audit = StructuredLogger(config.logging.audit_file)
        self.classifier = classifier or LLMClient(
            config.ollama, model_resolver=lambda: self.storage.get_setting("ollama_model")
        )
        self.source = source or build_mail_source(config)
        self.scan_status = scan_reporter()
        self.import_status = import_reporter()

        self.pool = WorkerPool(
            self.storage,
            self.classifier,
            tick_interval=config.queue.tick_interval,
            stale_after=config.queue.stale_after,
            audit=self.audit,
            run_threads=run_threads,
        )
        self.batch_classifier = BatchClassifier(
            self.storage,
            self.classifier,
            config.batch,
            self.scan_status,
            audit=self.audit,
        )
        self.processor = EmailProcessor(
            self.storage,
            self.source,
            self.classifier,
            self.batch_classifier,
            self.scan_status,
            self.import_status,
            audit=self.audit,
        )
        self._jobs: dict[str, threading.Thread] = {}
        self._jobs_lock = threading.Lock()

    def start_job(self, name: str, target: Callable[[], Any]) -> bool:
        """Run ``target`` on a background thread unless a job of that name is running."""
        with self._jobs_lock:
            running = self._jobs.get(name)
            if running and running.is_alive():
                return False

            def run() -> None:
                try:
                    target()
                except Exception:
                    logger.exception(f"Background job {name} failed")

            thread = threading.Thread(target=run, name=f"job-{name}", daemon=True)
            self._jobs[name] = thread
            thread.start()
            return True

    def job_running(self, name: str) -> bool:
        with self._jobs_lock:
            thread = self._jobs.get(name)
            return thread is not None and thread.is_alive()

    def join_jobs(self, timeout: float | None = None) -> None:
        with self._jobs_lock:
            threads = list(self._jobs.values())
        for thread in threads:
            thread.join(timeout)

    def close(self) -> None:
        self.batch_classifier.cancel()
        self.pool.stop()
        self.classifier.close()
        self.audit.log_shutdown()
