"""Process-wide scan and import progress, observed by pollers and streams."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ScanStatus(BaseModel):
    """Snapshot of the running scan or classification."""

    model_config = ConfigDict(frozen=True)

    active: bool = False
    phase: str = "idle"
    current: int = 0
    total: int = 0
    current_email: str | None = None
    current_email_from: str | None = None
    current_email_id: int | None = None
    start_time: float | None = None
    avg_time_per_email: float | None = None
    concurrency: int | None = None


class ImportStatus(BaseModel):
    """Snapshot of a running full-mailbox import."""

    model_config = ConfigDict(frozen=True)

    active: bool = False
    phase: str = "idle"
    current_folder: str = ""
    folders_processed: int = 0
    total_folders: int = 0
    emails_found: int = 0
    emails_imported: int = 0
    duplicates_skipped: int = 0
    error: str | None = None


StatusT = TypeVar("StatusT", bound=BaseModel)
StatusSink = Callable[[BaseModel], None]


class StatusReporter(Generic[StatusT]):
    """Holds the current status snapshot.

    Writers replace the whole snapshot; readers always see a complete,
    immutable object. Sinks are called with every new snapshot.
    """

    def __init__(self, initial: StatusT):
        self._initial = initial
        self._status = initial
        self._version = 0
        self._lock = threading.Lock()
        self._sinks: list[StatusSink] = []

    def get(self) -> StatusT:
        with self._lock:
            return self._status

    @property
    def version(self) -> int:
        """Incremented on every update; lets streaming readers detect changes."""
        with self._lock:
            return self._version

    def update(self, status: StatusT) -> None:
        with self._lock:
            self._status = status
            self._version += 1
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(status)
            except Exception:
                logger.exception("Status sink failed")

    def reset(self) -> None:
        self.update(self._initial)

    def subscribe(self, sink: StatusSink) -> Callable[[], None]:
        """Register a sink; returns a function that unregisters it."""
        with self._lock:
            self._sinks.append(sink)

        def unsubscribe() -> None:
            with self._lock:
                if sink in self._sinks:
                    self._sinks.remove(sink)

        return unsubscribe

    @property
    def is_active(self) -> bool:
        return bool(getattr(self.get(), "active", False))


def scan_reporter() -> StatusReporter[ScanStatus]:
    return StatusReporter(ScanStatus())


def import_reporter() -> StatusReporter[ImportStatus]:
    return StatusReporter(ImportStatus())


def average_time_per_email(start_time: float, completed: int) -> float:
    """Average milliseconds spent per completed email since ``start_time``."""
    if completed <= 0:
        return 0.0
    return (time.time() - start_time) * 1000 / completed
