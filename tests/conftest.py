"""Shared fixtures: a temporary store, fake classifier and fake mailbox."""

import threading
from datetime import datetime

import pytest

from mailsweep.llm_client import UnsubscribeAnalysis
from mailsweep.models import Classification, ClassificationResult, MailMessage
from mailsweep.storage import Storage


def label_by_subject(from_addr, subject, body_preview=""):
    subject = subject.lower()
    if "spam" in subject:
        return Classification.SPAM
    if "news" in subject:
        return Classification.NEWSLETTER
    return Classification.KEEP


class FakeClassifier:
    """Stands in for LLMClient; labels by subject keyword unless told otherwise."""

    def __init__(self, label_for=label_by_subject, batch_handler=None, healthy=True):
        self.label_for = label_for
        self.batch_handler = batch_handler
        self.healthy = healthy
        self.calls = []
        self.batch_calls = []
        self.analysis = UnsubscribeAnalysis(success=False, explanation="Unclear response")
        self.analysis_calls = []
        self._lock = threading.Lock()

    def classify_email(self, from_addr, subject, body_preview):
        with self._lock:
            self.calls.append((from_addr, subject))
        label = self.label_for(from_addr, subject, body_preview)
        return ClassificationResult(classification=label, confidence=0.9, reasoning="fake")

    def classify_batch(self, emails):
        with self._lock:
            self.batch_calls.append([e.subject for e in emails])
        if self.batch_handler:
            return self.batch_handler(emails)
        return [
            ClassificationResult(
                classification=self.label_for(e.from_addr, e.subject, e.body_preview),
                confidence=0.8,
            )
            for e in emails
        ]

    def analyze_unsubscribe_response(self, url, status_code, response_body, error=None):
        self.analysis_calls.append((url, status_code, error))
        return self.analysis

    def check_health(self):
        return self.healthy

    def close(self):
        pass


class FakeMailSource:
    """In-memory mailbox with optional extra folders."""

    def __init__(self, messages=None, folders=None):
        self.messages = list(messages or [])
        self.folders = folders or {"INBOX": self.messages}
        self.trashed = []

    def fetch_messages(self, limit=50):
        return self.messages[:limit]

    def list_folders(self):
        return list(self.folders)

    def fetch_folder(self, folder):
        return list(self.folders.get(folder, []))

    def move_to_trash(self, message_id):
        if any(m.message_id == message_id for m in self.messages):
            self.trashed.append(message_id)
            self.messages = [m for m in self.messages if m.message_id != message_id]
            return True
        return False


def make_message(n, subject=None, headers=None, body=None, sender=None):
    return MailMessage(
        message_id=f"<msg-{n}@example.com>",
        from_addr=sender or f"sender{n}@example.com",
        subject=subject or f"Message {n}",
        body=body or f"Body of message {n}",
        date=datetime(2024, 1, 1, 12, 0, 0),
        headers=headers or {},
    )


@pytest.fixture
def storage(tmp_path):
    return Storage(tmp_path / "test.db")


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def enabled_storage(storage):
    """Store with the queue turned on and one worker configured."""
    storage.seed_settings({"queue_enabled": "true", "worker_count": "1"})
    return storage
