"""Tests for the HTTP and WebSocket API."""

import pytest
from fastapi.testclient import TestClient

from mailsweep.config import Config, LoggingConfig
from mailsweep.service import ServiceContext
from mailsweep.web.app import create_app

from conftest import FakeClassifier, FakeMailSource, make_message


@pytest.fixture
def context(tmp_path):
    config = Config(
        database_path=str(tmp_path / "web.db"),
        logging=LoggingConfig(audit_file=str(tmp_path / "audit.jsonl")),
    )
    source = FakeMailSource(
        [
            make_message(1, subject="Spam lottery"),
            make_message(
                2, subject="Weekly news", headers={"List-Unsubscribe": "<mailto:leave@news.test>"}
            ),
            make_message(3, subject="Meeting notes"),
        ]
    )
    ctx = ServiceContext(config, classifier=FakeClassifier(), source=source, run_threads=False)
    yield ctx
    ctx.close()


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as test_client:
        yield test_client


def run_scan(client, context):
    response = client.post("/api/scan", json={"limit": 10})
    assert response.status_code == 200
    context.join_jobs(timeout=10)


class TestStatusEndpoints:
    def test_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["ollama"] is True
        assert data["model"] == "qwen2.5:0.5b"

    def test_scan_status_idle(self, client):
        data = client.get("/api/scan/status").json()
        assert data["active"] is False
        assert data["phase"] == "idle"

    def test_model_profiles(self, client):
        profiles = client.get("/api/models/profiles").json()
        assert profiles
        assert client.get("/api/models/profile/qwen2.5:0.5b").json()["model"] == "qwen2.5:0.5b"


class TestScanAndEmails:
    def test_scan_classifies_inbox(self, client, context):
        run_scan(client, context)

        emails = client.get("/api/emails").json()
        assert len(emails) == 3
        assert client.get("/api/scan/status").json()["phase"] == "Complete"

        stats = client.get("/api/stats").json()
        assert stats["total_emails"] == 3
        assert stats["spam_count"] == 1

    def test_filter_by_classification(self, client, context):
        run_scan(client, context)
        spam = client.get("/api/emails", params={"classification": "spam"}).json()
        assert [e["subject"] for e in spam] == ["Spam lottery"]

    def test_scan_logged(self, client, context):
        run_scan(client, context)
        assert client.get("/api/scans").json()[0]["emails_processed"] == 3

    def test_classify_single_missing(self, client):
        assert client.post("/api/classify/single/999").status_code == 404

    def test_classify_single(self, client, context):
        email_id = context.storage.insert_email("<new@x>", "a@x", "Weekly news")
        data = client.post(f"/api/classify/single/{email_id}").json()
        assert data["status"] == "classified"
        assert data["classification"] == "newsletter"

        again = client.post(f"/api/classify/single/{email_id}").json()
        assert again["status"] == "already_classified"

    def test_batch_classify(self, client, context):
        context.storage.insert_email("<new@x>", "a@x", "Spam offer")
        assert client.post("/api/classify").json() == {"status": "started"}
        context.join_jobs(timeout=10)
        assert context.storage.unclassified_email_ids() == []

    def test_stale_cancel_does_not_block_next_classify(self, client, context):
        client.post("/api/classify/cancel")
        context.storage.insert_email("<new@x>", "a@x", "Spam offer")

        assert client.post("/api/classify").json() == {"status": "started"}
        context.join_jobs(timeout=10)

        assert context.storage.unclassified_email_ids() == []
        assert client.get("/api/classify/status").json()["phase"] == "Complete"

    def test_import(self, client, context):
        assert client.post("/api/import").json() == {"status": "started"}
        context.join_jobs(timeout=10)

        status = client.get("/api/import/status").json()
        assert status["phase"] == "Complete"
        assert status["emails_imported"] == 3


class TestTrash:
    def test_trash_spam(self, client, context):
        run_scan(client, context)
        data = client.post("/api/emails/trash-spam").json()
        assert data["trashed_count"] == 1
        assert context.source.trashed == ["<msg-1@example.com>"]

    def test_trash_single(self, client, context):
        run_scan(client, context)
        email_id = client.get("/api/emails", params={"classification": "keep"}).json()[0]["id"]

        assert client.post(f"/api/emails/{email_id}/trash").status_code == 200
        assert client.post(f"/api/emails/{email_id}/trash").status_code == 400

    def test_trash_missing(self, client):
        assert client.post("/api/emails/999/trash").status_code == 404


class TestQueueEndpoints:
    def test_start_and_stop(self, client, context):
        data = client.post("/api/queue/start").json()
        assert data == {"status": "started", "workers": 1}

        stats = client.get("/api/queue/stats").json()
        assert stats["running"] is True
        assert [w["id"] for w in stats["workers"]] == ["worker-0"]

        client.post("/api/queue/stop")
        assert client.get("/api/queue/stats").json()["running"] is False

    def test_queue_mode_scan_then_drain(self, client, context):
        client.put("/api/settings/queue_enabled", json={"value": "true"})
        run_scan(client, context)

        items = client.get("/api/queue/items", params={"status": "pending"}).json()
        assert len(items) == 3

        client.post("/api/queue/start")
        while context.pool.tick("worker-0"):
            pass

        assert client.get("/api/queue/stats").json()["completed"] == 3
        assert client.delete("/api/queue/clear").json()["deleted"] == 3

    def test_recover(self, client, context):
        context.storage.enqueue(make_message(9))
        context.storage.claim_next("worker-7")
        data = client.post("/api/queue/recover", params={"older_than": 0}).json()
        assert data["status"] == "recovered"


class TestSettings:
    def test_defaults_seeded(self, client):
        settings = client.get("/api/settings").json()
        assert settings["worker_count"] == "1"
        assert settings["queue_enabled"] == "false"

    def test_worker_count_resizes_running_pool(self, client, context):
        client.post("/api/queue/start")

        response = client.put("/api/settings/worker_count", json={"value": "3"})

        assert response.status_code == 200
        assert [w.id for w in context.pool.workers] == ["worker-0", "worker-1", "worker-2"]

    def test_invalid_values_rejected(self, client):
        assert client.put("/api/settings/worker_count", json={"value": "-2"}).status_code == 400
        assert client.put("/api/settings/queue_enabled", json={"value": "yes"}).status_code == 400

    def test_unknown_setting(self, client):
        assert client.put("/api/settings/colour", json={"value": "red"}).status_code == 404

    def test_model_setting_reaches_classifier(self, tmp_path):
        config = Config(
            database_path=str(tmp_path / "model.db"),
            logging=LoggingConfig(audit_file=None),
        )
        context = ServiceContext(config, source=FakeMailSource(), run_threads=False)
        try:
            assert context.classifier.current_model() == config.ollama.model
            with TestClient(create_app(context)) as test_client:
                response = test_client.put("/api/settings/ollama_model", json={"value": "llama3.2:3b"})
            assert response.status_code == 200
            assert context.classifier.current_model() == "llama3.2:3b"
        finally:
            context.close()


class TestUnsubscribeEndpoints:
    def test_pending_and_manual_complete(self, client, context):
        run_scan(client, context)

        pending = client.get("/api/unsubscribe/pending").json()
        assert len(pending) == 1
        assert pending[0]["method"] == "mailto"

        task_id = pending[0]["id"]
        assert client.post(f"/api/unsubscribe/{task_id}/complete").status_code == 200
        assert client.get("/api/unsubscribe/pending").json() == []

    def test_execute_mailto_reports_manual_step(self, client, context):
        run_scan(client, context)
        task_id = client.get("/api/unsubscribe/pending").json()[0]["id"]

        data = client.post(f"/api/unsubscribe/{task_id}/execute").json()

        assert data["success"] is False
        assert data["next_action"] == "Send email to: leave@news.test"

    def test_execute_missing_task(self, client):
        assert client.post("/api/unsubscribe/42/execute").status_code == 404

    def test_execute_all_without_tasks(self, client):
        assert client.post("/api/unsubscribe/execute-all").json()["status"] == "no_pending"


def test_status_websocket_sends_snapshot(client):
    with client.websocket_connect("/ws/status") as websocket:
        message = websocket.receive_json()
        assert message["type"] == "scan_status"
        assert message["data"]["phase"] == "idle"

        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"
