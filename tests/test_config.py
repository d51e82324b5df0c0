"""Tests for configuration module."""

import pytest
import tempfile
from pydantic import ValidationError

from mailsweep.config import (
    BatchConfig,
    Config,
    ImapConfig,
    OllamaConfig,
    QueueConfig,
    load_config,
)


class TestImapConfig:
    """Tests for IMAP configuration."""

    def test_default_port(self):
        config = ImapConfig(host="mail.example.com", username="user")
        assert config.port == 993
        assert config.trash_folder == "Trash"

    def test_get_password_direct(self):
        config = ImapConfig(
            host="mail.example.com",
            username="user",
            password="secret123",
        )
        assert config.get_password() == "secret123"

    def test_get_password_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_MAIL_PASS", "env_secret")
        config = ImapConfig(
            host="mail.example.com",
            username="user",
            password="ignored",
            password_env="TEST_MAIL_PASS",
        )
        assert config.get_password() == "env_secret"

    def test_skip_folders_default(self):
        config = ImapConfig(host="mail.example.com", username="user")
        assert "[Gmail]/All Mail" in config.skip_folders
        assert "INBOX" not in config.skip_folders


class TestOllamaConfig:
    """Tests for Ollama configuration."""

    def test_defaults(self):
        config = OllamaConfig()
        assert config.base_url == "http://localhost:11434"
        assert config.timeout == 60.0
        assert config.batch_timeout == 120.0


class TestQueueAndBatchConfig:
    def test_queue_defaults(self):
        config = QueueConfig()
        assert config.enabled is False
        assert config.tick_interval == 1.0
        assert config.stale_after == 900.0

    def test_batch_defaults(self):
        config = BatchConfig()
        assert config.emails_per_batch == 8
        assert (config.min_concurrency, config.initial_concurrency, config.max_concurrency) == (1, 12, 16)
        assert config.increase_step == 2
        assert config.cooldown == 0.5

    def test_initial_concurrency_outside_bounds_rejected(self):
        with pytest.raises(ValidationError):
            BatchConfig(initial_concurrency=20, max_concurrency=16)

    def test_min_above_max_rejected(self):
        with pytest.raises(ValidationError):
            BatchConfig(min_concurrency=8, initial_concurrency=8, max_concurrency=4)

    def test_negative_worker_count_rejected(self):
        with pytest.raises(ValidationError):
            QueueConfig(worker_count=-1)


class TestConfig:
    """Tests for main configuration."""

    def test_load_from_yaml(self):
        yaml_content = """
imap:
  host: mail.example.com
  username: testuser
  password: testpass

queue:
  enabled: true
  worker_count: 3

batch:
  emails_per_batch: 4

ollama:
  model: llama3.2
"""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yml", delete=False) as f:
            f.write(yaml_content)
            f.flush()

            config = load_config(f.name)

            assert config.imap.host == "mail.example.com"
            assert config.imap.username == "testuser"
            assert config.queue.enabled is True
            assert config.queue.worker_count == 3
            assert config.batch.emails_per_batch == 4
            assert config.ollama.model == "llama3.2"

    def test_missing_config_file(self):
        with pytest.raises(FileNotFoundError):
            load_config("/nonexistent/path/config.yml")

    def test_empty_config_uses_defaults(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yml", delete=False) as f:
            f.write("")
            f.flush()

            config = load_config(f.name)

            assert config.imap is None
            assert config.database_path == "mailsweep.db"
            assert config.scan_limit == 50

    def test_default_settings(self):
        config = Config(queue=QueueConfig(enabled=True, worker_count=4))
        settings = config.default_settings()
        assert settings["queue_enabled"] == "true"
        assert settings["worker_count"] == "4"
        assert settings["ollama_model"] == config.ollama.model
