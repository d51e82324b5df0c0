"""Configuration management for mailsweep."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator


class ImapConfig(BaseModel):
    """IMAP server configuration."""

    host: str
    port: int = 993
    username: str
    password: str = Field(default="", repr=False)
    password_env: str | None = Field(
        default=None,
        description="Environment variable to read the password from (overrides password)",
    )
    timeout: int = 30
    inbox_folder: str = "INBOX"
    trash_folder: str = "Trash"
    skip_folders: list[str] = Field(
        default_factory=lambda: [
            "[Gmail]/All Mail",
            "[Gmail]/Important",
            "[Gmail]/Starred",
            "[Gmail]/Trash",
            "[Gmail]/Spam",
            "[Gmail]/Drafts",
            "[Gmail]/Sent Mail",
            "Sent",
            "Sent Items",
            "Sent Messages",
        ],
        description="Folders skipped during a full import (duplicates or system folders)",
    )

    def get_password(self) -> str:
        """Resolve the password, preferring the environment variable if set."""
        if self.password_env:
            value = os.environ.get(self.password_env)
            if value:
                return value
        return self.password


class OllamaConfig(BaseModel):
    """Ollama configuration."""

    base_url: str = "http://localhost:11434"
    model: str = "qwen2.5:0.5b"
    timeout: float = Field(default=60.0, description="Timeout for a single classification")
    batch_timeout: float = Field(default=120.0, description="Timeout for a batch classification")
    temperature: float = 0.1
    keep_alive: str = "30m"


class QueueConfig(BaseModel):
    """Durable queue and worker pool configuration."""

    enabled: bool = False
    worker_count: int = Field(default=1, ge=0)
    tick_interval: float = Field(default=1.0, gt=0)
    stale_after: float = Field(
        default=900.0,
        gt=0,
        description="Seconds after which a processing item without an owner is reclaimed",
    )


class BatchConfig(BaseModel):
    """Adaptive batch classification configuration."""

    emails_per_batch: int = Field(default=8, ge=1)
    initial_concurrency: int = Field(default=12, ge=1)
    min_concurrency: int = Field(default=1, ge=1)
    max_concurrency: int = Field(default=16, ge=1)
    increase_step: int = Field(default=2, ge=1)
    cooldown: float = Field(default=0.5, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> BatchConfig:
        if self.min_concurrency > self.max_concurrency:
            raise ValueError("min_concurrency must not exceed max_concurrency")
        if not self.min_concurrency <= self.initial_concurrency <= self.max_concurrency:
            raise ValueError("initial_concurrency must lie within [min_concurrency, max_concurrency]")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_file: str | None = None
    audit_file: str | None = "audit.jsonl"


class Config(BaseModel):
    """Main configuration."""

    imap: ImapConfig | None = None
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database_path: str = "mailsweep.db"
    use_mock_imap: bool = False
    scan_limit: int = Field(default=50, ge=1)

    def default_settings(self) -> dict[str, str]:
        """Runtime settings seeded into the settings table on first start."""
        return {
            "worker_count": str(self.queue.worker_count),
            "queue_enabled": "true" if self.queue.enabled else "false",
            "ollama_model": self.ollama.model,
        }


def load_config(config_path: str | Path) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        The validated configuration

    Raises:
        FileNotFoundError: If the file does not exist
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return Config(**data)
