"""Tests for the command-line interface."""

import pytest
import yaml
from click.testing import CliRunner

from mailsweep.cli import cli
from mailsweep.storage import Storage


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "use_mock_imap": True,
                "database_path": str(tmp_path / "cli.db"),
                "logging": {"level": "WARNING", "audit_file": str(tmp_path / "audit.jsonl")},
            }
        )
    )
    return str(path)


def db(config_file):
    with open(config_file, encoding="utf-8") as f:
        return Storage(yaml.safe_load(f)["database_path"])


class TestSettingsCommands:
    def test_set_and_show(self, runner, config_file):
        result = runner.invoke(cli, ["set", "--config", config_file, "worker_count", "3"])
        assert result.exit_code == 0
        assert "worker_count = 3" in result.output

        result = runner.invoke(cli, ["queue", "stats", "--config", config_file])
        assert result.exit_code == 0
        assert "worker_count=3" in result.output

    def test_invalid_value_rejected(self, runner, config_file):
        result = runner.invoke(cli, ["set", "--config", config_file, "queue_enabled", "maybe"])
        assert result.exit_code == 1
        assert "queue_enabled must be" in result.output

    def test_unknown_key_rejected(self, runner, config_file):
        result = runner.invoke(cli, ["set", "--config", config_file, "colour", "red"])
        assert result.exit_code == 2


class TestWorkflowCommands:
    def test_queue_mode_scan(self, runner, config_file):
        runner.invoke(cli, ["set", "--config", config_file, "queue_enabled", "true"])

        result = runner.invoke(cli, ["scan", "--config", config_file, "--limit", "4"])

        assert result.exit_code == 0, result.output
        assert "Messages Queued" in result.output
        assert db(config_file).queue_stats()["pending"] == 4

    def test_import(self, runner, config_file):
        result = runner.invoke(cli, ["import", "--config", config_file])

        assert result.exit_code == 0, result.output
        assert "15 imported from 1 folder(s)" in result.output
        assert len(db(config_file).unclassified_email_ids()) == 15

    def test_queue_clear_and_recover(self, runner, config_file):
        result = runner.invoke(cli, ["queue", "clear", "--config", config_file, "--status", "pending"])
        assert result.exit_code == 0
        assert "Deleted 0 pending item(s)" in result.output

        result = runner.invoke(cli, ["queue", "recover", "--config", config_file, "--older-than", "0"])
        assert result.exit_code == 0
        assert "Recovered 0 item(s)" in result.output

    def test_stats(self, runner, config_file):
        result = runner.invoke(cli, ["stats", "--config", config_file])
        assert result.exit_code == 0
        assert "total emails" in result.output

    def test_trash_spam_without_spam(self, runner, config_file):
        result = runner.invoke(cli, ["trash-spam", "--config", config_file, "--yes"])
        assert result.exit_code == 0
        assert "No spam to trash" in result.output

    def test_unsubscribe_list_empty(self, runner, config_file):
        result = runner.invoke(cli, ["unsubscribe", "--config", config_file])
        assert result.exit_code == 0
        assert "Pending Unsubscribes (0)" in result.output


class TestInitConfig:
    def test_writes_loadable_sample(self, runner, tmp_path):
        output = tmp_path / "sample.yml"

        result = runner.invoke(cli, ["init-config", str(output)])

        assert result.exit_code == 0
        data = yaml.safe_load(output.read_text())
        assert data["queue"]["stale_after"] == 900
        assert data["batch"]["max_concurrency"] == 16

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["stats", "--config", str(tmp_path / "nope.yml")])
        assert result.exit_code == 2
