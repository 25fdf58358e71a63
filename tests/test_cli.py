"""Tests for CLI module."""

from __future__ import annotations

import sys

import pytest
from typer.testing import CliRunner

from shellpilot.cli import app
from shellpilot.config import AppConfig, ShellConfig, StorageConfig, save_config

runner = CliRunner()


@pytest.fixture
def cli_config(tmp_path, monkeypatch):
    """Point the CLI at an isolated config, database and log file."""
    import shellpilot.cli as cli_module
    import shellpilot.config as cfg_module

    config_file = tmp_path / "config.toml"
    log_file = tmp_path / "shellpilot.log"
    monkeypatch.setattr(cfg_module, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(cfg_module, "CONFIG_FILE", config_file)
    monkeypatch.setattr(cli_module, "CONFIG_FILE", config_file)
    monkeypatch.setattr(cli_module, "LOG_FILE", log_file)
    for name in ("SHELLPILOT_TARGET_DIR", "SHELLPILOT_INTERACTIVE", "SHELLPILOT_DB_PATH"):
        monkeypatch.delenv(name, raising=False)

    target = tmp_path / "project"
    target.mkdir()
    config = AppConfig(
        shell=ShellConfig(target_dir=str(target)),
        storage=StorageConfig(db_path=str(tmp_path / "history.db")),
    )
    config.logging.file = str(log_file)
    save_config(config)
    return config


class TestCli:
    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "shellpilot v" in result.output

    def test_config_without_setup(self, tmp_path, monkeypatch):
        import shellpilot.cli as cli_module

        monkeypatch.setattr(cli_module, "CONFIG_FILE", tmp_path / "nonexistent.toml")

        result = runner.invoke(app, ["config"])
        assert result.exit_code == 1

    def test_config_show(self, cli_config):
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Configuration" in result.output

    def test_config_set(self, cli_config):
        result = runner.invoke(app, ["config", "shell.pager", "less"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["config", "sanitization.allowed_environment_variables", "A_TOKEN, B_KEY"])
        assert result.exit_code == 0

        from shellpilot.config import load_config

        loaded = load_config()
        assert loaded.shell.pager == "less"
        assert loaded.shell.sanitization.allowed_environment_variables == ["A_TOKEN", "B_KEY"]

    def test_config_unknown_key(self, cli_config):
        result = runner.invoke(app, ["config", "shell.nope", "1"])
        assert result.exit_code == 1

    def test_config_bad_int(self, cli_config):
        result = runner.invoke(app, ["config", "shell.max_output", "lots"])
        assert result.exit_code == 1

    def test_logs_no_file(self, tmp_path, monkeypatch):
        import shellpilot.cli as cli_module

        monkeypatch.setattr(cli_module, "LOG_FILE", tmp_path / "nonexistent.log")

        result = runner.invoke(app, ["logs"])
        assert result.exit_code == 0
        assert "no log" in result.output.lower()

    def test_history_empty(self, cli_config):
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "no command history" in result.output.lower()

    def test_run_missing_directory(self, cli_config, tmp_path):
        result = runner.invoke(app, ["run", "echo hi", "--cwd", str(tmp_path / "missing")])
        assert result.exit_code == 1


@pytest.mark.skipif(sys.platform == "win32", reason="needs bash")
class TestRunCommand:
    def test_run_success_and_history(self, cli_config):
        result = runner.invoke(app, ["run", "echo hi42"])
        assert result.exit_code == 0
        assert "hi42" in result.output
        assert "Success" in result.output

        result = runner.invoke(app, ["history"])
        assert result.exit_code == 0
        assert "hi42" in result.output

    def test_run_failure(self, cli_config):
        result = runner.invoke(app, ["run", "exit 7"])
        assert result.exit_code == 1
        assert "Command exited with code 7." in result.output
