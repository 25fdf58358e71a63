"""Tests for configuration module."""

from __future__ import annotations

import pytest

from shellpilot.config import (
    AppConfig,
    SanitizationConfig,
    ShellConfig,
    get_config,
    load_config,
    reset_config,
    save_config,
)


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    import shellpilot.config as cfg_module

    config_file = tmp_path / "config.toml"
    monkeypatch.setattr(cfg_module, "CONFIG_FILE", config_file)
    monkeypatch.setattr(cfg_module, "CONFIG_DIR", tmp_path)
    for name in (
        "SHELLPILOT_TARGET_DIR",
        "SHELLPILOT_INTERACTIVE",
        "SHELLPILOT_MAX_OUTPUT",
        "SHELLPILOT_DB_PATH",
        "SHELLPILOT_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield config_file
    reset_config()


class TestAppConfig:
    def test_defaults(self):
        config = AppConfig()
        assert config.shell.target_dir == "."
        assert config.shell.interactive is False
        assert config.shell.pager == "cat"
        assert config.shell.max_output == 10000
        assert config.shell.restore_visibility_delay_ms == 300
        assert config.shell.sanitization.enable_environment_variable_redaction is True
        assert config.logging.level == "WARNING"

    def test_target_dir_is_resolved(self, tmp_path):
        config = AppConfig(shell=ShellConfig(target_dir=str(tmp_path / "a" / ".." / "b")))
        assert config.get_target_dir() == str((tmp_path / "b").resolve())

    def test_save_and_load(self, isolated_config):
        config = AppConfig(
            shell=ShellConfig(
                target_dir="/tmp/test",
                interactive=True,
                pager="less",
                max_output=500,
                sanitization=SanitizationConfig(
                    allowed_environment_variables=["MY_TOKEN"],
                    blocked_environment_variables=["HOME"],
                    enable_environment_variable_redaction=False,
                ),
            ),
        )

        save_config(config)
        assert isolated_config.exists()
        assert oct(isolated_config.stat().st_mode & 0o777) == "0o600"

        loaded = load_config()
        assert loaded.shell.target_dir == "/tmp/test"
        assert loaded.shell.interactive is True
        assert loaded.shell.pager == "less"
        assert loaded.shell.max_output == 500
        assert loaded.shell.sanitization.allowed_environment_variables == ["MY_TOKEN"]
        assert loaded.shell.sanitization.blocked_environment_variables == ["HOME"]
        assert loaded.shell.sanitization.enable_environment_variable_redaction is False

    def test_missing_file_gives_defaults(self, isolated_config):
        loaded = load_config()
        assert loaded.shell.target_dir == "."

    def test_env_overrides(self, isolated_config, monkeypatch):
        save_config(AppConfig(shell=ShellConfig(target_dir="/from/file")))

        monkeypatch.setenv("SHELLPILOT_TARGET_DIR", "/from/env")
        monkeypatch.setenv("SHELLPILOT_INTERACTIVE", "yes")
        monkeypatch.setenv("SHELLPILOT_MAX_OUTPUT", "123")
        monkeypatch.setenv("SHELLPILOT_DB_PATH", "/tmp/h.db")
        monkeypatch.setenv("SHELLPILOT_LOG_LEVEL", "DEBUG")

        loaded = load_config()
        assert loaded.shell.target_dir == "/from/env"
        assert loaded.shell.interactive is True
        assert loaded.shell.max_output == 123
        assert loaded.storage.db_path == "/tmp/h.db"
        assert loaded.logging.level == "DEBUG"

    def test_singleton(self, isolated_config):
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first
