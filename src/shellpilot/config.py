"""Configuration management using TOML + environment variables."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import tomli_w

CONFIG_DIR = Path.home() / ".shellpilot"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "shellpilot.log"


@dataclass
class SanitizationConfig:
    allowed_environment_variables: list[str] = field(default_factory=list)
    blocked_environment_variables: list[str] = field(default_factory=list)
    enable_environment_variable_redaction: bool = True


@dataclass
class ShellConfig:
    target_dir: str = "."
    interactive: bool = False
    terminal_width: int = 80
    terminal_height: int = 30
    show_color: bool = False
    pager: str = "cat"
    max_output: int = 10000
    restore_visibility_delay_ms: int = 300
    sanitization: SanitizationConfig = field(default_factory=SanitizationConfig)


@dataclass
class StorageConfig:
    db_path: str = "~/.shellpilot/history.db"


@dataclass
class LoggingConfig:
    level: str = "WARNING"
    file: str = "~/.shellpilot/shellpilot.log"


@dataclass
class AppConfig:
    shell: ShellConfig = field(default_factory=ShellConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_target_dir(self) -> str:
        return str(Path(self.shell.target_dir).expanduser().resolve())


def ensure_config_dir() -> None:
    """Create config directory with secure permissions."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    os.chmod(CONFIG_DIR, 0o700)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def load_config() -> AppConfig:
    """Load configuration from TOML file with env var overrides."""
    config = AppConfig()

    if CONFIG_FILE.exists():
        with open(CONFIG_FILE, "rb") as f:
            data = tomllib.load(f)

        shell = data.get("shell", {})
        config.shell.target_dir = shell.get("target_dir", config.shell.target_dir)
        config.shell.interactive = shell.get("interactive", config.shell.interactive)
        config.shell.terminal_width = shell.get("terminal_width", config.shell.terminal_width)
        config.shell.terminal_height = shell.get("terminal_height", config.shell.terminal_height)
        config.shell.show_color = shell.get("show_color", config.shell.show_color)
        config.shell.pager = shell.get("pager", config.shell.pager)
        config.shell.max_output = shell.get("max_output", config.shell.max_output)
        config.shell.restore_visibility_delay_ms = shell.get(
            "restore_visibility_delay_ms", config.shell.restore_visibility_delay_ms
        )

        sanitization = shell.get("sanitization", {})
        san = config.shell.sanitization
        san.allowed_environment_variables = sanitization.get(
            "allowed_environment_variables", san.allowed_environment_variables
        )
        san.blocked_environment_variables = sanitization.get(
            "blocked_environment_variables", san.blocked_environment_variables
        )
        san.enable_environment_variable_redaction = sanitization.get(
            "enable_environment_variable_redaction", san.enable_environment_variable_redaction
        )

        storage = data.get("storage", {})
        config.storage.db_path = storage.get("db_path", config.storage.db_path)

        logging_cfg = data.get("logging", {})
        config.logging.level = logging_cfg.get("level", config.logging.level)
        config.logging.file = logging_cfg.get("file", config.logging.file)

    # Environment variable overrides
    if env_target := os.environ.get("SHELLPILOT_TARGET_DIR"):
        config.shell.target_dir = env_target
    if env_interactive := os.environ.get("SHELLPILOT_INTERACTIVE"):
        config.shell.interactive = _parse_bool(env_interactive)
    if env_max_output := os.environ.get("SHELLPILOT_MAX_OUTPUT"):
        config.shell.max_output = int(env_max_output)
    if env_db := os.environ.get("SHELLPILOT_DB_PATH"):
        config.storage.db_path = env_db
    if env_log_level := os.environ.get("SHELLPILOT_LOG_LEVEL"):
        config.logging.level = env_log_level

    return config


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML file."""
    ensure_config_dir()

    san = config.shell.sanitization
    data = {
        "shell": {
            "target_dir": config.shell.target_dir,
            "interactive": config.shell.interactive,
            "terminal_width": config.shell.terminal_width,
            "terminal_height": config.shell.terminal_height,
            "show_color": config.shell.show_color,
            "pager": config.shell.pager,
            "max_output": config.shell.max_output,
            "restore_visibility_delay_ms": config.shell.restore_visibility_delay_ms,
            "sanitization": {
                "allowed_environment_variables": san.allowed_environment_variables,
                "blocked_environment_variables": san.blocked_environment_variables,
                "enable_environment_variable_redaction": san.enable_environment_variable_redaction,
            },
        },
        "storage": {
            "db_path": config.storage.db_path,
        },
        "logging": {
            "level": config.logging.level,
            "file": config.logging.file,
        },
    }

    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(CONFIG_FILE, 0o600)


# Global singleton
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or load the global config singleton."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Reset the global config (for testing)."""
    global _config
    _config = None
