"""Shared test fixtures."""

from __future__ import annotations

import pytest

from shellpilot.config import AppConfig, LoggingConfig, ShellConfig, StorageConfig


@pytest.fixture
def app_config(tmp_path):
    """Create a test configuration."""
    target = tmp_path / "project"
    target.mkdir()
    return AppConfig(
        shell=ShellConfig(target_dir=str(target), max_output=4096, restore_visibility_delay_ms=50),
        storage=StorageConfig(db_path=str(tmp_path / "test.db")),
        logging=LoggingConfig(level="DEBUG", file=str(tmp_path / "test.log")),
    )
