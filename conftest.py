"""Pytest configuration and fixtures for avdpool tests.

CRITICAL: Protects the user's configuration from test modifications.
"""

import os
import shutil
from pathlib import Path

import pytest


@pytest.fixture(scope="session", autouse=True)
def protect_production_config():
    """Protect ~/.avdpool/config.toml from being modified by tests.

    Backs up the real config.toml before any tests run and restores it after
    all tests complete.
    """
    config_path = Path.home() / ".avdpool" / "config.toml"
    backup_path = Path.home() / ".avdpool" / ".config.toml.pytest-backup"

    config_existed = config_path.exists()
    if config_existed:
        shutil.copy2(config_path, backup_path)

    yield

    if config_existed and backup_path.exists():
        shutil.copy2(backup_path, config_path)
        backup_path.unlink()
    elif backup_path.exists():
        backup_path.unlink()


@pytest.fixture(scope="session", autouse=True)
def prevent_real_azure_operations():
    """Mark test mode so nothing reaches a real subscription by accident."""
    os.environ["AVDPOOL_TEST_MODE"] = "true"

    yield

    if "AVDPOOL_TEST_MODE" in os.environ:
        del os.environ["AVDPOOL_TEST_MODE"]


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point ConfigManager at a temporary ~/.avdpool.

    Example:
        def test_something(isolated_config):
            ConfigManager.save_config(config)  # writes under tmp_path
    """
    from avdpool.config_manager import ConfigManager

    config_dir = tmp_path / ".avdpool"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")
    return config_dir
