"""Unit tests for configuration management.

Tests all methods in taskhub/core/config.py including:
- Config initialization and generated identity
- Loading and saving config
- Sync settings validation
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from taskhub.core.config import DEFAULT_SYNC_CONFIG, Config
from taskhub.core.validation import ValidationError


class TestConfigInit:
    """Test configuration initialization."""

    def test_creates_custom_config_dir(self, tmp_path: Path) -> None:
        """Test that a missing config directory is created."""
        config_dir = tmp_path / "nested" / "taskhub"
        config = Config(config_dir=config_dir)
        assert config.get_config_dir() == config_dir
        assert config_dir.is_dir()

    def test_creates_config_file(self, test_config_dir: Path) -> None:
        config = Config(config_dir=test_config_dir)
        assert config.config_file.exists()
        assert config.config_file.name == "config.json"

    def test_generates_identity(self, test_config: Config) -> None:
        assert len(test_config.get_client_id()) == 32
        assert len(test_config.get_user_id()) == 32
        assert test_config.get_device_name()

    def test_identity_stable_across_loads(self, test_config_dir: Path) -> None:
        """Generated IDs are written out and reused."""
        first = Config(config_dir=test_config_dir)
        second = Config(config_dir=test_config_dir)
        assert first.get_client_id() == second.get_client_id()
        assert first.get_user_id() == second.get_user_id()


class TestLoadConfig:
    """Test configuration loading."""

    def test_loads_existing_values(self, test_config_dir: Path) -> None:
        config_file = test_config_dir / "config.json"
        with open(config_file, "w") as f:
            json.dump({"device_name": "laptop", "sync": {"batch_size": 25}}, f)

        config = Config(config_dir=test_config_dir)
        assert config.get_device_name() == "laptop"
        sync = config.get_sync_config()
        assert sync["batch_size"] == 25
        # Missing nested keys are filled from defaults
        assert sync["max_retry_attempts"] == DEFAULT_SYNC_CONFIG["max_retry_attempts"]

    def test_missing_keys_written_back(self, test_config_dir: Path) -> None:
        config_file = test_config_dir / "config.json"
        with open(config_file, "w") as f:
            json.dump({"device_name": "laptop"}, f)

        Config(config_dir=test_config_dir)
        with open(config_file) as f:
            saved = json.load(f)
        assert saved["device_name"] == "laptop"
        assert "client_id" in saved
        assert "sync" in saved

    def test_handles_invalid_json(self, test_config_dir: Path) -> None:
        """Invalid JSON falls back to the default config."""
        config_file = test_config_dir / "config.json"
        with open(config_file, "w") as f:
            f.write("{invalid json")

        config = Config(config_dir=test_config_dir)
        assert config.get("database_file") == str(test_config_dir / "taskhub.db")


class TestGetSet:
    def test_get_default(self, test_config: Config) -> None:
        assert test_config.get("nonexistent", "fallback") == "fallback"

    def test_set_persists(self, test_config: Config, test_config_dir: Path) -> None:
        test_config.set("database_file", "/tmp/other.db")
        reloaded = Config(config_dir=test_config_dir)
        assert reloaded.get("database_file") == "/tmp/other.db"

    def test_device_name(self, test_config: Config) -> None:
        test_config.set_device_name("  desk  ")
        assert test_config.get_device_name() == "desk"
        with pytest.raises(ValidationError):
            test_config.set_device_name(" ")


class TestSyncSettings:
    """Test the sync section."""

    def test_defaults(self, test_config: Config) -> None:
        sync = test_config.get_sync_config()
        assert sync["auto_sync"] is False
        assert sync["default_conflict_strategy"] == "server_wins"
        assert test_config.get_server_url() == "http://127.0.0.1:5000"

    def test_server_url_trailing_slash(self, test_config: Config) -> None:
        test_config.set_sync_value("server_url", "https://tasks.example.com/")
        assert test_config.get_server_url() == "https://tasks.example.com"

    def test_set_persists(self, test_config: Config, test_config_dir: Path) -> None:
        test_config.set_sync_value("batch_size", 10)
        test_config.set_sync_value("auto_sync", True)
        sync = Config(config_dir=test_config_dir).get_sync_config()
        assert sync["batch_size"] == 10
        assert sync["auto_sync"] is True

    def test_get_sync_config_is_copy(self, test_config: Config) -> None:
        test_config.get_sync_config()["batch_size"] = 1
        assert test_config.get_sync_config()["batch_size"] == 100

    @pytest.mark.parametrize("key,value", [
        ("batch_size", 0),
        ("interval_seconds", True),
        ("max_retry_attempts", -1),
        ("default_conflict_strategy", "coin_flip"),
        ("auto_sync", "yes"),
        ("server_url", "ftp://host"),
        ("unknown", 1),
    ])
    def test_rejects_invalid(self, test_config: Config, key: str, value: object) -> None:
        with pytest.raises(ValidationError):
            test_config.set_sync_value(key, value)

    def test_server_config(self, test_config: Config, test_config_dir: Path) -> None:
        server = test_config.get_server_config()
        assert server["port"] == 5000
        assert server["database_file"] == str(test_config_dir / "server.db")
