"""Configuration management for TaskHub.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.
"""

from __future__ import annotations

import json
import logging
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .models import ConflictStrategy
from .validation import ValidationError, validate_strategy

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_CONFIG_DIR"]

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "taskhub"

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "server_url": "http://127.0.0.1:5000",
    "auto_sync": False,
    "interval_seconds": 300,
    "batch_size": 100,
    "max_retry_attempts": 3,
    "default_conflict_strategy": ConflictStrategy.SERVER_WINS.value,
    "request_timeout": 30,
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json inside config_dir
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/taskhub/
        """
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "taskhub.db"),
            "client_id": uuid7().hex,
            "device_name": socket.gethostname() or "taskhub-client",
            "user_id": uuid7().hex,
            "server": {
                "host": "127.0.0.1",
                "port": 5000,
                "database_file": str(self.config_dir / "server.db"),
            },
            "sync": dict(DEFAULT_SYNC_CONFIG),
        }

    def load_config(self) -> Dict[str, Any]:
        """Load config.json, filling in any missing keys from defaults.

        The file is rewritten when defaults had to be added, so generated
        values such as client_id stay stable across runs.
        """
        defaults = self._defaults()
        data: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring unreadable config file {self.config_file}: {e}")
                data = {}

        changed = not self.config_file.exists()
        for key, value in defaults.items():
            if key not in data:
                data[key] = value
                changed = True
            elif isinstance(value, dict) and isinstance(data[key], dict):
                for sub_key, sub_value in value.items():
                    if sub_key not in data[key]:
                        data[key][sub_key] = sub_value
                        changed = True

        if changed:
            self.save_config(data)
        return data

    def save_config(self, config: Dict[str, Any]) -> None:
        """Write the configuration to config.json."""
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        self.config_data = config

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.config_data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value and save to file."""
        self.config_data[key] = value
        self.save_config(self.config_data)

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    # ===== Identity =====

    def get_client_id(self) -> str:
        """Get this installation's sync client ID (UUID7 hex)."""
        return self.config_data["client_id"]

    def get_user_id(self) -> str:
        return self.config_data["user_id"]

    def get_device_name(self) -> str:
        """Get the human-readable device name."""
        return self.config_data["device_name"]

    def set_device_name(self, name: str) -> None:
        if not name or not name.strip():
            raise ValidationError("device_name", "cannot be empty")
        self.set("device_name", name.strip())

    # ===== Sync Configuration =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get sync configuration."""
        return dict(self.config_data["sync"])

    def get_server_url(self) -> str:
        return self.config_data["sync"]["server_url"].rstrip("/")

    def set_sync_value(self, key: str, value: Any) -> None:
        """Set one key of the sync section after validating it.

        Raises:
            ValidationError: If the key is unknown or the value is invalid
        """
        if key not in DEFAULT_SYNC_CONFIG:
            raise ValidationError("sync", f"unknown setting '{key}'")
        if key in ("interval_seconds", "batch_size", "request_timeout"):
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValidationError(key, "must be a positive integer")
        elif key == "max_retry_attempts":
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(key, "must be a non-negative integer")
        elif key == "default_conflict_strategy":
            validate_strategy(value)
        elif key == "auto_sync":
            if not isinstance(value, bool):
                raise ValidationError(key, "must be true or false")
        elif key == "server_url":
            if not isinstance(value, str) or not value.startswith(("http://", "https://")):
                raise ValidationError(key, "must be an http:// or https:// URL")
        self.config_data["sync"][key] = value
        self.save_config(self.config_data)

    def get_server_config(self) -> Dict[str, Any]:
        """Get the settings used when running the sync/API server."""
        return dict(self.config_data["server"])
