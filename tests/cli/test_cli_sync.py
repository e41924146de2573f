"""CLI tests for sync commands that need no running server.

The configured server URL points at a closed port, so every network call
fails fast and the commands report the outage.
"""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Any, Dict

import pytest

from taskhub.core.config import Config
from taskhub.core.local_store import LocalStore
from taskhub.main import create_parser, dispatch

SERVER_TIME = "2024-05-01T12:00:00.000000Z"


def run_cli(config_dir: Path, *argv: str) -> int:
    args = create_parser().parse_args(["-d", str(config_dir), "cli", *argv])
    return dispatch(args.config_dir, args)


def closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def offline_config(test_config_dir: Path) -> Config:
    """Config whose server URL has nothing listening behind it."""
    config = Config(config_dir=test_config_dir)
    config.set_sync_value("server_url", f"http://127.0.0.1:{closed_port()}")
    config.set_sync_value("request_timeout", 2)
    return config


def open_store(config: Config) -> LocalStore:
    return LocalStore(Path(config.get("database_file")), config.get_client_id(), config.get_user_id())


def seed_conflict(config: Config, server_conflict_id: str | None = None) -> Dict[str, Any]:
    """Create a project with an unsent rename and a conflict over it."""
    store = open_store(config)
    try:
        project = store.create_project({"name": "Local name"})
        change_ids = [c["id"] for c in store.get_pending_changes(limit=-1)
                      if c["entity_id"] == project["id"]]
        return store.add_conflict(
            "project", project["id"],
            local_data=project,
            server_data=dict(project, name="Server name"),
            local_timestamp=project["updated_at"],
            server_timestamp=SERVER_TIME,
            server_conflict_id=server_conflict_id,
            change_ids=change_ids,
        )
    finally:
        store.close()


@pytest.mark.cli
class TestSyncStatus:
    def test_status_offline(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        config_dir = offline_config.get_config_dir()
        assert run_cli(config_dir, "sync", "status") == 0
        out = capsys.readouterr().out
        assert f"Client ID: {offline_config.get_client_id()}" in out
        assert "(offline)" in out
        assert "Last Sync: never" in out
        assert "Pending Changes: 0" in out

    def test_status_json_counts(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        config_dir = offline_config.get_config_dir()
        run_cli(config_dir, "new-project", "Website")
        capsys.readouterr()

        assert run_cli(config_dir, "--format", "json", "sync", "status") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["online"] is False
        assert status["changes"]["pending"] == 2
        assert status["device_name"] == offline_config.get_device_name()

    def test_no_sync_command(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(offline_config.get_config_dir(), "sync") == 1
        assert "No sync command specified" in capsys.readouterr().err


@pytest.mark.cli
class TestSyncOffline:
    """Sync commands while the server cannot be reached."""

    def test_sync_now_fails_and_keeps_changes(
        self, offline_config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config_dir = offline_config.get_config_dir()
        run_cli(config_dir, "new-project", "Website")
        capsys.readouterr()

        assert run_cli(config_dir, "--format", "json", "sync", "now") == 1
        result = json.loads(capsys.readouterr().out)
        assert result["success"] is False
        assert result["pushed"] == 0
        assert result["errors"]

        store = open_store(offline_config)
        try:
            assert len(store.get_pending_changes(limit=-1)) == 2
        finally:
            store.close()

    def test_push_text_output(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        config_dir = offline_config.get_config_dir()
        run_cli(config_dir, "new-project", "Website")
        capsys.readouterr()

        assert run_cli(config_dir, "sync", "push") == 1
        captured = capsys.readouterr()
        assert "Pushed: 0" in captured.out
        assert "Error:" in captured.err

    def test_push_help_mentions_pulled_changes(
        self, offline_config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as exc_info:
            run_cli(offline_config.get_config_dir(), "sync", "--help")
        assert exc_info.value.code == 0
        out = " ".join(capsys.readouterr().out.split())
        assert "Push local changes (applies returned server changes)" in out
        assert "Push local changes only" not in out

    def test_pull_fails(self, offline_config: Config) -> None:
        assert run_cli(offline_config.get_config_dir(), "sync", "pull") == 1

    def test_retry_failed_with_nothing_failed(self, offline_config: Config) -> None:
        assert run_cli(offline_config.get_config_dir(), "sync", "retry-failed") == 0


@pytest.mark.cli
class TestSyncConflicts:
    def test_no_conflicts(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(offline_config.get_config_dir(), "sync", "conflicts") == 0
        assert "No unresolved conflicts." in capsys.readouterr().out

    def test_lists_conflict(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        conflict = seed_conflict(offline_config)
        assert run_cli(offline_config.get_config_dir(), "sync", "conflicts") == 0
        out = capsys.readouterr().out
        assert "Unresolved Conflicts (1)" in out
        assert f"[{conflict['id'][:8]}] project" in out
        assert "(local)" in out

    def test_lists_conflict_with_diff(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        seed_conflict(offline_config)
        assert run_cli(offline_config.get_config_dir(), "sync", "conflicts") == 0
        out = capsys.readouterr().out
        assert "--- Client" in out
        assert "+++ Server" in out
        assert '-  "name": "Local name",' in out
        assert '+  "name": "Server name",' in out

    def test_resolve_local_server_wins(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        conflict = seed_conflict(offline_config)
        config_dir = offline_config.get_config_dir()

        assert run_cli(config_dir, "sync", "resolve", conflict["id"], "server_wins") == 0
        assert "Resolved conflict" in capsys.readouterr().out

        store = open_store(offline_config)
        try:
            assert store.get_project(conflict["entity_id"])["name"] == "Server name"
            assert store.get_conflicts() == []
            pending = store.get_pending_changes(limit=-1)
            assert [c["entity_type"] for c in pending] == ["project_member"]
        finally:
            store.close()

    def test_resolve_manual_with_data(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        conflict = seed_conflict(offline_config)
        config_dir = offline_config.get_config_dir()

        assert run_cli(
            config_dir, "sync", "resolve", conflict["id"], "manual", "--data", '{"name": "Agreed name"}'
        ) == 0

        store = open_store(offline_config)
        try:
            project = store.get_project(conflict["entity_id"])
            assert project["name"] == "Agreed name"
            assert project["is_dirty"] is True
            pending = [c for c in store.get_pending_changes(limit=-1) if c["entity_id"] == project["id"]]
            assert [c["operation"] for c in pending] == ["update"]
        finally:
            store.close()

    def test_resolve_manual_without_data(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        conflict = seed_conflict(offline_config)
        assert run_cli(offline_config.get_config_dir(), "sync", "resolve", conflict["id"], "manual") == 1
        assert "Invalid custom_data" in capsys.readouterr().err

    def test_resolve_bad_json(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        conflict = seed_conflict(offline_config)
        assert run_cli(
            offline_config.get_config_dir(), "sync", "resolve", conflict["id"], "manual", "--data", "{oops"
        ) == 1
        assert "--data is not valid JSON" in capsys.readouterr().err

    def test_resolve_unknown(self, offline_config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(offline_config.get_config_dir(), "sync", "resolve", "ffff", "server_wins") == 1
        assert "not found" in capsys.readouterr().err

    def test_resolve_server_conflict_offline(
        self, offline_config: Config, capsys: pytest.CaptureFixture[str]
    ) -> None:
        conflict = seed_conflict(offline_config, server_conflict_id="a" * 32)
        assert run_cli(offline_config.get_config_dir(), "sync", "resolve", conflict["id"], "client_wins") == 1
        assert "Connection failed" in capsys.readouterr().err

        store = open_store(offline_config)
        try:
            assert len(store.get_conflicts()) == 1
        finally:
            store.close()
