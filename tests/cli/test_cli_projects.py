"""CLI tests for project and task commands.

Commands run in-process through the unified parser against a temporary
config directory, so each test works on its own local store.
"""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from taskhub.main import create_parser, dispatch

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def run_cli(config_dir: Path, *argv: str) -> int:
    args = create_parser().parse_args(["-d", str(config_dir), "cli", *argv])
    return dispatch(args.config_dir, args)


def run_json(capsys: pytest.CaptureFixture[str], config_dir: Path, *argv: str) -> Any:
    capsys.readouterr()
    assert run_cli(config_dir, "--format", "json", *argv) == 0
    return json.loads(capsys.readouterr().out)


@pytest.mark.cli
class TestCLIArguments:
    """Test argument parsing and dispatch."""

    def test_help_flag(self) -> None:
        result = subprocess.run(
            [sys.executable, "-m", "taskhub.main", "--help"],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
        )
        assert result.returncode == 0
        assert "usage:" in result.stdout.lower()
        assert "--config-dir" in result.stdout

    def test_no_interface_prints_help(self, test_config_dir: Path) -> None:
        result = subprocess.run(
            [sys.executable, "-m", "taskhub.main", "-d", str(test_config_dir)],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
        )
        assert result.returncode == 1
        assert "cli" in result.stdout
        assert "web" in result.stdout

    def test_no_cli_command(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(test_config_dir) == 1
        assert "No CLI command specified" in capsys.readouterr().err

    def test_invalid_status_rejected(self, test_config_dir: Path) -> None:
        with pytest.raises(SystemExit):
            run_cli(test_config_dir, "new-project", "X", "--status", "paused")

    def test_creates_local_database(self, test_config_dir: Path) -> None:
        assert run_cli(test_config_dir, "list-projects") == 0
        assert (test_config_dir / "taskhub.db").exists()


@pytest.mark.cli
class TestProjectCommands:
    """Test project commands."""

    def test_list_empty(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(test_config_dir, "list-projects") == 0
        assert "No projects found." in capsys.readouterr().out

    def test_new_and_list(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website", "--description", "Relaunch")
        assert project["name"] == "Website"
        assert project["description"] == "Relaunch"

        assert run_cli(test_config_dir, "list-projects") == 0
        out = capsys.readouterr().out
        assert project["id"] in out
        assert "Website *" in out

    def test_show_text(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        assert run_cli(test_config_dir, "show-project", project["id"]) == 0
        out = capsys.readouterr().out
        assert "Name: Website" in out
        assert "Members: 1" in out
        assert "(owner)" in out
        assert "Not synced yet" in out

    def test_show_json_includes_members(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        shown = run_json(capsys, test_config_dir, "show-project", project["id"])
        assert len(shown["members"]) == 1
        assert shown["members"][0]["role"] == "owner"

    def test_show_unknown(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(test_config_dir, "show-project", "f" * 32) == 1
        assert "not found" in capsys.readouterr().err

    def test_edit(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        edited = run_json(capsys, test_config_dir, "edit-project", project["id"], "--status", "on_hold")
        assert edited["status"] == "on_hold"
        assert edited["name"] == "Website"

    def test_edit_nothing(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        assert run_cli(test_config_dir, "edit-project", project["id"]) == 1
        assert "Nothing to change" in capsys.readouterr().err

    def test_edit_invalid_value(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        assert run_cli(test_config_dir, "edit-project", project["id"], "--name", "  ") == 1
        assert "Invalid name" in capsys.readouterr().err

    def test_delete(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        project = run_json(capsys, test_config_dir, "new-project", "Website")
        assert run_cli(test_config_dir, "delete-project", project["id"]) == 0
        assert run_json(capsys, test_config_dir, "list-projects") == []
        assert run_cli(test_config_dir, "delete-project", project["id"]) == 1


@pytest.mark.cli
class TestTaskCommands:
    """Test task commands."""

    @pytest.fixture
    def project_id(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> str:
        return run_json(capsys, test_config_dir, "new-project", "Website")["id"]

    def test_new_task(self, test_config_dir: Path, project_id: str, capsys: pytest.CaptureFixture[str]) -> None:
        task = run_json(
            capsys, test_config_dir, "new-task", project_id, "Write copy",
            "--priority", "high", "--estimated-hours", "4",
        )
        assert task["title"] == "Write copy"
        assert task["priority"] == "high"
        assert task["estimated_hours"] == 4
        assert task["status"] == "todo"

    def test_new_task_unknown_project(self, test_config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(test_config_dir, "new-task", "f" * 32, "Orphan") == 1
        assert "Error: Invalid" in capsys.readouterr().err

    def test_list_filtered(self, test_config_dir: Path, project_id: str, capsys: pytest.CaptureFixture[str]) -> None:
        run_json(capsys, test_config_dir, "new-task", project_id, "First")
        run_json(capsys, test_config_dir, "new-task", project_id, "Second", "--status", "done")

        tasks = run_json(capsys, test_config_dir, "list-tasks", "--project-id", project_id)
        assert {t["title"] for t in tasks} == {"First", "Second"}
        done = run_json(capsys, test_config_dir, "list-tasks", "--status", "done")
        assert [t["title"] for t in done] == ["Second"]

    def test_list_empty(self, test_config_dir: Path, project_id: str, capsys: pytest.CaptureFixture[str]) -> None:
        capsys.readouterr()
        assert run_cli(test_config_dir, "list-tasks", "--project-id", project_id) == 0
        assert "No tasks found." in capsys.readouterr().out

    def test_show_and_edit(self, test_config_dir: Path, project_id: str, capsys: pytest.CaptureFixture[str]) -> None:
        task = run_json(capsys, test_config_dir, "new-task", project_id, "Write copy")
        edited = run_json(
            capsys, test_config_dir, "edit-task", task["id"], "--status", "in_progress", "--actual-hours", "2"
        )
        assert edited["status"] == "in_progress"
        assert edited["actual_hours"] == 2

        assert run_cli(test_config_dir, "show-task", task["id"]) == 0
        out = capsys.readouterr().out
        assert "Title: Write copy" in out
        assert "Status: in_progress" in out

    def test_delete(self, test_config_dir: Path, project_id: str, capsys: pytest.CaptureFixture[str]) -> None:
        task = run_json(capsys, test_config_dir, "new-task", project_id, "Write copy")
        deleted = run_json(capsys, test_config_dir, "delete-task", task["id"])
        assert deleted == {"id": task["id"], "deleted": True}
        assert run_cli(test_config_dir, "show-task", task["id"]) == 1
