#!/usr/bin/env python3
"""Command-line interface for TaskHub.

This module provides CLI commands that work on the local (offline) store
and sync it with the server. Uses only core/ modules - no Flask dependencies.

Commands:
    list-projects                   List local projects
    show-project <id>               Show a project and its members
    new-project <name>              Create a project
    edit-project <id>               Edit a project
    delete-project <id>             Delete a project
    list-tasks                      List tasks (optionally by project/status)
    show-task <id>                  Show a task
    new-task <project_id> <title>   Create a task
    edit-task <id>                  Edit a task
    delete-task <id>                Delete a task
    sync status|now|push|pull|conflicts|resolve|retry-failed
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskhub.core.config import Config
from taskhub.core.conflicts import get_diff_preview
from taskhub.core.local_store import LocalStore
from taskhub.core.models import ConflictStrategy, ProjectStatus, TaskPriority, TaskStatus, enum_values
from taskhub.core.sync_client import STRATEGY_ALIASES, SyncClient, SyncResult
from taskhub.core.validation import ValidationError

DISPLAY_FIELDS = ("id", "entity_type", "entity_id", "local_timestamp", "server_timestamp")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def format_project(project: Dict[str, Any], members: Optional[List[Dict[str, Any]]] = None) -> str:
    """Format a project for text display.

    Args:
        project: Local project row
        members: Active memberships to list under the project

    Returns:
        Formatted project string
    """
    lines = [
        f"ID: {project['id']}",
        f"Name: {project['name']}",
        f"Status: {project['status']}",
        f"Created: {project['created_at']}",
    ]
    if project.get("updated_at") and project["updated_at"] != project["created_at"]:
        lines.append(f"Modified: {project['updated_at']}")
    if project.get("is_dirty"):
        lines.append("Not synced yet")
    if members is not None:
        lines.append(f"Members: {len(members)}")
        for member in members:
            lines.append(f"  {member['user_id']} ({member['role']})")
    if project.get("description"):
        lines.append(f"\n{project['description']}")
    return "\n".join(lines)


def format_task(task: Dict[str, Any]) -> str:
    lines = [
        f"ID: {task['id']}",
        f"Project: {task['project_id']}",
        f"Title: {task['title']}",
        f"Status: {task['status']} | Priority: {task['priority']}",
    ]
    if task.get("due_date"):
        lines.append(f"Due: {task['due_date']}")
    if task.get("assignee_id"):
        lines.append(f"Assignee: {task['assignee_id']}")
    if task.get("estimated_hours") or task.get("actual_hours"):
        lines.append(f"Hours: {task['actual_hours']} of {task['estimated_hours']} estimated")
    if task.get("is_dirty"):
        lines.append("Not synced yet")
    if task.get("description"):
        lines.append(f"\n{task['description']}")
    return "\n".join(lines)


def format_sync_result(result: SyncResult, args: argparse.Namespace) -> int:
    """Print a SyncResult and turn it into an exit code."""
    if args.format == "json":
        print_json({
            "success": result.success,
            "pushed": result.pushed,
            "pulled": result.pulled,
            "conflicts": result.conflicts,
            "errors": result.errors,
        })
    else:
        print(f"Pushed: {result.pushed}")
        print(f"Pulled: {result.pulled}")
        if result.conflicts:
            print(f"Conflicts: {result.conflicts} (see 'sync conflicts')")
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
    return 0 if result.success else 1


def collect_fields(args: argparse.Namespace, names: List[str]) -> Dict[str, Any]:
    """Collect the optional arguments that were given on the command line."""
    return {name: getattr(args, name) for name in names if getattr(args, name, None) is not None}


# ===== Projects =====

def cmd_list_projects(store: LocalStore, args: argparse.Namespace) -> int:
    """List local projects.

    Args:
        store: Local store
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    projects = store.list_projects()

    if args.format == "json":
        print_json(projects)
        return 0

    if not projects:
        print("No projects found.")
        return 0

    for project in projects:
        marker = " *" if project["is_dirty"] else ""
        print(f"{project['id']} | {project['status']:<10} | {project['name']}{marker}")
    return 0


def cmd_show_project(store: LocalStore, args: argparse.Namespace) -> int:
    project = store.get_project(args.project_id)
    if not project:
        print(f"Error: Project with ID {args.project_id} not found.", file=sys.stderr)
        return 1

    members = store.get_members(project["id"])
    if args.format == "json":
        print_json(dict(project, members=members))
    else:
        print(format_project(project, members))
    return 0


def cmd_new_project(store: LocalStore, args: argparse.Namespace) -> int:
    data = collect_fields(args, ["description", "status", "start_date", "end_date"])
    data["name"] = args.name
    project = store.create_project(data)
    if args.format == "json":
        print_json(project)
    else:
        print(f"Created project {project['id']}")
    return 0


def cmd_edit_project(store: LocalStore, args: argparse.Namespace) -> int:
    fields = collect_fields(args, ["name", "description", "status", "start_date", "end_date"])
    if not fields:
        print("Error: Nothing to change. Use --name, --description, --status or dates.", file=sys.stderr)
        return 1

    project = store.update_project(args.project_id, fields)
    if project is None:
        print(f"Error: Project with ID {args.project_id} not found.", file=sys.stderr)
        return 1

    if args.format == "json":
        print_json(project)
    else:
        print(f"Updated project {project['id']}")
    return 0


def cmd_delete_project(store: LocalStore, args: argparse.Namespace) -> int:
    if not store.delete_project(args.project_id):
        print(f"Error: Project with ID {args.project_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json({"id": args.project_id, "deleted": True})
    else:
        print(f"Deleted project {args.project_id}")
    return 0


# ===== Tasks =====

def cmd_list_tasks(store: LocalStore, args: argparse.Namespace) -> int:
    """List local tasks, optionally filtered by project and status.

    Args:
        store: Local store
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    tasks = store.list_tasks(project_id=args.project_id, status=args.status)

    if args.format == "json":
        print_json(tasks)
        return 0

    if not tasks:
        print("No tasks found.")
        return 0

    for task in tasks:
        marker = " *" if task["is_dirty"] else ""
        print(f"{task['id']} | {task['status']:<11} | {task['priority']:<8} | {task['title']}{marker}")
    return 0


def cmd_show_task(store: LocalStore, args: argparse.Namespace) -> int:
    task = store.get_task(args.task_id)
    if not task:
        print(f"Error: Task with ID {args.task_id} not found.", file=sys.stderr)
        return 1

    if args.format == "json":
        print_json(task)
    else:
        print(format_task(task))
    return 0


def cmd_new_task(store: LocalStore, args: argparse.Namespace) -> int:
    data = collect_fields(
        args, ["description", "status", "priority", "due_date", "assignee_id", "estimated_hours"]
    )
    data["title"] = args.title
    task = store.create_task(args.project_id, data)
    if args.format == "json":
        print_json(task)
    else:
        print(f"Created task {task['id']}")
    return 0


def cmd_edit_task(store: LocalStore, args: argparse.Namespace) -> int:
    fields = collect_fields(
        args,
        ["title", "description", "status", "priority", "due_date", "assignee_id",
         "estimated_hours", "actual_hours"],
    )
    if not fields:
        print("Error: Nothing to change. See 'edit-task --help'.", file=sys.stderr)
        return 1

    task = store.update_task(args.task_id, fields)
    if task is None:
        print(f"Error: Task with ID {args.task_id} not found.", file=sys.stderr)
        return 1

    if args.format == "json":
        print_json(task)
    else:
        print(f"Updated task {task['id']}")
    return 0


def cmd_delete_task(store: LocalStore, args: argparse.Namespace) -> int:
    if not store.delete_task(args.task_id):
        print(f"Error: Task with ID {args.task_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json({"id": args.task_id, "deleted": True})
    else:
        print(f"Deleted task {args.task_id}")
    return 0


# ===== Sync =====

def cmd_sync_status(client: SyncClient, args: argparse.Namespace) -> int:
    """Show sync status: server reachability, cursors and change log counts.

    Args:
        client: Sync client
        args: Parsed command-line arguments

    Returns:
        Exit code (0 for success)
    """
    status = client.get_sync_status()
    status["device_name"] = client.config.get_device_name()

    if args.format == "json":
        print_json(status)
        return 0

    changes = status["changes"]
    print(f"Client ID: {status['client_id']}")
    print(f"Device Name: {status['device_name']}")
    print(f"Server: {status['server_url']} ({'online' if status['online'] else 'offline'})")
    print(f"Last Sync: {status['last_sync'] or 'never'}")
    print(f"Pending Changes: {changes['pending']}")
    if changes["failed"]:
        print(f"Failed Changes: {changes['failed']}")
    if changes["unresolved_conflicts"]:
        print(f"\nUnresolved Conflicts: {changes['unresolved_conflicts']}")
    return 0


def cmd_sync_conflicts(store: LocalStore, args: argparse.Namespace) -> int:
    conflicts = store.get_conflicts()

    if args.format == "json":
        print_json(conflicts)
        return 0

    if not conflicts:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts ({len(conflicts)}):\n")
    for c in conflicts:
        origin = "server" if c["server_conflict_id"] else "local"
        print(f"  [{c['id'][:8]}] {c['entity_type']} {c['entity_id'][:8]} ({origin})")
        print(f"      local {c['local_timestamp']} vs server {c['server_timestamp']}")
        for line in get_diff_preview(c["local_data"], c["server_data"]).splitlines():
            print(f"      {line}")
    return 0


def cmd_sync_resolve(client: SyncClient, args: argparse.Namespace) -> int:
    """Resolve a conflict by ID or prefix with the given strategy."""
    custom_data = None
    if args.data:
        try:
            custom_data = json.loads(args.data)
        except json.JSONDecodeError as e:
            print(f"Error: --data is not valid JSON: {e}", file=sys.stderr)
            return 1

    result = client.resolve_conflict(args.conflict_id, args.strategy, custom_data)
    if not result.success:
        for error in result.errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    if args.format == "json":
        print_json({"conflict_id": args.conflict_id, "strategy": args.strategy, "resolved": True})
    else:
        print(f"Resolved conflict {args.conflict_id} ({args.strategy})")
    return 0


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested commands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    # Nested subcommands for CLI
    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    # list-projects command
    cli_subparsers.add_parser("list-projects", help="List projects")

    # show-project command
    show_project_parser = cli_subparsers.add_parser("show-project", help="Show a project")
    show_project_parser.add_argument("project_id", type=str, help="Project ID (UUID hex string)")

    # new-project command
    new_project_parser = cli_subparsers.add_parser("new-project", help="Create a project")
    new_project_parser.add_argument("name", type=str, help="Project name")
    _add_project_options(new_project_parser)

    # edit-project command
    edit_project_parser = cli_subparsers.add_parser("edit-project", help="Edit a project")
    edit_project_parser.add_argument("project_id", type=str, help="Project ID (UUID hex string)")
    edit_project_parser.add_argument("--name", type=str, help="New project name")
    _add_project_options(edit_project_parser)

    # delete-project command
    delete_project_parser = cli_subparsers.add_parser("delete-project", help="Delete a project")
    delete_project_parser.add_argument("project_id", type=str, help="Project ID (UUID hex string)")

    # list-tasks command
    list_tasks_parser = cli_subparsers.add_parser("list-tasks", help="List tasks")
    list_tasks_parser.add_argument("--project-id", type=str, help="Only tasks of this project")
    list_tasks_parser.add_argument("--status", choices=enum_values(TaskStatus), help="Only tasks with this status")

    # show-task command
    show_task_parser = cli_subparsers.add_parser("show-task", help="Show a task")
    show_task_parser.add_argument("task_id", type=str, help="Task ID (UUID hex string)")

    # new-task command
    new_task_parser = cli_subparsers.add_parser("new-task", help="Create a task")
    new_task_parser.add_argument("project_id", type=str, help="Project ID (UUID hex string)")
    new_task_parser.add_argument("title", type=str, help="Task title")
    _add_task_options(new_task_parser)

    # edit-task command
    edit_task_parser = cli_subparsers.add_parser("edit-task", help="Edit a task")
    edit_task_parser.add_argument("task_id", type=str, help="Task ID (UUID hex string)")
    edit_task_parser.add_argument("--title", type=str, help="New title")
    edit_task_parser.add_argument("--actual-hours", type=int, help="Hours spent")
    _add_task_options(edit_task_parser)

    # delete-task command
    delete_task_parser = cli_subparsers.add_parser("delete-task", help="Delete a task")
    delete_task_parser.add_argument("task_id", type=str, help="Task ID (UUID hex string)")

    # sync command with subcommands
    sync_parser = cli_subparsers.add_parser(
        "sync",
        help="Sync operations (status, push, pull, conflicts)"
    )
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    sync_subparsers.add_parser("status", help="Show sync status and device info")
    sync_subparsers.add_parser("now", help="Push local changes and pull server changes")
    sync_subparsers.add_parser("push", help="Push local changes (applies returned server changes)")
    sync_subparsers.add_parser("pull", help="Pull server changes only")
    sync_subparsers.add_parser("conflicts", help="List unresolved sync conflicts")
    sync_subparsers.add_parser("retry-failed", help="Requeue failed changes and push them again")

    # sync resolve
    resolve_parser = sync_subparsers.add_parser("resolve", help="Resolve a sync conflict")
    resolve_parser.add_argument(
        "conflict_id",
        type=str,
        help="Conflict ID (or prefix) to resolve"
    )
    resolve_parser.add_argument(
        "strategy",
        type=str,
        choices=enum_values(ConflictStrategy) + sorted(STRATEGY_ALIASES),
        help="Resolution strategy"
    )
    resolve_parser.add_argument(
        "--data",
        type=str,
        help="JSON object with the resolved fields (manual resolution)"
    )


def _add_project_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", type=str, help="Project description")
    parser.add_argument("--status", choices=enum_values(ProjectStatus), help="Project status")
    parser.add_argument("--start-date", type=str, help="Start date (ISO 8601)")
    parser.add_argument("--end-date", type=str, help="End date (ISO 8601)")


def _add_task_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--description", type=str, help="Task description")
    parser.add_argument("--status", choices=enum_values(TaskStatus), help="Task status")
    parser.add_argument("--priority", choices=enum_values(TaskPriority), help="Task priority")
    parser.add_argument("--due-date", type=str, help="Due date (ISO 8601)")
    parser.add_argument("--assignee-id", type=str, help="Assignee user ID")
    parser.add_argument("--estimated-hours", type=int, help="Estimated hours")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    # Check if CLI command was provided
    if not hasattr(args, 'cli_command') or not args.cli_command:
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    # Initialize config and local store
    config = Config(config_dir=config_dir)
    db_path = Path(config.get("database_file"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = LocalStore(db_path, config.get_client_id(), config.get_user_id())

    # Execute command
    try:
        if args.cli_command == "list-projects":
            return cmd_list_projects(store, args)
        elif args.cli_command == "show-project":
            return cmd_show_project(store, args)
        elif args.cli_command == "new-project":
            return cmd_new_project(store, args)
        elif args.cli_command == "edit-project":
            return cmd_edit_project(store, args)
        elif args.cli_command == "delete-project":
            return cmd_delete_project(store, args)
        elif args.cli_command == "list-tasks":
            return cmd_list_tasks(store, args)
        elif args.cli_command == "show-task":
            return cmd_show_task(store, args)
        elif args.cli_command == "new-task":
            return cmd_new_task(store, args)
        elif args.cli_command == "edit-task":
            return cmd_edit_task(store, args)
        elif args.cli_command == "delete-task":
            return cmd_delete_task(store, args)
        elif args.cli_command == "sync":
            # Handle sync subcommands
            sync_cmd = getattr(args, 'sync_command', None)
            if not sync_cmd:
                print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
                return 1
            if sync_cmd == "conflicts":
                return cmd_sync_conflicts(store, args)

            client = SyncClient(store, config)
            if sync_cmd == "status":
                return cmd_sync_status(client, args)
            elif sync_cmd == "now":
                return format_sync_result(client.sync_all(), args)
            elif sync_cmd == "push":
                return format_sync_result(client.push_local_changes(), args)
            elif sync_cmd == "pull":
                return format_sync_result(client.pull_server_changes(), args)
            elif sync_cmd == "retry-failed":
                return format_sync_result(client.retry_failed(), args)
            elif sync_cmd == "resolve":
                return cmd_sync_resolve(client, args)
            else:
                print(f"Error: Unknown sync command '{sync_cmd}'", file=sys.stderr)
                return 1
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    finally:
        store.close()
