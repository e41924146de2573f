#!/usr/bin/env python3
"""Web API for TaskHub.

This module provides the RESTful HTTP API for projects, tasks and sync.
Uses only core/ modules.

Endpoints:
    GET    /api/projects                         List the user's projects
    POST   /api/projects                         Create a project
    GET    /api/projects/stats                   Project statistics for the user
    GET    /api/projects/<id>                    Get a project with its members
    PUT    /api/projects/<id>                    Update a project
    DELETE /api/projects/<id>                    Delete a project (soft delete)
    GET    /api/projects/<id>/members            List members
    POST   /api/projects/<id>/members            Add a member
    PUT    /api/projects/<id>/members/<mid>      Update a member's role
    DELETE /api/projects/<id>/members/<mid>      Remove a member
    GET    /api/projects/<id>/board              Kanban board
    GET    /api/projects/<id>/task-stats         Task statistics for a project
    GET    /api/tasks                            List tasks (?project_id=)
    POST   /api/tasks                            Create a task
    GET    /api/tasks/stats                      Task statistics for the user
    GET    /api/tasks/overdue                    Overdue tasks
    GET    /api/tasks/upcoming                   Tasks due soon (?days=)
    GET    /api/tasks/<id>                       Get a task
    PUT    /api/tasks/<id>                       Update a task
    PATCH  /api/tasks/<id>/status                Change status
    PUT    /api/tasks/<id>/move                  Move on the board
    DELETE /api/tasks/<id>                       Delete a task (soft delete)
    GET    /api/tasks/<id>/comments              Comments (replies nested)
    POST   /api/tasks/<id>/comments              Add a comment
    PUT    /api/tasks/<id>/comments/<cid>        Edit a comment
    DELETE /api/tasks/<id>/comments/<cid>        Delete a comment
    GET    /api/tasks/<id>/time-entries          Time entries
    POST   /api/tasks/<id>/time-entries          Log time
    DELETE /api/tasks/<id>/time-entries/<eid>    Delete a time entry
    /api/sync/...                                Sync endpoints (see core.sync)

All endpoints return JSON responses.
IDs are UUID7 hex strings (32 characters, no hyphens).
The acting user is given in the X-User-ID header.
"""

from __future__ import annotations

import argparse
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from taskhub.core.config import Config
from taskhub.core.database import Database
from taskhub.core.projects import ProjectService
from taskhub.core.sync import SyncService, create_sync_blueprint
from taskhub.core.tasks import TaskService
from taskhub.core.validation import AccessDeniedError, ValidationError, validate_uuid_hex

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-ID"


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400), AccessDeniedError (403) and Exception
    (500) with proper JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except AccessDeniedError as e:
            logger.warning(f"Access denied in {func.__name__}: {e.message}")
            return jsonify({"error": e.message}), 403
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return jsonify({"error": str(e)}), 500
    return wrapper


def current_user_id() -> str:
    """Get the acting user from the request header."""
    return validate_uuid_hex(request.headers.get(USER_HEADER), USER_HEADER)


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("body", "Request body is required")
    return data


def not_found(what: str, entity_id: str) -> tuple[Response, int]:
    return jsonify({"error": f"{what} {entity_id} not found"}), 404


def create_app(config_dir: Optional[Path] = None) -> Flask:
    """Create and configure Flask application.

    Args:
        config_dir: Custom configuration directory (default: None)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    # Initialize config and database
    config = Config(config_dir=config_dir)
    db_path = Path(config.get_server_config()["database_file"])
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db = Database(db_path)
    projects = ProjectService(db)
    tasks = TaskService(db)
    sync_service = SyncService(db)
    app.config["DATABASE"] = db

    app.register_blueprint(create_sync_blueprint(sync_service))

    logger.info(f"Web API initialized with database: {db_path}")

    # Error handlers
    @app.errorhandler(404)
    def handle_not_found(error: Any) -> tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> tuple[Response, int]:
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error: Any) -> tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(ValidationError)
    def validation_error(error: ValidationError) -> tuple[Response, int]:
        """Handle validation errors."""
        logger.warning(f"Validation error: {error.field} - {error.message}")
        return jsonify({"error": f"Invalid {error.field}: {error.message}"}), 400

    # ===== Projects =====

    @app.route("/api/projects", methods=["GET"])
    @api_endpoint
    def list_projects() -> tuple[Response, int]:
        """List projects the user is a member of."""
        result = projects.list_projects(
            current_user_id(),
            page=request.args.get("page", 1),
            page_size=request.args.get("page_size", 20),
        )
        return jsonify(result), 200

    @app.route("/api/projects", methods=["POST"])
    @api_endpoint
    def create_project() -> tuple[Response, int]:
        """Create a new project owned by the user."""
        project = projects.create_project(json_body(), current_user_id())
        logger.info(f"Created project {project['id']} via API")
        return jsonify(project), 201

    @app.route("/api/projects/stats", methods=["GET"])
    @api_endpoint
    def project_stats() -> tuple[Response, int]:
        return jsonify(projects.get_user_project_stats(current_user_id())), 200

    @app.route("/api/projects/<project_id>", methods=["GET"])
    @api_endpoint
    def get_project(project_id: str) -> tuple[Response, int]:
        project = projects.get_project(project_id, current_user_id())
        if project is None:
            return not_found("Project", project_id)
        return jsonify(project), 200

    @app.route("/api/projects/<project_id>", methods=["PUT"])
    @api_endpoint
    def update_project(project_id: str) -> tuple[Response, int]:
        project = projects.update_project(project_id, json_body(), current_user_id())
        if project is None:
            return not_found("Project", project_id)
        logger.info(f"Updated project {project_id} via API")
        return jsonify(project), 200

    @app.route("/api/projects/<project_id>", methods=["DELETE"])
    @api_endpoint
    def delete_project(project_id: str) -> tuple[Response, int]:
        """Delete a project (soft delete)."""
        if projects.delete_project(project_id, current_user_id()):
            return jsonify({"message": f"Project {project_id} deleted"}), 200
        return not_found("Project", project_id)

    @app.route("/api/projects/<project_id>/members", methods=["GET"])
    @api_endpoint
    def get_members(project_id: str) -> tuple[Response, int]:
        members = projects.get_members(project_id, current_user_id())
        if members is None:
            return not_found("Project", project_id)
        return jsonify(members), 200

    @app.route("/api/projects/<project_id>/members", methods=["POST"])
    @api_endpoint
    def add_member(project_id: str) -> tuple[Response, int]:
        member = projects.add_member(project_id, json_body(), current_user_id())
        if member is None:
            return not_found("Project", project_id)
        return jsonify(member), 201

    @app.route("/api/projects/<project_id>/members/<member_id>", methods=["PUT"])
    @api_endpoint
    def update_member(project_id: str, member_id: str) -> tuple[Response, int]:
        member = projects.update_member(project_id, member_id, json_body(), current_user_id())
        if member is None:
            return not_found("Member", member_id)
        return jsonify(member), 200

    @app.route("/api/projects/<project_id>/members/<member_id>", methods=["DELETE"])
    @api_endpoint
    def remove_member(project_id: str, member_id: str) -> tuple[Response, int]:
        if projects.remove_member(project_id, member_id, current_user_id()):
            return jsonify({"message": f"Member {member_id} removed"}), 200
        return not_found("Member", member_id)

    @app.route("/api/projects/<project_id>/board", methods=["GET"])
    @api_endpoint
    def kanban_board(project_id: str) -> tuple[Response, int]:
        board = tasks.get_kanban_board(project_id, current_user_id())
        if board is None:
            return not_found("Project", project_id)
        return jsonify(board), 200

    @app.route("/api/projects/<project_id>/task-stats", methods=["GET"])
    @api_endpoint
    def project_task_stats(project_id: str) -> tuple[Response, int]:
        stats = tasks.get_project_task_stats(project_id, current_user_id())
        if stats is None:
            return not_found("Project", project_id)
        return jsonify(stats), 200

    # ===== Tasks =====

    @app.route("/api/tasks", methods=["GET"])
    @api_endpoint
    def list_tasks() -> tuple[Response, int]:
        result = tasks.list_tasks(
            current_user_id(),
            project_id=request.args.get("project_id"),
            page=request.args.get("page", 1),
            page_size=request.args.get("page_size", 20),
        )
        return jsonify(result), 200

    @app.route("/api/tasks", methods=["POST"])
    @api_endpoint
    def create_task() -> tuple[Response, int]:
        task = tasks.create_task(json_body(), current_user_id())
        logger.info(f"Created task {task['id']} via API")
        return jsonify(task), 201

    @app.route("/api/tasks/stats", methods=["GET"])
    @api_endpoint
    def task_stats() -> tuple[Response, int]:
        return jsonify(tasks.get_user_task_stats(current_user_id())), 200

    @app.route("/api/tasks/overdue", methods=["GET"])
    @api_endpoint
    def overdue_tasks() -> tuple[Response, int]:
        return jsonify(tasks.get_overdue_tasks(current_user_id())), 200

    @app.route("/api/tasks/upcoming", methods=["GET"])
    @api_endpoint
    def upcoming_tasks() -> tuple[Response, int]:
        days = request.args.get("days", "7")
        if not days.isdigit():
            raise ValidationError("days", f"must be a non-negative integer (got {days!r})")
        return jsonify(tasks.get_upcoming_tasks(current_user_id(), int(days))), 200

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    @api_endpoint
    def get_task(task_id: str) -> tuple[Response, int]:
        task = tasks.get_task(task_id, current_user_id())
        if task is None:
            return not_found("Task", task_id)
        return jsonify(task), 200

    @app.route("/api/tasks/<task_id>", methods=["PUT"])
    @api_endpoint
    def update_task(task_id: str) -> tuple[Response, int]:
        task = tasks.update_task(task_id, json_body(), current_user_id())
        if task is None:
            return not_found("Task", task_id)
        logger.info(f"Updated task {task_id} via API")
        return jsonify(task), 200

    @app.route("/api/tasks/<task_id>/status", methods=["PATCH"])
    @api_endpoint
    def update_task_status(task_id: str) -> tuple[Response, int]:
        task = tasks.update_task_status(task_id, json_body().get("status"), current_user_id())
        if task is None:
            return not_found("Task", task_id)
        return jsonify(task), 200

    @app.route("/api/tasks/<task_id>/move", methods=["PUT"])
    @api_endpoint
    def move_task(task_id: str) -> tuple[Response, int]:
        data = json_body()
        task = tasks.move_task(task_id, data.get("status"), current_user_id(), data.get("position"))
        if task is None:
            return not_found("Task", task_id)
        return jsonify(task), 200

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    @api_endpoint
    def delete_task(task_id: str) -> tuple[Response, int]:
        """Delete a task (soft delete)."""
        if tasks.delete_task(task_id, current_user_id()):
            return jsonify({"message": f"Task {task_id} deleted"}), 200
        return not_found("Task", task_id)

    @app.route("/api/tasks/<task_id>/comments", methods=["GET"])
    @api_endpoint
    def get_comments(task_id: str) -> tuple[Response, int]:
        comments = tasks.get_comments(task_id, current_user_id())
        if comments is None:
            return not_found("Task", task_id)
        return jsonify(comments), 200

    @app.route("/api/tasks/<task_id>/comments", methods=["POST"])
    @api_endpoint
    def add_comment(task_id: str) -> tuple[Response, int]:
        comment = tasks.add_comment(task_id, json_body(), current_user_id())
        if comment is None:
            return not_found("Task", task_id)
        return jsonify(comment), 201

    @app.route("/api/tasks/<task_id>/comments/<comment_id>", methods=["PUT"])
    @api_endpoint
    def update_comment(task_id: str, comment_id: str) -> tuple[Response, int]:
        comment = tasks.update_comment(task_id, comment_id, json_body(), current_user_id())
        if comment is None:
            return not_found("Comment", comment_id)
        return jsonify(comment), 200

    @app.route("/api/tasks/<task_id>/comments/<comment_id>", methods=["DELETE"])
    @api_endpoint
    def delete_comment(task_id: str, comment_id: str) -> tuple[Response, int]:
        if tasks.delete_comment(task_id, comment_id, current_user_id()):
            return jsonify({"message": f"Comment {comment_id} deleted"}), 200
        return not_found("Comment", comment_id)

    @app.route("/api/tasks/<task_id>/time-entries", methods=["GET"])
    @api_endpoint
    def get_time_entries(task_id: str) -> tuple[Response, int]:
        entries = tasks.get_time_entries(task_id, current_user_id())
        if entries is None:
            return not_found("Task", task_id)
        return jsonify(entries), 200

    @app.route("/api/tasks/<task_id>/time-entries", methods=["POST"])
    @api_endpoint
    def add_time_entry(task_id: str) -> tuple[Response, int]:
        entry = tasks.add_time_entry(task_id, json_body(), current_user_id())
        if entry is None:
            return not_found("Task", task_id)
        return jsonify(entry), 201

    @app.route("/api/tasks/<task_id>/time-entries/<entry_id>", methods=["DELETE"])
    @api_endpoint
    def delete_time_entry(task_id: str, entry_id: str) -> tuple[Response, int]:
        if tasks.delete_time_entry(task_id, entry_id, current_user_id()):
            return jsonify({"message": f"Time entry {entry_id} deleted"}), 200
        return not_found("Time entry", entry_id)

    @app.route("/api/health", methods=["GET"])
    def health_check() -> tuple[Response, int]:
        """Health check endpoint.

        Returns:
            JSON response indicating service health
        """
        return jsonify({"status": "ok"}), 200

    return app


def add_web_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add web subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add web parser to
    """
    web_parser = subparsers.add_parser(
        "web",
        help="Start web API and sync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    web_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host from config)"
    )

    web_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server.port from config)"
    )

    web_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run web server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting TaskHub Web API")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    server_config = Config(config_dir=config_dir).get_server_config()

    # Create Flask app
    app = create_app(config_dir=config_dir)

    # Run server
    app.run(
        host=args.host or server_config["host"],
        port=args.port or server_config["port"],
        debug=args.debug
    )

    return 0
