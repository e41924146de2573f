"""Task service for TaskHub.

Tasks, kanban board, comments, time entries and task statistics.
Task mutations are recorded as server-originated sync items. Comments and
time entries stay server-only.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from uuid6 import uuid7

from .database import Database, entity_payload
from .models import EntityType, SyncOperation, TaskPriority, TaskStatus
from .projects import CLOSED_TASK_STATUSES, is_project_admin, require_project_access
from .timestamp_utils import parse_timestamp, timestamp_days_ahead, utc_now
from .validation import (
    AccessDeniedError,
    ValidationError,
    validate_comment_content,
    validate_description,
    validate_enum,
    validate_non_negative_int,
    validate_optional_uuid_hex,
    validate_pagination,
    validate_task_title,
    validate_text,
    validate_timestamp,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)

__all__ = ["TaskService"]

COLUMN_TITLES = {
    TaskStatus.TODO.value: "To Do",
    TaskStatus.IN_PROGRESS.value: "In Progress",
    TaskStatus.REVIEW.value: "Review",
    TaskStatus.DONE.value: "Done",
    TaskStatus.CANCELLED.value: "Cancelled",
}


def _task_stats(tasks: List[Dict[str, Any]], user_id: str) -> Dict[str, int]:
    now = utc_now()
    return {
        "total_tasks": len(tasks),
        "todo_tasks": sum(1 for t in tasks if t["status"] == TaskStatus.TODO.value),
        "in_progress_tasks": sum(1 for t in tasks if t["status"] == TaskStatus.IN_PROGRESS.value),
        "review_tasks": sum(1 for t in tasks if t["status"] == TaskStatus.REVIEW.value),
        "completed_tasks": sum(1 for t in tasks if t["status"] == TaskStatus.DONE.value),
        "overdue_tasks": sum(
            1 for t in tasks
            if t["due_date"] and t["due_date"] < now and t["status"] not in CLOSED_TASK_STATUSES
        ),
        "assigned_to_user": sum(1 for t in tasks if t["assignee_id"] == user_id),
        "created_by_user": sum(1 for t in tasks if t["created_by_id"] == user_id),
    }


class TaskService:
    """Business rules for tasks and their comments and time entries."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record(self, task: Dict[str, Any], operation: SyncOperation, user_id: str) -> None:
        self.db.record_change(
            EntityType.TASK.value,
            task["id"],
            operation.value,
            entity_payload(EntityType.TASK.value, task),
            user_id=user_id,
        )

    def _load_task(self, task_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Load a task and check project access. None if the task does not exist."""
        task_id = validate_uuid_hex(task_id, "task_id")
        task = self.db.get_task(task_id)
        if task is None:
            return None
        require_project_access(self.db, task["project_id"], user_id)
        return task

    def _check_assignee(self, project_id: str, assignee_id: Optional[str]) -> None:
        if assignee_id is None:
            return
        member = self.db.get_member(project_id, assignee_id)
        if member is None or not member["is_active"]:
            raise ValidationError("assignee_id", "assignee must be an active project member")

    def _save(self, task_id: str, fields: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        fields["updated_at"] = utc_now()
        with self.db.transaction():
            self.db.update_task_fields(task_id, fields)
            task = self.db.get_task(task_id, include_deleted=True)
            self._record(task, SyncOperation.UPDATE, user_id)
        return task

    # ===== Tasks =====

    def create_task(self, data: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        """Create a task in a project the user belongs to.

        Args:
            data: project_id and title (required), description, priority,
                due_date, assignee_id, estimated_hours
            user_id: Acting user, recorded as created_by_id
        """
        user_id = validate_uuid_hex(user_id, "user_id")
        project_id = validate_uuid_hex(data.get("project_id"), "project_id")
        if self.db.get_project(project_id) is None:
            raise ValidationError("project_id", "project not found")
        require_project_access(self.db, project_id, user_id)

        assignee_id = validate_optional_uuid_hex(data.get("assignee_id"), "assignee_id")
        self._check_assignee(project_id, assignee_id)
        status = TaskStatus.TODO.value
        now = utc_now()
        task = {
            "id": uuid7().hex,
            "project_id": project_id,
            "title": validate_task_title(data.get("title")),
            "description": validate_description(data.get("description")),
            "status": status,
            "priority": validate_enum(
                data.get("priority") or TaskPriority.MEDIUM.value, TaskPriority, "priority"
            ),
            "due_date": validate_timestamp(data.get("due_date"), "due_date"),
            "assignee_id": assignee_id,
            "created_by_id": user_id,
            "estimated_hours": validate_non_negative_int(
                data.get("estimated_hours", 0), "estimated_hours"
            ),
            "actual_hours": 0,
            "position": 0,
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        with self.db.transaction():
            task["position"] = self.db.get_max_task_position(project_id, status) + 1
            self.db.insert_task(task)
            self._record(task, SyncOperation.CREATE, user_id)

        logger.info(f"Created task {task['id']} in project {project_id}")
        return task

    def get_task(self, task_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        result = dict(task)
        result["comment_count"] = len(self.db.get_comments(task["id"]))
        return result

    def list_tasks(
        self,
        user_id: str,
        project_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> List[Dict[str, Any]]:
        """List tasks visible to the user, optionally limited to one project."""
        page, page_size = validate_pagination(page, page_size)
        if project_id:
            project_id = validate_uuid_hex(project_id, "project_id")
            require_project_access(self.db, project_id, user_id)
        return self.db.get_tasks_in_user_projects(
            user_id, project_id=project_id, limit=page_size, offset=(page - 1) * page_size
        )

    def update_task(self, task_id: str, data: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
        """Partially update a task. Returns None if it does not exist."""
        task = self._load_task(task_id, user_id)
        if task is None:
            return None

        fields: Dict[str, Any] = {}
        if "title" in data:
            fields["title"] = validate_task_title(data["title"])
        if "description" in data:
            fields["description"] = validate_description(data["description"])
        if "status" in data:
            fields["status"] = validate_enum(data["status"], TaskStatus, "status")
        if "priority" in data:
            fields["priority"] = validate_enum(data["priority"], TaskPriority, "priority")
        if "due_date" in data:
            fields["due_date"] = validate_timestamp(data["due_date"], "due_date")
        if "assignee_id" in data:
            fields["assignee_id"] = validate_optional_uuid_hex(data["assignee_id"], "assignee_id")
            self._check_assignee(task["project_id"], fields["assignee_id"])
        if "estimated_hours" in data:
            fields["estimated_hours"] = validate_non_negative_int(
                data["estimated_hours"], "estimated_hours"
            )
        if not fields:
            raise ValidationError("body", "no updatable fields given")

        updated = self._save(task["id"], fields, user_id)
        logger.info(f"Updated task {task['id']}: {', '.join(sorted(fields))}")
        return updated

    def update_task_status(self, task_id: str, status: Any, user_id: str) -> Optional[Dict[str, Any]]:
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        status = validate_enum(status, TaskStatus, "status")
        return self._save(task["id"], {"status": status}, user_id)

    def move_task(
        self, task_id: str, new_status: Any, user_id: str, position: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """Move a task to a kanban column, optionally at a given position.

        Tasks at or after the target position in that column shift down by one.
        Without a position the task goes to the end of the column.
        """
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        new_status = validate_enum(new_status, TaskStatus, "new_status")

        with self.db.transaction():
            if position is None:
                if new_status == task["status"]:
                    position = task["position"]
                else:
                    position = self.db.get_max_task_position(task["project_id"], new_status) + 1
            else:
                position = validate_non_negative_int(position, "position")
                column = [
                    t for t in self.db.get_tasks_for_project(task["project_id"])
                    if t["status"] == new_status and t["id"] != task["id"]
                ]
                for index, other in enumerate(column):
                    wanted = index if index < position else index + 1
                    if other["position"] != wanted:
                        self._save(other["id"], {"position": wanted}, user_id)
                position = min(position, len(column))
            moved = self._save(task["id"], {"status": new_status, "position": position}, user_id)

        logger.info(f"Moved task {task['id']} to {new_status} at position {position}")
        return moved

    def delete_task(self, task_id: str, user_id: str) -> bool:
        """Soft delete a task. Allowed for its creator and project owners/admins."""
        task = self._load_task(task_id, user_id)
        if task is None:
            return False
        if task["created_by_id"] != user_id and not is_project_admin(
            self.db, task["project_id"], user_id
        ):
            raise AccessDeniedError("User does not have permission to delete this task")

        now = utc_now()
        with self.db.transaction():
            self.db.update_task_fields(task["id"], {"deleted_at": now, "updated_at": now})
            deleted = self.db.get_task(task["id"], include_deleted=True)
            self._record(deleted, SyncOperation.DELETE, user_id)
        logger.info(f"Deleted task {task['id']}")
        return True

    def get_kanban_board(self, project_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        project_id = validate_uuid_hex(project_id, "project_id")
        project = self.db.get_project(project_id)
        if project is None:
            return None
        require_project_access(self.db, project_id, user_id)

        tasks = self.db.get_tasks_for_project(project_id)
        columns = []
        for status in TaskStatus:
            column_tasks = [t for t in tasks if t["status"] == status.value]
            columns.append({
                "status": status.value,
                "title": COLUMN_TITLES[status.value],
                "task_count": len(column_tasks),
                "tasks": column_tasks,
            })
        return {"project_id": project_id, "project_name": project["name"], "columns": columns}

    # ===== Comments =====

    def add_comment(self, task_id: str, data: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        parent_id = validate_optional_uuid_hex(data.get("parent_comment_id"), "parent_comment_id")
        if parent_id is not None:
            parent = self.db.get_comment(parent_id)
            if parent is None or parent["task_id"] != task["id"]:
                raise ValidationError("parent_comment_id", "parent comment not found on this task")
        comment = {
            "id": uuid7().hex,
            "task_id": task["id"],
            "author_id": user_id,
            "content": validate_comment_content(data.get("content")),
            "parent_comment_id": parent_id,
            "created_at": utc_now(),
            "updated_at": None,
            "is_edited": False,
        }
        self.db.insert_comment(comment)
        return comment

    def _own_comment(self, task_id: str, comment_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        comment = self.db.get_comment(validate_uuid_hex(comment_id, "comment_id"))
        if comment is None or comment["task_id"] != task["id"]:
            return None
        if comment["author_id"] != user_id:
            raise AccessDeniedError("Only the author can change this comment")
        return comment

    def update_comment(
        self, task_id: str, comment_id: str, data: Dict[str, Any], user_id: str
    ) -> Optional[Dict[str, Any]]:
        comment = self._own_comment(task_id, comment_id, user_id)
        if comment is None:
            return None
        content = validate_comment_content(data.get("content"))
        self.db.update_comment_fields(
            comment["id"], {"content": content, "updated_at": utc_now(), "is_edited": True}
        )
        return self.db.get_comment(comment["id"])

    def delete_comment(self, task_id: str, comment_id: str, user_id: str) -> bool:
        comment = self._own_comment(task_id, comment_id, user_id)
        if comment is None:
            return False
        return self.db.delete_comment(comment["id"])

    def get_comments(self, task_id: str, user_id: str) -> Optional[List[Dict[str, Any]]]:
        """Get top-level comments with their replies nested under "replies"."""
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        comments = self.db.get_comments(task["id"])
        by_id = {c["id"]: dict(c, replies=[]) for c in comments}
        roots = []
        for comment in comments:
            node = by_id[comment["id"]]
            parent = by_id.get(comment["parent_comment_id"] or "")
            if parent is not None:
                parent["replies"].append(node)
            else:
                roots.append(node)
        return roots

    # ===== Time entries =====

    def add_time_entry(self, task_id: str, data: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
        """Log time on a task and add it to the task's actual hours.

        duration_minutes is computed from start_time/end_time when not given.
        """
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        start_time = validate_timestamp(data.get("start_time"), "start_time", required=True)
        end_time = validate_timestamp(data.get("end_time"), "end_time")
        if end_time is not None and end_time < start_time:
            raise ValidationError("end_time", "cannot be before start_time")
        if "duration_minutes" in data:
            duration = validate_non_negative_int(data["duration_minutes"], "duration_minutes")
        elif end_time is not None:
            delta = parse_timestamp(end_time) - parse_timestamp(start_time)
            duration = int(delta.total_seconds() // 60)
        else:
            raise ValidationError("duration_minutes", "required when end_time is not given")
        is_billable = data.get("is_billable", True)
        if not isinstance(is_billable, bool):
            raise ValidationError("is_billable", "must be true or false")

        entry = {
            "id": uuid7().hex,
            "task_id": task["id"],
            "user_id": user_id,
            "description": validate_text(data.get("description"), "description", 500, required=False),
            "start_time": start_time,
            "end_time": end_time,
            "duration_minutes": duration,
            "is_billable": is_billable,
            "created_at": utc_now(),
        }
        with self.db.transaction():
            self.db.insert_time_entry(entry)
            total = sum(e["duration_minutes"] for e in self.db.get_time_entries(task["id"]))
            self._save(task["id"], {"actual_hours": total // 60}, user_id)
        return entry

    def get_time_entries(self, task_id: str, user_id: str) -> Optional[List[Dict[str, Any]]]:
        task = self._load_task(task_id, user_id)
        if task is None:
            return None
        return self.db.get_time_entries(task["id"])

    def delete_time_entry(self, task_id: str, entry_id: str, user_id: str) -> bool:
        task = self._load_task(task_id, user_id)
        if task is None:
            return False
        entry = self.db.get_time_entry(validate_uuid_hex(entry_id, "entry_id"))
        if entry is None or entry["task_id"] != task["id"]:
            return False
        if entry["user_id"] != user_id:
            raise AccessDeniedError("Only the user who logged this time can delete it")
        with self.db.transaction():
            self.db.delete_time_entry(entry["id"])
            total = sum(e["duration_minutes"] for e in self.db.get_time_entries(task["id"]))
            self._save(task["id"], {"actual_hours": total // 60}, user_id)
        return True

    # ===== Statistics =====

    def get_user_task_stats(self, user_id: str) -> Dict[str, int]:
        """Statistics over tasks assigned to or created by the user."""
        return _task_stats(self.db.get_tasks_for_user(user_id), user_id)

    def get_project_task_stats(self, project_id: str, user_id: str) -> Optional[Dict[str, int]]:
        project_id = validate_uuid_hex(project_id, "project_id")
        if self.db.get_project(project_id) is None:
            return None
        require_project_access(self.db, project_id, user_id)
        return _task_stats(self.db.get_tasks_for_project(project_id), user_id)

    def get_overdue_tasks(self, user_id: str) -> List[Dict[str, Any]]:
        now = utc_now()
        return [
            t for t in self.db.get_tasks_for_user(user_id)
            if t["due_date"] and t["due_date"] < now and t["status"] not in CLOSED_TASK_STATUSES
        ]

    def get_upcoming_tasks(self, user_id: str, days: int = 7) -> List[Dict[str, Any]]:
        """Open tasks due between now and ``days`` from now."""
        days = validate_non_negative_int(days, "days")
        now = utc_now()
        horizon = timestamp_days_ahead(days)
        return [
            t for t in self.db.get_tasks_for_user(user_id)
            if t["due_date"] and now <= t["due_date"] <= horizon
            and t["status"] not in CLOSED_TASK_STATUSES
        ]
