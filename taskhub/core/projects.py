"""Project service for TaskHub.

CRUD for projects and their members, plus per-user project statistics.
Every mutation is recorded as a server-originated sync item so offline
clients pull it on their next sync.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from uuid6 import uuid7

from .database import Database, entity_payload
from .models import EntityType, ProjectRole, ProjectStatus, SyncOperation, TaskStatus
from .timestamp_utils import utc_now
from .validation import (
    AccessDeniedError,
    ValidationError,
    validate_date_range,
    validate_description,
    validate_enum,
    validate_pagination,
    validate_project_name,
    validate_timestamp,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)

__all__ = ["ProjectService", "require_project_access", "is_project_admin"]

ADMIN_ROLES = (ProjectRole.OWNER.value, ProjectRole.ADMIN.value)
CLOSED_PROJECT_STATUSES = (ProjectStatus.COMPLETED.value, ProjectStatus.CANCELLED.value)
CLOSED_TASK_STATUSES = (TaskStatus.DONE.value, TaskStatus.CANCELLED.value)


def require_project_access(db: Database, project_id: str, user_id: str) -> Dict[str, Any]:
    """Return the user's active membership or raise AccessDeniedError."""
    member = db.get_member(project_id, user_id)
    if member is None or not member["is_active"]:
        raise AccessDeniedError("User does not have access to this project")
    return member


def is_project_admin(db: Database, project_id: str, user_id: str) -> bool:
    member = db.get_member(project_id, user_id)
    return bool(member and member["is_active"] and member["role"] in ADMIN_ROLES)


class ProjectService:
    """Business rules for projects and project membership."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record(self, entity_type: EntityType, row: Dict[str, Any], operation: SyncOperation, user_id: str) -> None:
        self.db.record_change(
            entity_type.value,
            row["id"],
            operation.value,
            entity_payload(entity_type.value, row),
            user_id=user_id,
        )

    def _with_counts(self, project: Dict[str, Any], include_members: bool = False) -> Dict[str, Any]:
        tasks = self.db.get_tasks_for_project(project["id"])
        members = self.db.get_members(project["id"])
        result = dict(project)
        result["task_count"] = len(tasks)
        result["completed_task_count"] = sum(
            1 for t in tasks if t["status"] == TaskStatus.DONE.value
        )
        result["member_count"] = len(members)
        if include_members:
            result["members"] = members
        return result

    def create_project(self, data: Dict[str, Any], owner_id: str) -> Dict[str, Any]:
        """Create a project owned by owner_id.

        Args:
            data: name (required), description, start_date, end_date, status,
                member_ids (users added as developers)
            owner_id: Acting user, becomes owner and first member

        Returns:
            The created project with members and counts
        """
        owner_id = validate_uuid_hex(owner_id, "user_id")
        now = utc_now()
        project = {
            "id": uuid7().hex,
            "name": validate_project_name(data.get("name")),
            "description": validate_description(data.get("description")),
            "status": validate_enum(
                data.get("status") or ProjectStatus.PLANNING.value, ProjectStatus, "status"
            ),
            "owner_id": owner_id,
            "start_date": validate_timestamp(data.get("start_date"), "start_date") or now,
            "end_date": validate_timestamp(data.get("end_date"), "end_date"),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        validate_date_range(project["start_date"], project["end_date"])

        member_ids = data.get("member_ids") or []
        if not isinstance(member_ids, list):
            raise ValidationError("member_ids", "must be a list")
        extra_members = []
        for member_id in member_ids:
            member_id = validate_uuid_hex(member_id, "member_ids")
            if member_id != owner_id and member_id not in extra_members:
                extra_members.append(member_id)

        with self.db.transaction():
            self.db.insert_project(project)
            self._record(EntityType.PROJECT, project, SyncOperation.CREATE, owner_id)
            roles = [(owner_id, ProjectRole.OWNER.value)] + [
                (m, ProjectRole.DEVELOPER.value) for m in extra_members
            ]
            for user_id, role in roles:
                member = {
                    "id": uuid7().hex,
                    "project_id": project["id"],
                    "user_id": user_id,
                    "role": role,
                    "joined_at": now,
                    "is_active": True,
                }
                self.db.insert_member(member)
                self._record(EntityType.PROJECT_MEMBER, member, SyncOperation.CREATE, owner_id)

        logger.info(f"Created project {project['id']} for user {owner_id}")
        return self._with_counts(project, include_members=True)

    def get_project(self, project_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a project the user can see, or None if it does not exist."""
        project_id = validate_uuid_hex(project_id, "project_id")
        project = self.db.get_project(project_id)
        if project is None:
            return None
        require_project_access(self.db, project_id, user_id)
        return self._with_counts(project, include_members=True)

    def list_projects(self, user_id: str, page: int = 1, page_size: int = 20) -> List[Dict[str, Any]]:
        page, page_size = validate_pagination(page, page_size)
        projects = self.db.get_projects_for_user(
            user_id, limit=page_size, offset=(page - 1) * page_size
        )
        return [self._with_counts(p) for p in projects]

    def update_project(self, project_id: str, data: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
        """Partially update a project. Only owners and admins may edit.

        Returns:
            The updated project, or None if it does not exist
        """
        project_id = validate_uuid_hex(project_id, "project_id")
        project = self.db.get_project(project_id)
        if project is None:
            return None
        if not is_project_admin(self.db, project_id, user_id):
            raise AccessDeniedError("User does not have permission to edit this project")

        fields: Dict[str, Any] = {}
        if "name" in data:
            fields["name"] = validate_project_name(data["name"])
        if "description" in data:
            fields["description"] = validate_description(data["description"])
        if "status" in data:
            fields["status"] = validate_enum(data["status"], ProjectStatus, "status")
        if "start_date" in data:
            fields["start_date"] = validate_timestamp(data["start_date"], "start_date")
        if "end_date" in data:
            fields["end_date"] = validate_timestamp(data["end_date"], "end_date")
        validate_date_range(
            fields.get("start_date", project["start_date"]),
            fields.get("end_date", project["end_date"]),
        )
        if not fields:
            raise ValidationError("body", "no updatable fields given")

        fields["updated_at"] = utc_now()
        with self.db.transaction():
            self.db.update_project_fields(project_id, fields)
            updated = self.db.get_project(project_id)
            self._record(EntityType.PROJECT, updated, SyncOperation.UPDATE, user_id)

        logger.info(f"Updated project {project_id}: {', '.join(sorted(fields))}")
        return self._with_counts(updated, include_members=True)

    def delete_project(self, project_id: str, user_id: str) -> bool:
        """Soft delete a project. Only the owner may delete it."""
        project_id = validate_uuid_hex(project_id, "project_id")
        project = self.db.get_project(project_id)
        if project is None:
            return False
        if project["owner_id"] != user_id:
            raise AccessDeniedError("Only the project owner can delete the project")

        now = utc_now()
        with self.db.transaction():
            self.db.update_project_fields(project_id, {"deleted_at": now, "updated_at": now})
            deleted = self.db.get_project(project_id, include_deleted=True)
            self._record(EntityType.PROJECT, deleted, SyncOperation.DELETE, user_id)

        logger.info(f"Deleted project {project_id}")
        return True

    # ===== Members =====

    def _require_admin(self, project_id: str, user_id: str) -> bool:
        """Check admin rights. Returns False if the project does not exist."""
        if self.db.get_project(project_id) is None:
            return False
        if not is_project_admin(self.db, project_id, user_id):
            raise AccessDeniedError("User does not have permission to manage project members")
        return True

    def get_members(self, project_id: str, user_id: str) -> Optional[List[Dict[str, Any]]]:
        project_id = validate_uuid_hex(project_id, "project_id")
        if self.db.get_project(project_id) is None:
            return None
        require_project_access(self.db, project_id, user_id)
        return self.db.get_members(project_id)

    def add_member(self, project_id: str, data: Dict[str, Any], user_id: str) -> Optional[Dict[str, Any]]:
        """Add a user to a project, or reactivate a former member.

        Raises:
            ValidationError: If the user is already an active member
            AccessDeniedError: If the acting user is not owner or admin
        """
        project_id = validate_uuid_hex(project_id, "project_id")
        if not self._require_admin(project_id, user_id):
            return None
        new_user = validate_uuid_hex(data.get("user_id"), "user_id")
        role = validate_enum(data.get("role") or ProjectRole.DEVELOPER.value, ProjectRole, "role")
        if role == ProjectRole.OWNER.value:
            raise ValidationError("role", "the owner role cannot be assigned")

        with self.db.transaction():
            existing = self.db.get_member(project_id, new_user)
            if existing is not None:
                if existing["is_active"]:
                    raise ValidationError("user_id", "user is already a member of this project")
                self.db.update_member_fields(
                    existing["id"], {"is_active": True, "role": role, "joined_at": utc_now()}
                )
                member = self.db.get_member_by_id(existing["id"])
                operation = SyncOperation.UPDATE
            else:
                member = {
                    "id": uuid7().hex,
                    "project_id": project_id,
                    "user_id": new_user,
                    "role": role,
                    "joined_at": utc_now(),
                    "is_active": True,
                }
                self.db.insert_member(member)
                operation = SyncOperation.CREATE
            self._record(EntityType.PROJECT_MEMBER, member, operation, user_id)

        logger.info(f"Added user {new_user} to project {project_id} as {role}")
        return member

    def update_member(
        self, project_id: str, member_id: str, data: Dict[str, Any], user_id: str
    ) -> Optional[Dict[str, Any]]:
        project_id = validate_uuid_hex(project_id, "project_id")
        member_id = validate_uuid_hex(member_id, "member_id")
        if not self._require_admin(project_id, user_id):
            return None
        member = self.db.get_member_by_id(member_id)
        if member is None or member["project_id"] != project_id:
            return None
        if member["role"] == ProjectRole.OWNER.value:
            raise ValidationError("member_id", "the project owner cannot be changed")

        fields: Dict[str, Any] = {}
        if "role" in data:
            fields["role"] = validate_enum(data["role"], ProjectRole, "role")
            if fields["role"] == ProjectRole.OWNER.value:
                raise ValidationError("role", "the owner role cannot be assigned")
        if "is_active" in data:
            if not isinstance(data["is_active"], bool):
                raise ValidationError("is_active", "must be true or false")
            fields["is_active"] = data["is_active"]
        if not fields:
            raise ValidationError("body", "no updatable fields given")

        with self.db.transaction():
            self.db.update_member_fields(member_id, fields)
            member = self.db.get_member_by_id(member_id)
            self._record(EntityType.PROJECT_MEMBER, member, SyncOperation.UPDATE, user_id)
        return member

    def remove_member(self, project_id: str, member_id: str, user_id: str) -> bool:
        """Deactivate a membership. The owner cannot be removed."""
        project_id = validate_uuid_hex(project_id, "project_id")
        member_id = validate_uuid_hex(member_id, "member_id")
        if not self._require_admin(project_id, user_id):
            return False
        member = self.db.get_member_by_id(member_id)
        if member is None or member["project_id"] != project_id or not member["is_active"]:
            return False
        if member["role"] == ProjectRole.OWNER.value:
            raise ValidationError("member_id", "cannot remove the project owner")

        with self.db.transaction():
            self.db.update_member_fields(member_id, {"is_active": False})
            member = self.db.get_member_by_id(member_id)
            self._record(EntityType.PROJECT_MEMBER, member, SyncOperation.DELETE, user_id)

        logger.info(f"Removed member {member_id} from project {project_id}")
        return True

    # ===== Statistics =====

    def get_user_project_stats(self, user_id: str) -> Dict[str, int]:
        """Summarise the projects a user belongs to and the tasks inside them."""
        now = utc_now()
        projects = self.db.get_projects_for_user(user_id)
        tasks: List[Dict[str, Any]] = []
        for project in projects:
            tasks.extend(self.db.get_tasks_for_project(project["id"]))

        return {
            "total_projects": len(projects),
            "active_projects": sum(1 for p in projects if p["status"] == ProjectStatus.ACTIVE.value),
            "completed_projects": sum(
                1 for p in projects if p["status"] == ProjectStatus.COMPLETED.value
            ),
            "overdue_projects": sum(
                1 for p in projects
                if p["end_date"] and p["end_date"] < now and p["status"] not in CLOSED_PROJECT_STATUSES
            ),
            "total_tasks": len(tasks),
            "completed_tasks": sum(1 for t in tasks if t["status"] == TaskStatus.DONE.value),
            "overdue_tasks": sum(
                1 for t in tasks
                if t["due_date"] and t["due_date"] < now and t["status"] not in CLOSED_TASK_STATUSES
            ),
        }
