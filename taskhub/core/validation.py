"""Input validation for TaskHub.

This module provides validation functions for all user inputs.
All validators raise ValidationError with descriptive messages, and most
return the normalised value so callers can write ``x = validate_x(x)``.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Type

from .models import (
    ConflictStrategy,
    EntityType,
    ProjectRole,
    ProjectStatus,
    SyncChange,
    SyncConfiguration,
    SyncOperation,
    TaskPriority,
    TaskStatus,
    enum_values,
)
from .timestamp_utils import normalize_timestamp


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


class AccessDeniedError(PermissionError):
    """Raised when a user acts on a project they have no rights on."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


__all__ = [
    "ValidationError",
    "AccessDeniedError",
    "validate_uuid_hex",
    "validate_optional_uuid_hex",
    "validate_text",
    "validate_project_name",
    "validate_task_title",
    "validate_description",
    "validate_comment_content",
    "validate_enum",
    "validate_timestamp",
    "validate_date_range",
    "validate_non_negative_int",
    "validate_pagination",
    "validate_entity_type",
    "validate_operation",
    "validate_strategy",
    "validate_sync_change",
    "validate_entity_payload",
    "validate_sync_configuration",
    "validate_client_info",
]

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_COMMENT_LENGTH = 5000
MAX_PAGE_SIZE = 500
UUID_HEX_LENGTH = 32


def validate_uuid_hex(value: Any, field_name: str = "id") -> str:
    """Validate a UUID hex string and return it lowercase without hyphens."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    hex_value = value.replace("-", "").lower()
    if len(hex_value) != UUID_HEX_LENGTH:
        raise ValidationError(
            field_name, f"must be {UUID_HEX_LENGTH} hex characters, got {len(hex_value)}"
        )
    try:
        return uuid.UUID(hex=hex_value).hex
    except ValueError as e:
        raise ValidationError(field_name, f"invalid UUID format: {e}") from None


def validate_optional_uuid_hex(value: Any, field_name: str = "id") -> Optional[str]:
    if value is None or value == "":
        return None
    return validate_uuid_hex(value, field_name)


def validate_text(
    value: Any,
    field_name: str,
    max_length: int,
    required: bool = True,
) -> str:
    """Validate a text value and return it stripped.

    Args:
        value: Candidate value
        field_name: Name used in the error
        max_length: Maximum length after stripping
        required: If True, empty or whitespace-only text is rejected
    """
    if value is None and not required:
        return ""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    stripped = value.strip()
    if required and not stripped:
        raise ValidationError(field_name, "cannot be empty or whitespace only")
    if len(stripped) > max_length:
        raise ValidationError(
            field_name, f"cannot exceed {max_length} characters (got {len(stripped)})"
        )
    return stripped


def validate_project_name(name: Any) -> str:
    return validate_text(name, "name", MAX_NAME_LENGTH)


def validate_task_title(title: Any) -> str:
    return validate_text(title, "title", MAX_NAME_LENGTH)


def validate_description(description: Any) -> str:
    return validate_text(description, "description", MAX_DESCRIPTION_LENGTH, required=False)


def validate_comment_content(content: Any) -> str:
    return validate_text(content, "content", MAX_COMMENT_LENGTH)


def validate_enum(value: Any, enum_cls: Type, field_name: str) -> str:
    """Validate that value is one of an Enum's string values."""
    allowed = enum_values(enum_cls)
    if value not in allowed:
        raise ValidationError(
            field_name, f"must be one of {', '.join(allowed)} (got {value!r})"
        )
    return value


def validate_timestamp(
    value: Any, field_name: str, required: bool = False
) -> Optional[str]:
    """Validate an ISO-8601 timestamp and return it in canonical form."""
    if value is None or value == "":
        if required:
            raise ValidationError(field_name, "is required")
        return None
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be an ISO-8601 string, got {type(value).__name__}"
        )
    try:
        return normalize_timestamp(value)
    except ValueError:
        raise ValidationError(field_name, f"invalid ISO-8601 timestamp: {value!r}") from None


def validate_date_range(start: Optional[str], end: Optional[str]) -> None:
    """Validate that end is not before start (both canonical or None)."""
    if start and end and end < start:
        raise ValidationError("end_date", "cannot be before start_date")


def validate_non_negative_int(value: Any, field_name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            field_name, f"must be an integer, got {type(value).__name__}"
        )
    if value < 0:
        raise ValidationError(field_name, f"cannot be negative (got {value})")
    return value


def validate_pagination(page: Any, page_size: Any) -> tuple[int, int]:
    """Validate 1-based page number and page size."""
    try:
        page = int(page)
        page_size = int(page_size)
    except (TypeError, ValueError):
        raise ValidationError("page", "page and page_size must be integers") from None
    if page < 1:
        raise ValidationError("page", f"must be at least 1 (got {page})")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(
            "page_size", f"must be between 1 and {MAX_PAGE_SIZE} (got {page_size})"
        )
    return page, page_size


def validate_entity_type(value: Any) -> str:
    return validate_enum(value, EntityType, "entity_type")


def validate_operation(value: Any) -> str:
    return validate_enum(value, SyncOperation, "operation")


def validate_strategy(value: Any) -> str:
    return validate_enum(value, ConflictStrategy, "strategy")


def validate_sync_change(raw: Any) -> SyncChange:
    """Validate a change received from a sync peer.

    Checks entity type, operation, ids and timestamp. The payload id, when
    present, must match entity_id.
    """
    if not isinstance(raw, dict):
        raise ValidationError("change", f"must be an object, got {type(raw).__name__}")
    change = SyncChange.from_dict(raw)
    validate_entity_type(change.entity_type)
    validate_operation(change.operation)
    change.entity_id = validate_uuid_hex(change.entity_id, "entity_id")
    if not isinstance(change.data, dict):
        raise ValidationError("data", "must be an object")
    if change.operation != SyncOperation.DELETE.value and not change.data:
        raise ValidationError("data", f"is required for {change.operation}")
    payload_id = change.data.get("id")
    if payload_id is not None and validate_uuid_hex(payload_id, "data.id") != change.entity_id:
        raise ValidationError("data.id", "does not match entity_id")
    change.timestamp = validate_timestamp(change.timestamp, "timestamp", required=True)
    return change


def validate_entity_payload(entity_type: str, data: Dict[str, Any], timestamp: str) -> Dict[str, Any]:
    """Validate a full entity payload and return a complete row.

    Unknown keys are dropped. Missing optional fields get their defaults and
    missing created_at/updated_at fall back to ``timestamp``.

    Args:
        entity_type: One of EntityType values
        data: Payload as received
        timestamp: Canonical timestamp of the change
    """
    validate_entity_type(entity_type)
    row: Dict[str, Any] = {"id": validate_uuid_hex(data.get("id"), "id")}

    if entity_type == EntityType.PROJECT.value:
        row["name"] = validate_project_name(data.get("name"))
        row["description"] = validate_description(data.get("description"))
        row["status"] = validate_enum(
            data.get("status") or ProjectStatus.PLANNING.value, ProjectStatus, "status"
        )
        row["owner_id"] = validate_uuid_hex(data.get("owner_id"), "owner_id")
        row["start_date"] = validate_timestamp(data.get("start_date"), "start_date")
        row["end_date"] = validate_timestamp(data.get("end_date"), "end_date")
        validate_date_range(row["start_date"], row["end_date"])
    elif entity_type == EntityType.TASK.value:
        row["project_id"] = validate_uuid_hex(data.get("project_id"), "project_id")
        row["title"] = validate_task_title(data.get("title"))
        row["description"] = validate_description(data.get("description"))
        row["status"] = validate_enum(
            data.get("status") or TaskStatus.TODO.value, TaskStatus, "status"
        )
        row["priority"] = validate_enum(
            data.get("priority") or TaskPriority.MEDIUM.value, TaskPriority, "priority"
        )
        row["due_date"] = validate_timestamp(data.get("due_date"), "due_date")
        row["assignee_id"] = validate_optional_uuid_hex(data.get("assignee_id"), "assignee_id")
        row["created_by_id"] = validate_uuid_hex(data.get("created_by_id"), "created_by_id")
        for key in ("estimated_hours", "actual_hours", "position"):
            row[key] = validate_non_negative_int(data.get(key, 0), key)
    else:
        row["project_id"] = validate_uuid_hex(data.get("project_id"), "project_id")
        row["user_id"] = validate_uuid_hex(data.get("user_id"), "user_id")
        row["role"] = validate_enum(
            data.get("role") or ProjectRole.DEVELOPER.value, ProjectRole, "role"
        )
        row["joined_at"] = validate_timestamp(data.get("joined_at"), "joined_at") or timestamp
        row["is_active"] = bool(data.get("is_active", True))
        return row

    row["created_at"] = validate_timestamp(data.get("created_at"), "created_at") or timestamp
    row["updated_at"] = validate_timestamp(data.get("updated_at"), "updated_at") or timestamp
    row["deleted_at"] = validate_timestamp(data.get("deleted_at"), "deleted_at")
    return row


def validate_sync_configuration(raw: Any) -> SyncConfiguration:
    """Validate a sync configuration document and build the dataclass."""
    if not isinstance(raw, dict):
        raise ValidationError("configuration", "must be an object")
    for key in ("max_retry_attempts", "retry_delay_minutes"):
        if key in raw:
            validate_non_negative_int(raw[key], key)
    if "batch_size" in raw:
        size = validate_non_negative_int(raw["batch_size"], "batch_size")
        if size < 1 or size > 1000:
            raise ValidationError("batch_size", f"must be between 1 and 1000 (got {size})")
    if "default_strategy" in raw:
        validate_strategy(raw["default_strategy"])
    entities = raw.get("entity_configurations") or {}
    if not isinstance(entities, dict):
        raise ValidationError("entity_configurations", "must be an object keyed by entity type")
    for entity_type, entity_raw in entities.items():
        validate_entity_type(entity_type)
        if not isinstance(entity_raw, dict):
            raise ValidationError("entity_configurations", f"{entity_type} must be an object")
        if "default_strategy" in entity_raw:
            validate_strategy(entity_raw["default_strategy"])
        priority = entity_raw.get("priority", 5)
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 10:
            raise ValidationError("priority", f"must be an integer 1-10 (got {priority!r})")
        fields: List[str] = entity_raw.get("conflict_fields") or []
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            raise ValidationError("conflict_fields", "must be a list of field names")
    return SyncConfiguration.from_dict(raw)


def validate_client_info(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a client registration body."""
    if not isinstance(raw, dict):
        raise ValidationError("client", "must be an object")
    return {
        "client_id": validate_uuid_hex(raw.get("client_id"), "client_id"),
        "user_id": validate_optional_uuid_hex(raw.get("user_id"), "user_id"),
        "device_name": validate_text(raw.get("device_name"), "device_name", 100, required=False),
        "platform": validate_text(raw.get("platform"), "platform", 50, required=False),
        "app_version": validate_text(raw.get("app_version"), "app_version", 50, required=False),
    }
