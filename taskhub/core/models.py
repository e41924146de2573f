"""Data models for TaskHub.

Enums for every status/role/strategy value and dataclasses for the sync
records that travel between client and server. Entity rows themselves are
plain dicts (see database.py), so these models cover what needs behaviour:
parsing a change from JSON, and the sync configuration.

All IDs are UUID7 hex strings (32 characters, no hyphens).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ProjectStatus(Enum):
    """Lifecycle of a project."""

    PLANNING = "planning"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProjectRole(Enum):
    """Role of a member within a project."""

    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    DEVELOPER = "developer"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"


class TaskStatus(Enum):
    """Kanban column of a task. Declaration order is column order."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    CANCELLED = "cancelled"


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EntityType(Enum):
    """Entity types that take part in synchronization."""

    PROJECT = "project"
    PROJECT_MEMBER = "project_member"
    TASK = "task"


class SyncOperation(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncItemStatus(Enum):
    """State of a sync item (server) or change log entry (client).

    pending -> in_progress -> completed, or -> failed / conflict.
    Failed items go back to pending when retried.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"


class ConflictStrategy(Enum):
    """How a sync conflict gets resolved."""

    CLIENT_WINS = "client_wins"
    SERVER_WINS = "server_wins"
    LAST_WRITER_WINS = "last_writer_wins"
    MANUAL_RESOLUTION = "manual_resolution"
    MERGE_CHANGES = "merge_changes"
    CREATE_DUPLICATE = "create_duplicate"


# Parents are applied before children within a batch.
ENTITY_ORDER: Dict[str, int] = {
    EntityType.PROJECT.value: 0,
    EntityType.PROJECT_MEMBER.value: 1,
    EntityType.TASK.value: 2,
}

# Fields carried in a sync payload for each entity type.
ENTITY_FIELDS: Dict[str, List[str]] = {
    EntityType.PROJECT.value: [
        "id", "name", "description", "status", "owner_id",
        "start_date", "end_date", "created_at", "updated_at", "deleted_at",
    ],
    EntityType.PROJECT_MEMBER.value: [
        "id", "project_id", "user_id", "role", "joined_at", "is_active",
    ],
    EntityType.TASK.value: [
        "id", "project_id", "title", "description", "status", "priority",
        "due_date", "assignee_id", "created_by_id", "estimated_hours",
        "actual_hours", "position", "created_at", "updated_at", "deleted_at",
    ],
}

# Free text fields, merged line by line rather than replaced.
TEXT_FIELDS = frozenset({"description"})

# Bookkeeping fields that never count as a divergence.
IGNORED_COMPARE_FIELDS = frozenset({"created_at", "updated_at", "joined_at"})


def enum_values(enum_cls: type) -> List[str]:
    """List the string values of an Enum class."""
    return [member.value for member in enum_cls]


@dataclass
class SyncChange:
    """A single entity change as exchanged over the sync API.

    Attributes:
        entity_type: One of EntityType values
        entity_id: ID of the changed entity
        operation: One of SyncOperation values
        data: Full entity payload after the change (may be partial for deletes)
        timestamp: When the change was made on its origin
        change_id: Origin-side identifier (client change log id or server item id)
    """

    entity_type: str
    entity_id: str
    operation: str
    data: Dict[str, Any]
    timestamp: str
    change_id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SyncChange":
        return cls(
            entity_type=raw.get("entity_type", ""),
            entity_id=raw.get("entity_id", ""),
            operation=raw.get("operation", ""),
            data=raw.get("data") or {},
            timestamp=raw.get("timestamp", ""),
            change_id=raw.get("change_id") or raw.get("id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EntitySyncConfig:
    """Per entity type sync behaviour.

    Attributes:
        enabled: Whether changes of this type are accepted at all
        default_strategy: Strategy used when conflicts are auto-resolved
        priority: 1 (highest) to 10 (lowest), informational ordering hint
        requires_manual_conflict_resolution: Never auto-resolve this type
        conflict_fields: Fields compared when detecting a conflict (empty = all)
    """

    enabled: bool = True
    default_strategy: str = ConflictStrategy.SERVER_WINS.value
    priority: int = 5
    requires_manual_conflict_resolution: bool = False
    conflict_fields: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EntitySyncConfig":
        return cls(
            enabled=bool(raw.get("enabled", True)),
            default_strategy=raw.get("default_strategy", ConflictStrategy.SERVER_WINS.value),
            priority=int(raw.get("priority", 5)),
            requires_manual_conflict_resolution=bool(
                raw.get("requires_manual_conflict_resolution", False)
            ),
            conflict_fields=list(raw.get("conflict_fields") or []),
        )


@dataclass
class SyncConfiguration:
    """Server-wide sync settings."""

    max_retry_attempts: int = 3
    retry_delay_minutes: int = 1
    batch_size: int = 100
    auto_resolve_conflicts: bool = False
    default_strategy: str = ConflictStrategy.SERVER_WINS.value
    entity_configurations: Dict[str, EntitySyncConfig] = field(default_factory=dict)

    def for_entity(self, entity_type: str) -> EntitySyncConfig:
        """Get the config for an entity type, falling back to the global default."""
        config = self.entity_configurations.get(entity_type)
        if config is None:
            return EntitySyncConfig(default_strategy=self.default_strategy)
        return config

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SyncConfiguration":
        entities = raw.get("entity_configurations") or {}
        return cls(
            max_retry_attempts=int(raw.get("max_retry_attempts", 3)),
            retry_delay_minutes=int(raw.get("retry_delay_minutes", 1)),
            batch_size=int(raw.get("batch_size", 100)),
            auto_resolve_conflicts=bool(raw.get("auto_resolve_conflicts", False)),
            default_strategy=raw.get("default_strategy", ConflictStrategy.SERVER_WINS.value),
            entity_configurations={
                name: EntitySyncConfig.from_dict(value) for name, value in entities.items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
