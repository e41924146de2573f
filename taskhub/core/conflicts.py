"""Conflict detection and resolution for TaskHub sync.

This module handles:
- Detecting whether an incoming client change collides with changes other
  origins made since the client's last checkpoint
- Turning a resolution strategy into the data that should win
- Bookkeeping of server-side conflict records (listing, lookup by prefix,
  marking resolved)

Conflict kinds:
- both sides modified the entity and disagree on compared fields
- the client modified an entity the server deleted
- the client deleted an entity the server modified
"""

from __future__ import annotations

import difflib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from uuid6 import uuid7

from .database import Database, entity_payload
from .merge import changed_fields, merge_entity_data
from .models import (
    ConflictStrategy,
    EntitySyncConfig,
    EntityType,
    SyncChange,
    SyncOperation,
)
from .timestamp_utils import utc_now
from .validation import ValidationError, validate_strategy

logger = logging.getLogger(__name__)

__all__ = [
    "ConflictCheck",
    "Resolution",
    "ConflictManager",
    "detect_conflict",
    "is_deleted",
    "recommend_strategy",
    "resolve_data",
    "get_diff_preview",
]

DUPLICATE_SUFFIX = " (copy)"


@dataclass
class ConflictCheck:
    """Outcome of a conflict check that found a collision.

    Attributes:
        server_data: Current server payload of the entity
        server_timestamp: When the latest competing change was received
        server_operation: Operation of the latest competing change
        reason: Human readable description
        fields: Fields that disagree (empty for delete conflicts)
        base_data: Entity payload as of the client's checkpoint, if known
    """

    server_data: Dict[str, Any]
    server_timestamp: str
    server_operation: str
    reason: str
    fields: List[str] = field(default_factory=list)
    base_data: Optional[Dict[str, Any]] = None


@dataclass
class Resolution:
    """Data that results from applying a strategy to a conflict.

    Attributes:
        data: Payload that becomes the entity's state
        operation: Operation to record (update, or delete when a delete wins)
        duplicate: Payload of a new entity to create (create_duplicate only)
        conflicted_fields: Text fields left with conflict markers (merge only)
    """

    data: Dict[str, Any]
    operation: str
    duplicate: Optional[Dict[str, Any]] = None
    conflicted_fields: List[str] = field(default_factory=list)


def is_deleted(entity_type: str, data: Dict[str, Any]) -> bool:
    """Whether a payload represents a deleted entity."""
    if entity_type == EntityType.PROJECT_MEMBER.value:
        return data.get("is_active") is False
    return bool(data.get("deleted_at"))


def recommend_strategy(
    entity_config: EntitySyncConfig, client_operation: str, server_deleted: bool
) -> str:
    """Pick the strategy to suggest for a new conflict.

    Entity types that require manual resolution always get manual. Merging
    makes no sense when one side deleted, so last-writer-wins replaces it.
    """
    if entity_config.requires_manual_conflict_resolution:
        return ConflictStrategy.MANUAL_RESOLUTION.value
    strategy = entity_config.default_strategy
    involves_delete = client_operation == SyncOperation.DELETE.value or server_deleted
    if involves_delete and strategy in (
        ConflictStrategy.MERGE_CHANGES.value,
        ConflictStrategy.CREATE_DUPLICATE.value,
    ):
        return ConflictStrategy.LAST_WRITER_WINS.value
    return strategy


def detect_conflict(
    db: Database,
    change: SyncChange,
    client_id: str,
    since: Optional[str],
    entity_config: EntitySyncConfig,
) -> Optional[ConflictCheck]:
    """Check a client change against changes from other origins.

    Args:
        db: Server database
        change: Validated incoming change
        client_id: Client that sent the change
        since: Client's checkpoint for this entity type (None = never synced)
        entity_config: Sync settings for the entity type

    Returns:
        ConflictCheck if the change collides, None if it can be applied
    """
    remote = db.get_remote_changes_for_entity(
        change.entity_type, change.entity_id, since, client_id
    )
    if not remote:
        return None

    latest = remote[-1]
    current = db.get_entity(change.entity_type, change.entity_id)
    server_data = entity_payload(change.entity_type, current) if current else latest["data"]
    server_deleted = is_deleted(change.entity_type, server_data)
    base_data = db.get_entity_data_at(change.entity_type, change.entity_id, since) if since else None

    if change.operation == SyncOperation.DELETE.value:
        if server_deleted:
            return None
        reason = "Entity was deleted on the client but modified on the server"
        fields: List[str] = []
    elif server_deleted and not is_deleted(change.entity_type, change.data):
        reason = "Entity was modified on the client but deleted on the server"
        fields = []
    else:
        # Fields the client did not send cannot disagree
        compared = [
            k for k in (entity_config.conflict_fields or change.data)
            if k in change.data and k != "id"
        ]
        fields = changed_fields(change.data, server_data, compared) if compared else []
        if not fields:
            return None
        reason = f"Concurrent modification of {', '.join(fields)}"

    logger.warning(
        f"Conflict on {change.entity_type} {change.entity_id} from client {client_id}: {reason}"
    )
    return ConflictCheck(
        server_data=server_data,
        server_timestamp=latest["timestamp"],
        server_operation=latest["operation"],
        reason=reason,
        fields=fields,
        base_data=base_data,
    )


def _duplicate_payload(entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    duplicate = dict(data)
    duplicate["id"] = uuid7().hex
    duplicate["deleted_at"] = None
    now = utc_now()
    duplicate["created_at"] = now
    duplicate["updated_at"] = now
    label = "name" if entity_type == EntityType.PROJECT.value else "title"
    duplicate[label] = (duplicate.get(label) or "") + DUPLICATE_SUFFIX
    return duplicate


def resolve_data(
    strategy: str,
    entity_type: str,
    client_data: Dict[str, Any],
    server_data: Dict[str, Any],
    client_timestamp: str,
    server_timestamp: str,
    client_operation: str = SyncOperation.UPDATE.value,
    base_data: Optional[Dict[str, Any]] = None,
    custom_data: Optional[Dict[str, Any]] = None,
) -> Resolution:
    """Compute the winning data for a conflict.

    Raises:
        ValidationError: For an unknown strategy, manual resolution without
            custom_data, or create_duplicate on an entity that cannot be copied
    """
    validate_strategy(strategy)
    client_deletes = client_operation == SyncOperation.DELETE.value

    def client_side() -> Resolution:
        if client_deletes:
            data = dict(server_data)
            if entity_type == EntityType.PROJECT_MEMBER.value:
                data["is_active"] = False
            else:
                data["deleted_at"] = client_data.get("deleted_at") or client_timestamp
            return Resolution(data=data, operation=SyncOperation.DELETE.value)
        return Resolution(data=dict(server_data, **client_data), operation=SyncOperation.UPDATE.value)

    def server_side() -> Resolution:
        operation = (
            SyncOperation.DELETE.value if is_deleted(entity_type, server_data)
            else SyncOperation.UPDATE.value
        )
        return Resolution(data=dict(server_data), operation=operation)

    if strategy == ConflictStrategy.CLIENT_WINS.value:
        return client_side()
    if strategy == ConflictStrategy.SERVER_WINS.value:
        return server_side()
    if strategy == ConflictStrategy.LAST_WRITER_WINS.value:
        # Ties go to the server
        return client_side() if client_timestamp > server_timestamp else server_side()
    if strategy == ConflictStrategy.MANUAL_RESOLUTION.value:
        if not isinstance(custom_data, dict) or not custom_data:
            raise ValidationError("custom_data", "is required for manual resolution")
        data = dict(server_data, **custom_data)
        data["id"] = server_data.get("id", client_data.get("id"))
        operation = (
            SyncOperation.DELETE.value if is_deleted(entity_type, data) else SyncOperation.UPDATE.value
        )
        return Resolution(data=data, operation=operation)
    if strategy == ConflictStrategy.MERGE_CHANGES.value:
        if client_deletes or is_deleted(entity_type, server_data):
            # Nothing to merge field by field when one side is gone
            return client_side() if client_timestamp > server_timestamp else server_side()
        merged = merge_entity_data(
            client_data, server_data, client_timestamp, server_timestamp, base_data
        )
        return Resolution(
            data=merged.data,
            operation=SyncOperation.UPDATE.value,
            conflicted_fields=merged.conflicted_fields,
        )

    # create_duplicate: server version stays, client version becomes a copy
    if entity_type == EntityType.PROJECT_MEMBER.value:
        raise ValidationError("strategy", "project memberships cannot be duplicated")
    resolution = server_side()
    if not client_deletes:
        resolution.duplicate = _duplicate_payload(entity_type, dict(server_data, **client_data))
    return resolution


def get_diff_preview(client_data: Dict[str, Any], server_data: Dict[str, Any]) -> str:
    """Get a human-readable unified diff between two payloads.

    Args:
        client_data: Client (local) version
        server_data: Server (remote) version

    Returns:
        Unified diff string
    """
    client_lines = json.dumps(client_data, indent=2, sort_keys=True).splitlines(keepends=True)
    server_lines = json.dumps(server_data, indent=2, sort_keys=True).splitlines(keepends=True)
    diff = difflib.unified_diff(
        client_lines,
        server_lines,
        fromfile="Client",
        tofile="Server",
    )
    return "".join(diff)


class ConflictManager:
    """Manages server-side sync conflict records."""

    def __init__(self, db: Database) -> None:
        """Initialize conflict manager.

        Args:
            db: Database instance
        """
        self.db = db

    def record_conflict(
        self,
        client_id: str,
        user_id: Optional[str],
        change: SyncChange,
        check: ConflictCheck,
        recommended_strategy: str,
        client_timestamp: str,
        sync_item_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store a new unresolved conflict and return it."""
        conflict = {
            "id": uuid7().hex,
            "client_id": client_id,
            "user_id": user_id,
            "entity_type": change.entity_type,
            "entity_id": change.entity_id,
            "client_data": change.data,
            "server_data": check.server_data,
            "base_data": check.base_data,
            "client_timestamp": client_timestamp,
            "server_timestamp": check.server_timestamp,
            "client_operation": change.operation,
            "sync_item_id": sync_item_id,
            "recommended_strategy": recommended_strategy,
            "applied_strategy": None,
            "reason": check.reason,
            "is_resolved": False,
            "resolution_data": None,
            "resolved_by": None,
            "resolved_at": None,
            "created_at": utc_now(),
        }
        self.db.insert_conflict(conflict)
        return self.db.get_conflict(conflict["id"])

    def get_conflicts(self, client_id: Optional[str] = None, include_resolved: bool = False) -> List[Dict[str, Any]]:
        return self.db.get_conflicts(client_id, include_resolved)

    def get_unresolved_count(self, client_id: Optional[str] = None) -> int:
        return len(self.db.get_conflicts(client_id, include_resolved=False))

    def find_conflict(self, conflict_id_prefix: str) -> Optional[Dict[str, Any]]:
        """Find a conflict by full ID or unique prefix.

        Raises:
            ValidationError: If the prefix matches more than one conflict
        """
        exact = self.db.get_conflict(conflict_id_prefix)
        if exact is not None:
            return exact
        matches = [
            c for c in self.db.get_conflicts(None, include_resolved=True)
            if c["id"].startswith(conflict_id_prefix)
        ]
        if len(matches) > 1:
            raise ValidationError("conflict_id", f"prefix '{conflict_id_prefix}' is ambiguous")
        return matches[0] if matches else None

    def mark_resolved(
        self,
        conflict_id: str,
        strategy: str,
        resolution_data: Dict[str, Any],
        resolved_by: Optional[str],
    ) -> Dict[str, Any]:
        self.db.update_conflict_fields(conflict_id, {
            "is_resolved": True,
            "applied_strategy": strategy,
            "resolution_data": resolution_data,
            "resolved_by": resolved_by,
            "resolved_at": utc_now(),
        })
        logger.info(f"Resolved conflict {conflict_id} with {strategy}")
        return self.db.get_conflict(conflict_id)
