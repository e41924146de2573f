"""Offline storage for TaskHub clients.

The client keeps its own SQLite file with a copy of the projects, members
and tasks it knows about, plus an append-only change log of local edits
waiting to be pushed to the server.

Local edits mark the entity dirty and append a pending change. Changes
received from the server are applied without touching the change log.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from uuid6 import uuid7

from .models import (
    ENTITY_FIELDS,
    EntityType,
    ProjectRole,
    SyncItemStatus,
    SyncOperation,
    TaskStatus,
)
from .timestamp_utils import timestamp_days_ago, utc_now
from .validation import (
    ValidationError,
    validate_entity_payload,
    validate_entity_type,
    validate_operation,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)

__all__ = ["LocalStore", "GLOBAL_CURSOR"]

# Cursor key for the last complete sync exchange
GLOBAL_CURSOR = "last_sync"

LOCAL_TABLES: Dict[str, str] = {
    EntityType.PROJECT.value: "local_projects",
    EntityType.PROJECT_MEMBER.value: "local_members",
    EntityType.TASK.value: "local_tasks",
}

# Change log entries that have not reached the server yet
UNSENT_STATUSES = (
    SyncItemStatus.PENDING.value,
    SyncItemStatus.IN_PROGRESS.value,
    SyncItemStatus.FAILED.value,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS local_projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    server_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS local_members (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    server_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS local_tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    priority TEXT NOT NULL,
    due_date TEXT,
    assignee_id TEXT,
    created_by_id TEXT NOT NULL,
    estimated_hours INTEGER NOT NULL DEFAULT 0,
    actual_hours INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    server_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS change_log (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    data TEXT NOT NULL,
    user_id TEXT,
    device_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_change_log_status ON change_log(status, timestamp);
CREATE INDEX IF NOT EXISTS idx_change_log_entity ON change_log(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS sync_cursors (
    entity_type TEXT PRIMARY KEY,
    last_sync_timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS local_conflicts (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    local_data TEXT NOT NULL,
    server_data TEXT NOT NULL,
    local_timestamp TEXT NOT NULL,
    server_timestamp TEXT NOT NULL,
    server_conflict_id TEXT,
    change_ids TEXT NOT NULL DEFAULT '[]',
    is_resolved INTEGER NOT NULL DEFAULT 0,
    resolution TEXT,
    resolved_at TEXT,
    created_at TEXT NOT NULL
);
"""

_JSON_COLUMNS = ("data", "local_data", "server_data", "change_ids")
_BOOL_COLUMNS = ("is_dirty", "is_active", "is_resolved")


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    result = dict(row)
    for column in _BOOL_COLUMNS:
        if column in result and result[column] is not None:
            result[column] = bool(result[column])
    for column in _JSON_COLUMNS:
        if column in result and isinstance(result[column], str):
            result[column] = json.loads(result[column])
    return result


def _payload(entity_type: str, row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: row.get(key) for key in ENTITY_FIELDS[entity_type]}


class LocalStore:
    """Client-side SQLite store with a change log for offline edits."""

    def __init__(self, db_path: Union[Path, str], device_id: str, user_id: str) -> None:
        """Open (and create if needed) the local database.

        Args:
            db_path: Path to the SQLite file, or ':memory:'
            device_id: This client's ID, written into change log entries
            user_id: Local user, used as owner/creator of new entities
        """
        self.device_id = device_id
        self.user_id = user_id
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        with self.conn:
            self.conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and commit (or roll back) everything in the block."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            self._depth = 1
            try:
                with self.conn:
                    yield self.conn
            finally:
                self._depth = 0

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            return _row_to_dict(self.conn.execute(sql, tuple(params)).fetchone())

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            return [_row_to_dict(r) for r in self.conn.execute(sql, tuple(params)).fetchall()]

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        with self.transaction():
            return self.conn.execute(sql, tuple(params)).rowcount

    # ===== Entity rows =====

    def _write_row(self, entity_type: str, row: Dict[str, Any], is_dirty: bool,
                   server_updated_at: Optional[str] = None) -> None:
        table = LOCAL_TABLES[entity_type]
        values = _payload(entity_type, row)
        values["is_dirty"] = is_dirty
        if server_updated_at is not None:
            values["server_updated_at"] = server_updated_at
        columns = list(values)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        with self.transaction():
            self.conn.execute(
                f"""
                INSERT INTO {table} ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(id) DO UPDATE SET {assignments}
                """,
                [int(v) if isinstance(v, bool) else v for v in values.values()],
            )

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get a local entity row (soft-deleted rows included)."""
        table = LOCAL_TABLES[validate_entity_type(entity_type)]
        return self._fetchone(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))

    def save_entity(self, entity_type: str, data: Dict[str, Any], operation: str) -> Dict[str, Any]:
        """Validate and store a local edit, appending a pending change.

        Returns:
            The stored entity payload
        """
        validate_operation(operation)
        now = utc_now()
        row = validate_entity_payload(entity_type, data, now)
        with self.transaction():
            self._write_row(entity_type, row, is_dirty=True)
            self._log_change(entity_type, row["id"], operation, row, now)
        return row

    def _log_change(
        self, entity_type: str, entity_id: str, operation: str, data: Dict[str, Any], timestamp: str
    ) -> str:
        change_id = uuid7().hex
        self._execute(
            """
            INSERT INTO change_log
                (id, entity_type, entity_id, operation, data, user_id, device_id, timestamp, status)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                change_id, entity_type, entity_id, operation,
                json.dumps(data, sort_keys=True), self.user_id, self.device_id,
                timestamp, SyncItemStatus.PENDING.value,
            ),
        )
        logger.debug(f"Logged local {operation} of {entity_type} {entity_id}")
        return change_id

    # ===== Projects =====

    def create_project(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a project owned by the local user, with its owner membership."""
        project = dict(data)
        project["id"] = uuid7().hex
        project["owner_id"] = self.user_id
        project["deleted_at"] = None
        with self.transaction():
            row = self.save_entity(EntityType.PROJECT.value, project, SyncOperation.CREATE.value)
            self.save_entity(
                EntityType.PROJECT_MEMBER.value,
                {
                    "id": uuid7().hex,
                    "project_id": row["id"],
                    "user_id": self.user_id,
                    "role": ProjectRole.OWNER.value,
                    "is_active": True,
                },
                SyncOperation.CREATE.value,
            )
        logger.info(f"Created local project {row['id']}")
        return row

    def get_project(self, project_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        project = self.get_entity(EntityType.PROJECT.value, project_id)
        if project is None or (project["deleted_at"] and not include_deleted):
            return None
        return project

    def list_projects(self, include_deleted: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM local_projects"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        return self._fetchall(sql + " ORDER BY created_at DESC, id DESC")

    def update_project(self, project_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update. Returns None if the project does not exist."""
        current = self.get_project(project_id)
        if current is None:
            return None
        data = dict(_payload(EntityType.PROJECT.value, current), **fields)
        data["id"] = project_id
        data["updated_at"] = utc_now()
        return self.save_entity(EntityType.PROJECT.value, data, SyncOperation.UPDATE.value)

    def delete_project(self, project_id: str) -> bool:
        return self._soft_delete(EntityType.PROJECT.value, self.get_project(project_id))

    def get_members(self, project_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM local_members WHERE project_id = ? AND is_active = 1 ORDER BY joined_at",
            (project_id,),
        )

    # ===== Tasks =====

    def create_task(self, project_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a task at the end of its status column.

        Raises:
            ValidationError: If the project is unknown locally or data is invalid
        """
        if self.get_project(project_id) is None:
            raise ValidationError("project_id", f"project {project_id} not found")
        task = dict(data)
        task["id"] = uuid7().hex
        task["project_id"] = project_id
        task["created_by_id"] = self.user_id
        status = task.get("status") or TaskStatus.TODO.value
        row = self._fetchone(
            """
            SELECT COALESCE(MAX(position), -1) AS pos FROM local_tasks
            WHERE project_id = ? AND status = ? AND deleted_at IS NULL
            """,
            (project_id, status),
        )
        task["position"] = row["pos"] + 1
        created = self.save_entity(EntityType.TASK.value, task, SyncOperation.CREATE.value)
        logger.info(f"Created local task {created['id']}")
        return created

    def get_task(self, task_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        task = self.get_entity(EntityType.TASK.value, task_id)
        if task is None or (task["deleted_at"] and not include_deleted):
            return None
        return task

    def list_tasks(self, project_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM local_tasks WHERE deleted_at IS NULL"
        params: List[Any] = []
        if project_id:
            sql += " AND project_id = ?"
            params.append(project_id)
        if status:
            sql += " AND status = ?"
            params.append(status)
        return self._fetchall(sql + " ORDER BY project_id, status, position, created_at", params)

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        current = self.get_task(task_id)
        if current is None:
            return None
        data = dict(_payload(EntityType.TASK.value, current), **fields)
        data["id"] = task_id
        data["updated_at"] = utc_now()
        return self.save_entity(EntityType.TASK.value, data, SyncOperation.UPDATE.value)

    def delete_task(self, task_id: str) -> bool:
        return self._soft_delete(EntityType.TASK.value, self.get_task(task_id))

    def _soft_delete(self, entity_type: str, current: Optional[Dict[str, Any]]) -> bool:
        if current is None:
            return False
        now = utc_now()
        data = _payload(entity_type, current)
        data["deleted_at"] = now
        data["updated_at"] = now
        self.save_entity(entity_type, data, SyncOperation.DELETE.value)
        logger.info(f"Deleted local {entity_type} {current['id']}")
        return True

    # ===== Change log =====

    def get_change(self, change_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM change_log WHERE id = ?", (change_id,))

    def get_pending_changes(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get pending changes, oldest first."""
        return self._fetchall(
            "SELECT * FROM change_log WHERE status = ? ORDER BY timestamp, id LIMIT ?",
            (SyncItemStatus.PENDING.value, limit),
        )

    def get_unsent_change(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get the newest change of an entity that has not reached the server."""
        placeholders = ", ".join("?" for _ in UNSENT_STATUSES)
        return self._fetchone(
            f"""
            SELECT * FROM change_log
            WHERE entity_type = ? AND entity_id = ? AND status IN ({placeholders})
            ORDER BY timestamp DESC, id DESC LIMIT 1
            """,
            (entity_type, entity_id, *UNSENT_STATUSES),
        )

    def _set_status(self, change_ids: List[str], status: str, extra: str = "", params: Iterable[Any] = ()) -> int:
        if not change_ids:
            return 0
        placeholders = ", ".join("?" for _ in change_ids)
        return self._execute(
            f"UPDATE change_log SET status = ?{extra} WHERE id IN ({placeholders})",
            (status, *params, *change_ids),
        )

    def mark_changes_in_progress(self, change_ids: List[str]) -> int:
        return self._set_status(change_ids, SyncItemStatus.IN_PROGRESS.value)

    def mark_changes_synced(self, change_ids: List[str]) -> int:
        """Mark changes completed and clear the dirty flag of fully synced entities."""
        with self.transaction():
            count = self._set_status(
                change_ids, SyncItemStatus.COMPLETED.value,
                ", synced_at = ?, error_message = NULL", (utc_now(),),
            )
            for change_id in change_ids:
                change = self.get_change(change_id)
                if change is not None:
                    self._clear_dirty_if_synced(change["entity_type"], change["entity_id"])
        return count

    def _clear_dirty_if_synced(self, entity_type: str, entity_id: str) -> None:
        if self.get_unsent_change(entity_type, entity_id) is None:
            self._execute(
                f"UPDATE {LOCAL_TABLES[entity_type]} SET is_dirty = 0 WHERE id = ?", (entity_id,)
            )

    def mark_change_failed(self, change_id: str, error_message: str, permanent: bool = False,
                           max_retries: int = 3) -> bool:
        """Record a failed push attempt.

        A permanent failure jumps straight to the retry limit so it is not
        requeued.
        """
        retry_expr = "?" if permanent else "retry_count + 1"
        params: List[Any] = [error_message]
        if permanent:
            params.append(max_retries)
        return self._set_status(
            [change_id], SyncItemStatus.FAILED.value,
            f", error_message = ?, retry_count = {retry_expr}", params,
        ) > 0

    def mark_change_conflict(self, change_id: str, error_message: Optional[str] = None) -> bool:
        return self._set_status(
            [change_id], SyncItemStatus.CONFLICT.value, ", error_message = ?", (error_message,)
        ) > 0

    def mark_entity_changes_conflict(self, entity_type: str, entity_id: str) -> List[str]:
        """Hold back every unsent change of an entity. Returns their IDs."""
        placeholders = ", ".join("?" for _ in UNSENT_STATUSES)
        rows = self._fetchall(
            f"""
            SELECT id FROM change_log
            WHERE entity_type = ? AND entity_id = ? AND status IN ({placeholders})
            """,
            (entity_type, entity_id, *UNSENT_STATUSES),
        )
        ids = [row["id"] for row in rows]
        self._set_status(ids, SyncItemStatus.CONFLICT.value)
        return ids

    def cancel_changes(self, change_ids: List[str]) -> int:
        return self._set_status(change_ids, SyncItemStatus.CANCELLED.value)

    def reset_in_progress(self) -> int:
        """Return changes left in progress by an interrupted sync to pending."""
        count = self._execute(
            "UPDATE change_log SET status = ? WHERE status = ?",
            (SyncItemStatus.PENDING.value, SyncItemStatus.IN_PROGRESS.value),
        )
        if count:
            logger.info(f"Reset {count} in-progress changes to pending")
        return count

    def get_failed_changes(self, max_retries: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM change_log WHERE status = ?"
        params: List[Any] = [SyncItemStatus.FAILED.value]
        if max_retries is not None:
            sql += " AND retry_count < ?"
            params.append(max_retries)
        return self._fetchall(sql + " ORDER BY timestamp, id", params)

    def requeue_failed(self, max_retries: int) -> int:
        """Move failed changes under the retry limit back to pending."""
        return self._execute(
            "UPDATE change_log SET status = ? WHERE status = ? AND retry_count < ?",
            (SyncItemStatus.PENDING.value, SyncItemStatus.FAILED.value, max_retries),
        )

    # ===== Server changes =====

    def apply_server_change(self, change: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a change received from the server without logging it.

        Raises:
            ValidationError: If the change or its payload is invalid
        """
        entity_type = validate_entity_type(change.get("entity_type"))
        entity_id = validate_uuid_hex(change.get("entity_id"), "entity_id")
        operation = validate_operation(change.get("operation"))
        timestamp = change.get("timestamp") or utc_now()
        data = dict(change.get("data") or {})

        existing = self.get_entity(entity_type, entity_id)
        if existing is not None:
            data = dict(_payload(entity_type, existing), **data)
        data["id"] = entity_id
        if operation == SyncOperation.DELETE.value:
            if entity_type == EntityType.PROJECT_MEMBER.value:
                data["is_active"] = False
            elif not data.get("deleted_at"):
                data["deleted_at"] = timestamp

        row = validate_entity_payload(entity_type, data, timestamp)
        self._write_row(entity_type, row, is_dirty=False, server_updated_at=timestamp)
        return row

    # ===== Cursors =====

    def get_cursor(self, key: str = GLOBAL_CURSOR) -> Optional[str]:
        row = self._fetchone("SELECT last_sync_timestamp FROM sync_cursors WHERE entity_type = ?", (key,))
        return row["last_sync_timestamp"] if row else None

    def set_cursor(self, key: str, timestamp: str) -> None:
        self._execute(
            """
            INSERT INTO sync_cursors (entity_type, last_sync_timestamp) VALUES (?, ?)
            ON CONFLICT(entity_type) DO UPDATE SET last_sync_timestamp = excluded.last_sync_timestamp
            """,
            (key, timestamp),
        )

    def get_cursors(self) -> Dict[str, str]:
        """Per entity type cursors (the global cursor is not included)."""
        rows = self._fetchall("SELECT * FROM sync_cursors WHERE entity_type != ?", (GLOBAL_CURSOR,))
        return {row["entity_type"]: row["last_sync_timestamp"] for row in rows}

    # ===== Conflicts =====

    def add_conflict(
        self,
        entity_type: str,
        entity_id: str,
        local_data: Dict[str, Any],
        server_data: Dict[str, Any],
        local_timestamp: str,
        server_timestamp: str,
        server_conflict_id: Optional[str] = None,
        change_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        conflict_id = uuid7().hex
        self._execute(
            """
            INSERT INTO local_conflicts
                (id, entity_type, entity_id, local_data, server_data, local_timestamp,
                 server_timestamp, server_conflict_id, change_ids, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict_id, entity_type, entity_id,
                json.dumps(local_data, sort_keys=True), json.dumps(server_data, sort_keys=True),
                local_timestamp, server_timestamp, server_conflict_id,
                json.dumps(change_ids or []), utc_now(),
            ),
        )
        logger.warning(f"Recorded local conflict {conflict_id} on {entity_type} {entity_id}")
        return self.get_conflict(conflict_id)

    def get_conflicts(self, include_resolved: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM local_conflicts"
        if not include_resolved:
            sql += " WHERE is_resolved = 0"
        return self._fetchall(sql + " ORDER BY created_at, id")

    def get_conflict(self, conflict_id: str) -> Optional[Dict[str, Any]]:
        """Get a conflict by full ID or unique prefix.

        Raises:
            ValidationError: If the prefix matches more than one conflict
        """
        exact = self._fetchone("SELECT * FROM local_conflicts WHERE id = ?", (conflict_id,))
        if exact is not None:
            return exact
        matches = [
            c for c in self.get_conflicts(include_resolved=True)
            if c["id"].startswith(conflict_id)
        ]
        if len(matches) > 1:
            raise ValidationError("conflict_id", f"prefix '{conflict_id}' is ambiguous")
        return matches[0] if matches else None

    def resolve_conflict(self, conflict_id: str, resolution: str) -> bool:
        return self._execute(
            "UPDATE local_conflicts SET is_resolved = 1, resolution = ?, resolved_at = ? WHERE id = ?",
            (resolution, utc_now(), conflict_id),
        ) > 0

    # ===== Housekeeping =====

    def get_status_counts(self) -> Dict[str, int]:
        """Count change log entries per status, plus open local conflicts."""
        counts = {status.value: 0 for status in SyncItemStatus}
        for row in self._fetchall("SELECT status, COUNT(*) AS n FROM change_log GROUP BY status"):
            counts[row["status"]] = row["n"]
        row = self._fetchone("SELECT COUNT(*) AS n FROM local_conflicts WHERE is_resolved = 0")
        counts["unresolved_conflicts"] = row["n"]
        return counts

    def cleanup_synced(self, days_old: int = 30) -> int:
        """Delete completed or cancelled change log entries older than ``days_old`` days."""
        deleted = self._execute(
            "DELETE FROM change_log WHERE status IN (?, ?) AND timestamp < ?",
            (SyncItemStatus.COMPLETED.value, SyncItemStatus.CANCELLED.value, timestamp_days_ago(days_old)),
        )
        logger.info(f"Removed {deleted} synced change log entries")
        return deleted
