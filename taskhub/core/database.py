"""Database operations for the TaskHub server.

This module provides all data access functionality using SQLite.
All methods return JSON-serializable types (dicts, lists, primitives)
so the web layer can hand them straight to jsonify().

The connection is shared between Flask worker threads, so every statement
runs under a re-entrant lock. Callers that need several statements to be
atomic wrap them in ``with db.transaction():``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from uuid6 import uuid7

from .models import ENTITY_FIELDS, EntityType, SyncItemStatus
from .timestamp_utils import parse_timestamp, to_timestamp, utc_now

logger = logging.getLogger(__name__)

__all__ = ["Database", "ENTITY_TABLES", "entity_payload"]

ENTITY_TABLES: Dict[str, str] = {
    EntityType.PROJECT.value: "projects",
    EntityType.PROJECT_MEMBER.value: "project_members",
    EntityType.TASK.value: "tasks",
}

_BOOL_COLUMNS = ("is_active", "is_edited", "is_billable", "is_resolved")
_JSON_COLUMNS = ("data", "client_data", "server_data", "base_data", "resolution_data", "details")

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS project_members (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    UNIQUE (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
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
    deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id);

CREATE TABLE IF NOT EXISTS task_comments (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    author_id TEXT NOT NULL,
    content TEXT NOT NULL,
    parent_comment_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    is_edited INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS time_entries (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id),
    user_id TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration_minutes INTEGER NOT NULL,
    is_billable INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_items (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    data TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    client_timestamp TEXT,
    client_change_id TEXT,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    last_retry_at TEXT,
    client_id TEXT,
    user_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_items_ts ON sync_items(timestamp, seq);
CREATE INDEX IF NOT EXISTS idx_sync_items_entity ON sync_items(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_sync_items_client ON sync_items(client_id, status);

CREATE TABLE IF NOT EXISTS sync_clients (
    client_id TEXT PRIMARY KEY,
    user_id TEXT,
    device_name TEXT NOT NULL DEFAULT '',
    platform TEXT NOT NULL DEFAULT '',
    app_version TEXT NOT NULL DEFAULT '',
    last_sync_timestamp TEXT,
    last_seen_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    registered_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_client_cursors (
    client_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    last_sync_timestamp TEXT NOT NULL,
    PRIMARY KEY (client_id, entity_type)
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    user_id TEXT,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    client_data TEXT NOT NULL,
    server_data TEXT NOT NULL,
    base_data TEXT,
    client_timestamp TEXT NOT NULL,
    server_timestamp TEXT NOT NULL,
    client_operation TEXT NOT NULL,
    sync_item_id TEXT,
    recommended_strategy TEXT NOT NULL,
    applied_strategy TEXT,
    reason TEXT NOT NULL,
    is_resolved INTEGER NOT NULL DEFAULT 0,
    resolution_data TEXT,
    resolved_by TEXT,
    resolved_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_configuration (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_logs (
    id TEXT PRIMARY KEY,
    client_id TEXT,
    user_id TEXT,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    details TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entity_subscriptions (
    client_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    PRIMARY KEY (client_id, entity_type, entity_id)
);
"""


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """Convert a sqlite3.Row to a plain dict, decoding JSON and bool columns."""
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


def entity_payload(entity_type: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Project an entity row onto the fields carried in sync payloads."""
    return {key: row.get(key) for key in ENTITY_FIELDS[entity_type]}


def _rows_to_dicts(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
    return [_row_to_dict(row) for row in rows]


def _encode(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, bool):
        return int(value)
    return value


class Database:
    """SQLite storage for projects, tasks and the sync bookkeeping tables."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Initialize database connection and create tables.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        path_str = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._last_stamp: Optional[str] = None
        self.conn = sqlite3.connect(path_str, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        with self.conn:
            self.conn.executescript(SCHEMA)
        row = self._fetchone("SELECT MAX(timestamp) AS ts FROM sync_items")
        self._last_stamp = row["ts"] if row else None
        logger.info(f"Opened database at {path_str}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    def stamp(self) -> str:
        """Get the current UTC time, strictly after every earlier stamp.

        Sync cursors compare with ">", so two items must never share a
        timestamp.
        """
        with self._lock:
            now = utc_now()
            if self._last_stamp and now <= self._last_stamp:
                now = to_timestamp(parse_timestamp(self._last_stamp) + timedelta(microseconds=1))
            self._last_stamp = now
            return now

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and commit (or roll back) everything in the block."""
        with self._lock:
            if self._depth:
                # Nested use joins the outer transaction
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

    @contextmanager
    def savepoint(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside the current transaction, undoing only the block on error.

        The enclosing transaction stays open, so earlier work in it is kept
        and later work can still commit.
        """
        with self.transaction():
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN")
            name = f"sp_{self._depth}"
            self.conn.execute(f"SAVEPOINT {name}")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute(f"ROLLBACK TO {name}")
                self.conn.execute(f"RELEASE {name}")
                raise
            self.conn.execute(f"RELEASE {name}")

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            return _row_to_dict(self.conn.execute(sql, params).fetchone())

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            return _rows_to_dicts(self.conn.execute(sql, params).fetchall())

    def _insert(self, table: str, row: Dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self.transaction():
            self.conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                [_encode(v) for v in row.values()],
            )

    def _update(self, table: str, key_column: str, key: Any, fields: Dict[str, Any]) -> bool:
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self.transaction():
            cursor = self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {key_column} = ?",
                [_encode(v) for v in fields.values()] + [key],
            )
        return cursor.rowcount > 0

    # ===== Projects =====

    def insert_project(self, project: Dict[str, Any]) -> None:
        self._insert("projects", project)

    def get_project(self, project_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        """Get a project by ID (soft-deleted projects only if include_deleted)."""
        sql = "SELECT * FROM projects WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        return self._fetchone(sql, (project_id,))

    def update_project_fields(self, project_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("projects", "id", project_id, fields)

    def get_projects_for_user(
        self, user_id: str, limit: int = -1, offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Get non-deleted projects where the user is an active member, newest first."""
        return self._fetchall(
            """
            SELECT p.* FROM projects p
            JOIN project_members m ON m.project_id = p.id
            WHERE m.user_id = ? AND m.is_active = 1 AND p.deleted_at IS NULL
            ORDER BY p.created_at DESC, p.id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )

    # ===== Project members =====

    def insert_member(self, member: Dict[str, Any]) -> None:
        self._insert("project_members", member)

    def get_member(self, project_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Get the membership row of a user in a project (active or not)."""
        return self._fetchone(
            "SELECT * FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        )

    def get_member_by_id(self, member_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM project_members WHERE id = ?", (member_id,))

    def get_members(self, project_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM project_members WHERE project_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        return self._fetchall(sql + " ORDER BY joined_at, id", (project_id,))

    def update_member_fields(self, member_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("project_members", "id", member_id, fields)

    # ===== Tasks =====

    def insert_task(self, task: Dict[str, Any]) -> None:
        self._insert("tasks", task)

    def get_task(self, task_id: str, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM tasks WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        return self._fetchone(sql, (task_id,))

    def update_task_fields(self, task_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("tasks", "id", task_id, fields)

    def get_tasks_for_project(self, project_id: str) -> List[Dict[str, Any]]:
        """Get non-deleted tasks of a project ordered by position."""
        return self._fetchall(
            """
            SELECT * FROM tasks WHERE project_id = ? AND deleted_at IS NULL
            ORDER BY position, created_at, id
            """,
            (project_id,),
        )

    def get_tasks_in_user_projects(
        self,
        user_id: str,
        project_id: Optional[str] = None,
        limit: int = -1,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Get tasks in projects the user is an active member of, newest first."""
        sql = """
            SELECT t.* FROM tasks t
            JOIN project_members m ON m.project_id = t.project_id
            JOIN projects p ON p.id = t.project_id
            WHERE m.user_id = ? AND m.is_active = 1
              AND t.deleted_at IS NULL AND p.deleted_at IS NULL
        """
        params: List[Any] = [user_id]
        if project_id:
            sql += " AND t.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY t.created_at DESC, t.id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self._fetchall(sql, params)

    def get_tasks_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Get non-deleted tasks assigned to or created by the user."""
        return self._fetchall(
            """
            SELECT t.* FROM tasks t
            JOIN projects p ON p.id = t.project_id
            WHERE (t.assignee_id = ? OR t.created_by_id = ?)
              AND t.deleted_at IS NULL AND p.deleted_at IS NULL
            ORDER BY t.due_date, t.created_at
            """,
            (user_id, user_id),
        )

    def get_max_task_position(self, project_id: str, status: str) -> int:
        row = self._fetchone(
            """
            SELECT COALESCE(MAX(position), -1) AS max_position FROM tasks
            WHERE project_id = ? AND status = ? AND deleted_at IS NULL
            """,
            (project_id, status),
        )
        return row["max_position"]

    # ===== Comments =====

    def insert_comment(self, comment: Dict[str, Any]) -> None:
        self._insert("task_comments", comment)

    def get_comment(self, comment_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM task_comments WHERE id = ?", (comment_id,))

    def get_comments(self, task_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at, id",
            (task_id,),
        )

    def update_comment_fields(self, comment_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("task_comments", "id", comment_id, fields)

    def delete_comment(self, comment_id: str) -> bool:
        """Delete a comment and its direct replies."""
        with self.transaction():
            self.conn.execute(
                "DELETE FROM task_comments WHERE parent_comment_id = ?", (comment_id,)
            )
            cursor = self.conn.execute("DELETE FROM task_comments WHERE id = ?", (comment_id,))
        return cursor.rowcount > 0

    # ===== Time entries =====

    def insert_time_entry(self, entry: Dict[str, Any]) -> None:
        self._insert("time_entries", entry)

    def get_time_entry(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM time_entries WHERE id = ?", (entry_id,))

    def get_time_entries(self, task_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM time_entries WHERE task_id = ? ORDER BY start_time DESC, id",
            (task_id,),
        )

    def delete_time_entry(self, entry_id: str) -> bool:
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM time_entries WHERE id = ?", (entry_id,))
        return cursor.rowcount > 0

    # ===== Generic entity access (used by sync) =====

    def get_entity(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Get any synchronised entity by type and ID, including soft-deleted rows."""
        table = ENTITY_TABLES[entity_type]
        return self._fetchone(f"SELECT * FROM {table} WHERE id = ?", (entity_id,))

    def upsert_entity(self, entity_type: str, row: Dict[str, Any]) -> None:
        """Insert or replace a synchronised entity from a full payload."""
        table = ENTITY_TABLES[entity_type]
        columns = [c for c in ENTITY_FIELDS[entity_type] if c in row]
        assignments = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
        with self.transaction():
            self.conn.execute(
                f"""
                INSERT INTO {table} ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(id) DO UPDATE SET {assignments}
                """,
                [_encode(row[c]) for c in columns],
            )

    # ===== Sync items =====

    def insert_sync_item(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a sync item and return it as stored (with its seq)."""
        with self.transaction():
            self._insert("sync_items", item)
            return self.get_sync_item(item["id"])

    def record_change(
        self,
        entity_type: str,
        entity_id: str,
        operation: str,
        data: Dict[str, Any],
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        client_timestamp: Optional[str] = None,
        client_change_id: Optional[str] = None,
        status: str = SyncItemStatus.COMPLETED.value,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a sync item stamped with the server receive time.

        client_id None marks a change made on the server itself (REST API or
        conflict resolution); every client pulls those.
        """
        # Stamp and insert under one lock so no cursor can pass an unwritten item
        with self.transaction():
            now = self.stamp()
            item = {
                "id": uuid7().hex,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "operation": operation,
                "data": data,
                "timestamp": now,
                "client_timestamp": client_timestamp,
                "client_change_id": client_change_id,
                "status": status,
                "retry_count": 0,
                "error_message": error_message,
                "client_id": client_id,
                "user_id": user_id,
                "created_at": now,
                "updated_at": now,
            }
            stored = self.insert_sync_item(item)
        logger.debug(f"Recorded {operation} of {entity_type} {entity_id} as {status}")
        return stored

    def get_sync_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM sync_items WHERE id = ?", (item_id,))

    def find_sync_item_by_change(self, client_id: str, client_change_id: str) -> Optional[Dict[str, Any]]:
        """Find the item created for a client's change log entry, if already received."""
        return self._fetchone(
            """
            SELECT * FROM sync_items WHERE client_id = ? AND client_change_id = ?
            ORDER BY seq DESC LIMIT 1
            """,
            (client_id, client_change_id),
        )

    def update_sync_item_fields(self, item_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("sync_items", "id", item_id, fields)

    def _change_filter(
        self,
        cursors: Dict[str, Optional[str]],
        after: Optional[tuple[str, int]],
        exclude_client_id: Optional[str],
        entity_ids: Optional[List[str]],
    ) -> tuple[str, List[Any]]:
        """Build the WHERE clause shared by change queries.

        ``cursors`` maps entity type to the timestamp after which changes are
        wanted (None = from the beginning). ``after`` is a (timestamp, seq)
        position from a continuation token.
        """
        clauses = ["status = 'completed'"]
        params: List[Any] = []
        type_clauses = []
        for entity_type, since in cursors.items():
            if since:
                type_clauses.append("(entity_type = ? AND timestamp > ?)")
                params.extend([entity_type, since])
            else:
                type_clauses.append("(entity_type = ?)")
                params.append(entity_type)
        clauses.append("(" + " OR ".join(type_clauses) + ")")
        if after is not None:
            clauses.append("(timestamp > ? OR (timestamp = ? AND seq > ?))")
            params.extend([after[0], after[0], after[1]])
        if exclude_client_id:
            clauses.append("(client_id IS NULL OR client_id != ?)")
            params.append(exclude_client_id)
        if entity_ids:
            clauses.append(f"entity_id IN ({', '.join('?' for _ in entity_ids)})")
            params.extend(entity_ids)
        return " AND ".join(clauses), params

    def get_changes(
        self,
        cursors: Dict[str, Optional[str]],
        limit: int,
        after: Optional[tuple[str, int]] = None,
        exclude_client_id: Optional[str] = None,
        entity_ids: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Get completed changes after the cursors, oldest first."""
        where, params = self._change_filter(cursors, after, exclude_client_id, entity_ids)
        return self._fetchall(
            f"SELECT * FROM sync_items WHERE {where} ORDER BY timestamp, seq LIMIT ?",
            params + [limit],
        )

    def count_changes(
        self,
        cursors: Dict[str, Optional[str]],
        exclude_client_id: Optional[str] = None,
        entity_ids: Optional[List[str]] = None,
    ) -> int:
        where, params = self._change_filter(cursors, None, exclude_client_id, entity_ids)
        row = self._fetchone(f"SELECT COUNT(*) AS n FROM sync_items WHERE {where}", params)
        return row["n"]

    def get_remote_changes_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        since: Optional[str],
        exclude_client_id: str,
    ) -> List[Dict[str, Any]]:
        """Get completed changes to one entity made by anyone but the given client."""
        sql = """
            SELECT * FROM sync_items
            WHERE entity_type = ? AND entity_id = ? AND status = 'completed'
              AND (client_id IS NULL OR client_id != ?)
        """
        params: List[Any] = [entity_type, entity_id, exclude_client_id]
        if since:
            sql += " AND timestamp > ?"
            params.append(since)
        return self._fetchall(sql + " ORDER BY timestamp, seq", params)

    def get_entity_data_at(self, entity_type: str, entity_id: str, at: str) -> Optional[Dict[str, Any]]:
        """Get an entity's payload as of a timestamp, from the last change at or before it."""
        row = self._fetchone(
            """
            SELECT data FROM sync_items
            WHERE entity_type = ? AND entity_id = ? AND status = 'completed' AND timestamp <= ?
            ORDER BY timestamp DESC, seq DESC LIMIT 1
            """,
            (entity_type, entity_id, at),
        )
        return row["data"] if row else None

    def get_items_by_status(
        self, client_id: Optional[str], status: str, limit: int = -1
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM sync_items WHERE status = ?"
        params: List[Any] = [status]
        if client_id:
            sql += " AND client_id = ?"
            params.append(client_id)
        return self._fetchall(sql + " ORDER BY timestamp, seq LIMIT ?", params + [limit])

    def count_items_by_status(self, client_id: Optional[str] = None) -> Dict[str, int]:
        """Count sync items per status, optionally for one client."""
        sql = "SELECT status, COUNT(*) AS n FROM sync_items"
        params: List[Any] = []
        if client_id:
            sql += " WHERE client_id = ?"
            params.append(client_id)
        rows = self._fetchall(sql + " GROUP BY status", params)
        return {row["status"]: row["n"] for row in rows}

    def delete_sync_items_before(self, cutoff: str, statuses: Sequence[str]) -> int:
        placeholders = ", ".join("?" for _ in statuses)
        with self.transaction():
            cursor = self.conn.execute(
                f"DELETE FROM sync_items WHERE updated_at < ? AND status IN ({placeholders})",
                [cutoff, *statuses],
            )
        return cursor.rowcount

    # ===== Sync clients =====

    def get_client(self, client_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM sync_clients WHERE client_id = ?", (client_id,))

    def insert_client(self, client: Dict[str, Any]) -> None:
        self._insert("sync_clients", client)

    def update_client_fields(self, client_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("sync_clients", "client_id", client_id, fields)

    def get_clients_seen_since(self, since: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            """
            SELECT * FROM sync_clients WHERE is_active = 1 AND last_seen_at >= ?
            ORDER BY last_seen_at DESC
            """,
            (since,),
        )

    def get_client_cursors(self, client_id: str) -> Dict[str, str]:
        rows = self._fetchall(
            "SELECT entity_type, last_sync_timestamp FROM sync_client_cursors WHERE client_id = ?",
            (client_id,),
        )
        return {row["entity_type"]: row["last_sync_timestamp"] for row in rows}

    def set_client_cursor(self, client_id: str, entity_type: str, timestamp: str) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO sync_client_cursors (client_id, entity_type, last_sync_timestamp)
                VALUES (?, ?, ?)
                ON CONFLICT(client_id, entity_type)
                DO UPDATE SET last_sync_timestamp = excluded.last_sync_timestamp
                """,
                (client_id, entity_type, timestamp),
            )

    # ===== Conflicts =====

    def insert_conflict(self, conflict: Dict[str, Any]) -> None:
        self._insert("sync_conflicts", conflict)

    def get_conflict(self, conflict_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,))

    def update_conflict_fields(self, conflict_id: str, fields: Dict[str, Any]) -> bool:
        return self._update("sync_conflicts", "id", conflict_id, fields)

    def get_conflicts(self, client_id: Optional[str], include_resolved: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM sync_conflicts WHERE 1 = 1"
        params: List[Any] = []
        if client_id:
            sql += " AND client_id = ?"
            params.append(client_id)
        if not include_resolved:
            sql += " AND is_resolved = 0"
        return self._fetchall(sql + " ORDER BY created_at, id", params)

    def delete_resolved_conflicts_before(self, cutoff: str) -> int:
        with self.transaction():
            cursor = self.conn.execute(
                "DELETE FROM sync_conflicts WHERE is_resolved = 1 AND resolved_at < ?",
                (cutoff,),
            )
        return cursor.rowcount

    # ===== Configuration =====

    def get_sync_configuration(self) -> Optional[Dict[str, Any]]:
        row = self._fetchone("SELECT data FROM sync_configuration WHERE id = 1")
        return row["data"] if row else None

    def save_sync_configuration(self, data: Dict[str, Any], updated_at: str) -> None:
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO sync_configuration (id, data, updated_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
                """,
                (json.dumps(data, sort_keys=True), updated_at),
            )

    # ===== Logs and subscriptions =====

    def insert_sync_log(self, log: Dict[str, Any]) -> None:
        self._insert("sync_logs", log)

    def get_sync_logs(self, client_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM sync_logs"
        params: List[Any] = []
        if client_id:
            sql += " WHERE client_id = ?"
            params.append(client_id)
        return self._fetchall(sql + " ORDER BY created_at DESC, id DESC LIMIT ?", params + [limit])

    def delete_sync_logs_before(self, cutoff: str) -> int:
        with self.transaction():
            cursor = self.conn.execute("DELETE FROM sync_logs WHERE created_at < ?", (cutoff,))
        return cursor.rowcount

    def add_subscription(self, client_id: str, entity_type: str, entity_id: str, created_at: str) -> bool:
        """Add a subscription. Returns False if it already existed."""
        with self.transaction():
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO entity_subscriptions (client_id, entity_type, entity_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (client_id, entity_type, entity_id, created_at),
            )
        return cursor.rowcount > 0

    def remove_subscription(self, client_id: str, entity_type: str, entity_id: str) -> bool:
        with self.transaction():
            cursor = self.conn.execute(
                """
                DELETE FROM entity_subscriptions
                WHERE client_id = ? AND entity_type = ? AND entity_id = ?
                """,
                (client_id, entity_type, entity_id),
            )
        return cursor.rowcount > 0

    def get_subscriptions(self, client_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM entity_subscriptions WHERE client_id = ? ORDER BY entity_type, entity_id",
            (client_id,),
        )

    def get_subscribers(self, entity_type: str, entity_id: str) -> List[str]:
        """Get client IDs subscribed to an entity or to its whole type."""
        rows = self._fetchall(
            """
            SELECT DISTINCT client_id FROM entity_subscriptions
            WHERE entity_type = ? AND (entity_id = '' OR entity_id = ?)
            ORDER BY client_id
            """,
            (entity_type, entity_id),
        )
        return [row["client_id"] for row in rows]
