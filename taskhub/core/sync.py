"""Server side sync engine for TaskHub.

Clients keep a local copy of their projects and tasks and exchange changes
with the server. Every accepted change becomes a sync item, stamped with
the server receive time, and clients pull the items they have not seen yet.

Sync Protocol:
1. Sync: push local changes and pull server changes in one exchange
2. Delta: page through the remaining changes of one entity type
3. Conflicts: list and resolve collisions between clients
4. Items, clients, subscriptions and maintenance endpoints

CRITICAL: This module must have NO client-side dependencies.
"""

from __future__ import annotations

import functools
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Blueprint, jsonify, request
from uuid6 import uuid7

from .conflicts import ConflictManager, detect_conflict, is_deleted, recommend_strategy, resolve_data
from .database import Database, entity_payload
from .models import (
    ENTITY_ORDER,
    ConflictStrategy,
    EntityType,
    ProjectRole,
    SyncChange,
    SyncConfiguration,
    SyncItemStatus,
    SyncOperation,
    enum_values,
)
from .timestamp_utils import parse_timestamp, timestamp_days_ago, to_timestamp
from .validation import (
    ValidationError,
    validate_client_info,
    validate_entity_payload,
    validate_entity_type,
    validate_non_negative_int,
    validate_operation,
    validate_optional_uuid_hex,
    validate_strategy,
    validate_sync_change,
    validate_sync_configuration,
    validate_timestamp,
    validate_uuid_hex,
)

logger = logging.getLogger(__name__)

__all__ = ["SyncService", "SyncApplyError", "create_sync_blueprint", "sync_status_code"]

# Ignore clock differences smaller than this
SKEW_THRESHOLD_SECONDS = 1.0

MAX_PAGE_SIZE = 1000
UNHEALTHY_PENDING_COUNT = 100
ACTIVE_CLIENT_HOURS = 24

SYSTEM_USER = "system"


class SyncApplyError(Exception):
    """A change that could not be applied to the entity tables.

    Attributes:
        code: Machine readable error code
        message: Human readable description
        retryable: Whether sending the same change later may succeed
    """

    def __init__(self, code: str, message: str, retryable: bool = False) -> None:
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(message)


def encode_continuation_token(timestamp: str, seq: int) -> str:
    return f"{timestamp}|{seq}"


def decode_continuation_token(token: Optional[str]) -> Optional[Tuple[str, int]]:
    """Decode a continuation token into a (timestamp, seq) position."""
    if not token:
        return None
    try:
        timestamp, seq = token.rsplit("|", 1)
        return validate_timestamp(timestamp, "continuation_token", required=True), int(seq)
    except (ValueError, AttributeError):
        raise ValidationError("continuation_token", f"invalid token: {token!r}") from None


def _change_out(item: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a stored sync item as a change sent to clients."""
    return {
        "id": item["id"],
        "entity_type": item["entity_type"],
        "entity_id": item["entity_id"],
        "operation": item["operation"],
        "data": item["data"],
        "timestamp": item["timestamp"],
        "seq": item["seq"],
    }


def _change_sort_key(raw: Any) -> Tuple[int, str]:
    if not isinstance(raw, dict):
        return (len(ENTITY_ORDER), "")
    return (ENTITY_ORDER.get(raw.get("entity_type"), len(ENTITY_ORDER)), str(raw.get("timestamp") or ""))


def sync_status_code(response: Dict[str, Any]) -> int:
    """HTTP status for a sync response.

    - 200: everything was applied
    - 207: partial success (some errors or conflicts)
    - 422: nothing could be applied
    """
    stats = response["statistics"]
    if stats["errors"] and not stats["applied"] and not stats["conflicts"]:
        return 422
    if stats["errors"] or stats["conflicts"]:
        return 207
    return 200


class SyncService:
    """Coordinates sync exchanges between clients and the server database."""

    def __init__(self, db: Database) -> None:
        """Initialize sync service.

        Args:
            db: Server database instance
        """
        self.db = db
        self.conflicts = ConflictManager(db)

    # ===== Configuration =====

    def get_configuration(self) -> SyncConfiguration:
        stored = self.db.get_sync_configuration()
        if stored is None:
            return SyncConfiguration()
        return SyncConfiguration.from_dict(stored)

    def update_configuration(self, raw: Dict[str, Any]) -> SyncConfiguration:
        """Validate and store a (partial) configuration update.

        Top-level keys replace the current values. Entity configurations are
        replaced per entity type.
        """
        if not isinstance(raw, dict):
            raise ValidationError("configuration", "must be an object")
        merged = self.get_configuration().to_dict()
        entities = dict(merged.get("entity_configurations") or {})
        entities.update(raw.get("entity_configurations") or {})
        merged.update({k: v for k, v in raw.items() if k != "entity_configurations"})
        merged["entity_configurations"] = entities

        config = validate_sync_configuration(merged)
        self.db.save_sync_configuration(config.to_dict(), self.db.stamp())
        logger.info("Sync configuration updated")
        return config

    # ===== Clients =====

    def _client_view(self, client: Dict[str, Any]) -> Dict[str, Any]:
        view = dict(client)
        view["entity_last_sync"] = self.db.get_client_cursors(client["client_id"])
        return view

    def register_client(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Register a client or refresh the registration of a known one."""
        info = validate_client_info(raw)
        now = self.db.stamp()
        with self.db.transaction():
            existing = self.db.get_client(info["client_id"])
            if existing is None:
                self.db.insert_client({
                    **info,
                    "last_sync_timestamp": None,
                    "last_seen_at": now,
                    "is_active": True,
                    "registered_at": now,
                })
                logger.info(f"Registered sync client {info['client_id']} ({info['device_name']})")
            else:
                fields = {k: v for k, v in info.items() if k != "client_id" and v}
                fields.update({"last_seen_at": now, "is_active": True})
                self.db.update_client_fields(info["client_id"], fields)
            self._log("client_registered", info["client_id"], info["user_id"])
            return self._client_view(self.db.get_client(info["client_id"]))

    def _ensure_client(self, client_id: str, user_id: Optional[str]) -> Dict[str, Any]:
        """Get a client, registering it on first contact, and touch last_seen_at."""
        client = self.db.get_client(client_id)
        if client is None:
            return self.register_client({"client_id": client_id, "user_id": user_id})
        fields: Dict[str, Any] = {"last_seen_at": self.db.stamp(), "is_active": True}
        if user_id and not client["user_id"]:
            fields["user_id"] = user_id
        self.db.update_client_fields(client_id, fields)
        return self.db.get_client(client_id)

    def heartbeat(self, client_id: str) -> Optional[Dict[str, Any]]:
        client_id = validate_uuid_hex(client_id, "client_id")
        if not self.db.update_client_fields(client_id, {"last_seen_at": self.db.stamp()}):
            return None
        return self._client_view(self.db.get_client(client_id))

    def get_active_clients(self, hours: int = ACTIVE_CLIENT_HOURS) -> List[Dict[str, Any]]:
        """Get active clients seen within the last ``hours`` hours."""
        since = timestamp_days_ago(hours / 24)
        return [self._client_view(c) for c in self.db.get_clients_seen_since(since)]

    def deactivate_client(self, client_id: str) -> bool:
        client_id = validate_uuid_hex(client_id, "client_id")
        deactivated = self.db.update_client_fields(client_id, {"is_active": False})
        if deactivated:
            self._log("client_deactivated", client_id)
            logger.info(f"Deactivated sync client {client_id}")
        return deactivated

    # ===== Applying changes =====

    def _check_dependencies(self, entity_type: str, row: Dict[str, Any]) -> None:
        if entity_type == EntityType.PROJECT.value:
            return
        if self.db.get_entity(EntityType.PROJECT.value, row["project_id"]) is None:
            raise SyncApplyError(
                "MISSING_DEPENDENCY",
                f"project {row['project_id']} does not exist on the server",
                retryable=True,
            )
        if entity_type == EntityType.PROJECT_MEMBER.value:
            existing = self.db.get_member(row["project_id"], row["user_id"])
            if existing is not None and existing["id"] != row["id"]:
                raise SyncApplyError(
                    "VALIDATION_ERROR",
                    f"user {row['user_id']} is already a member of project {row['project_id']}",
                )

    def _apply_change(self, change: SyncChange) -> Optional[Dict[str, Any]]:
        """Write a change to the entity tables.

        Returns:
            The entity payload after the change, or None when a delete
            targeted an entity the server never had

        Raises:
            ValidationError: If the resulting entity is invalid
            SyncApplyError: If the change cannot be applied
        """
        existing = self.db.get_entity(change.entity_type, change.entity_id)
        current = entity_payload(change.entity_type, existing) if existing else None

        if change.operation == SyncOperation.DELETE.value:
            if current is None:
                logger.debug(f"Ignoring delete of unknown {change.entity_type} {change.entity_id}")
                return None
            data = dict(current)
            if change.entity_type == EntityType.PROJECT_MEMBER.value:
                data["is_active"] = False
            else:
                data["deleted_at"] = change.data.get("deleted_at") or change.timestamp
                data["updated_at"] = change.timestamp
        else:
            data = dict(current or {}, **change.data)
            data["id"] = change.entity_id
            if current is not None and change.entity_type != EntityType.PROJECT_MEMBER.value:
                data["updated_at"] = change.data.get("updated_at") or change.timestamp

        row = validate_entity_payload(change.entity_type, data, change.timestamp)
        self._check_dependencies(change.entity_type, row)
        self.db.upsert_entity(change.entity_type, row)
        return row

    def _record_failure(
        self,
        raw: Any,
        client_id: str,
        user_id: Optional[str],
        code: str,
        message: str,
    ) -> None:
        """Persist a rejected change as a failed sync item, when it names an entity."""
        if not isinstance(raw, dict):
            return
        entity_type = raw.get("entity_type")
        entity_id = raw.get("entity_id")
        if not isinstance(entity_type, str) or not isinstance(entity_id, str):
            return
        data = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        self.db.record_change(
            entity_type,
            entity_id,
            str(raw.get("operation") or ""),
            data,
            client_id=client_id,
            user_id=user_id,
            client_timestamp=raw.get("timestamp") if isinstance(raw.get("timestamp"), str) else None,
            client_change_id=raw.get("change_id") or raw.get("id"),
            status=SyncItemStatus.FAILED.value,
            error_message=f"{code}: {message}",
        )

    # ===== Sync exchange =====

    def _detection_cursors(
        self,
        client_id: str,
        last_sync: Optional[str],
        entity_timestamps: Dict[str, Optional[str]],
    ) -> Dict[str, Optional[str]]:
        stored = self.db.get_client_cursors(client_id)
        return {
            entity_type: entity_timestamps.get(entity_type) or last_sync or stored.get(entity_type)
            for entity_type in enum_values(EntityType)
        }

    @staticmethod
    def _validate_entity_timestamps(raw: Any) -> Dict[str, Optional[str]]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValidationError("entity_timestamps", "must be an object keyed by entity type")
        return {
            validate_entity_type(entity_type): validate_timestamp(value, f"entity_timestamps.{entity_type}")
            for entity_type, value in raw.items()
        }

    def _clock_skew(self, client_time: Optional[str], server_now: str) -> float:
        """Seconds the client clock runs ahead of the server (0 when unknown or small)."""
        if not client_time:
            return 0.0
        skew = (parse_timestamp(client_time) - parse_timestamp(server_now)).total_seconds()
        if abs(skew) < SKEW_THRESHOLD_SECONDS:
            return 0.0
        logger.debug(f"Client clock skew is {skew:.1f}s")
        return skew

    @staticmethod
    def _adjust_for_skew(timestamp: str, skew: float) -> str:
        """Translate a client timestamp into server time."""
        if not skew:
            return timestamp
        return to_timestamp(parse_timestamp(timestamp) - timedelta(seconds=skew))

    def process_sync(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Run one sync exchange: apply client changes, then collect server changes.

        Request fields:
            client_id, user_id, last_sync_timestamp, entity_timestamps,
            client_changes[], client_version, client_time

        Returns:
            Response dict with server_timestamp, server_changes, applied,
            conflicts, errors, has_more_data, next_token, entity_timestamps
            and statistics
        """
        if not isinstance(raw, dict):
            raise ValidationError("request", "must be an object")
        client_id = validate_uuid_hex(raw.get("client_id"), "client_id")
        user_id = validate_optional_uuid_hex(raw.get("user_id"), "user_id")
        last_sync = validate_timestamp(raw.get("last_sync_timestamp"), "last_sync_timestamp")
        entity_timestamps = self._validate_entity_timestamps(raw.get("entity_timestamps"))
        client_time = validate_timestamp(raw.get("client_time"), "client_time")
        client_changes = raw.get("client_changes") or []
        if not isinstance(client_changes, list):
            raise ValidationError("client_changes", "must be a list")

        applied: List[Dict[str, Any]] = []
        conflicts: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        auto_resolved = 0

        with self.db.transaction():
            self._ensure_client(client_id, user_id)
            config = self.get_configuration()
            cursors = self._detection_cursors(client_id, last_sync, entity_timestamps)
            skew = self._clock_skew(client_time, self.db.stamp())

            for raw_change in sorted(client_changes, key=_change_sort_key):
                change_id = (raw_change.get("change_id") or raw_change.get("id")) if isinstance(raw_change, dict) else None
                try:
                    with self.db.savepoint():
                        change = validate_sync_change(raw_change)
                        entity_config = config.for_entity(change.entity_type)
                        if not entity_config.enabled:
                            raise SyncApplyError(
                                "ENTITY_SYNC_DISABLED", f"sync is disabled for {change.entity_type}"
                            )

                        if change.change_id:
                            previous = self.db.find_sync_item_by_change(client_id, change.change_id)
                            if previous is not None:
                                if previous["status"] in (
                                    SyncItemStatus.COMPLETED.value,
                                    SyncItemStatus.CANCELLED.value,
                                ):
                                    applied.append(self._ack(change, previous["id"], duplicate=True))
                                    continue
                                if previous["status"] == SyncItemStatus.CONFLICT.value:
                                    open_conflict = self._conflict_for_item(previous["id"])
                                    if open_conflict is not None:
                                        conflicts.append(dict(open_conflict, change_id=change.change_id))
                                        continue
                                self.db.update_sync_item_fields(previous["id"], {
                                    "status": SyncItemStatus.CANCELLED.value,
                                    "updated_at": self.db.stamp(),
                                })

                        check = detect_conflict(
                            self.db, change, client_id, cursors[change.entity_type], entity_config
                        )
                        if check is None:
                            row = self._apply_change(change)
                            item_id = None
                            if row is not None:
                                item = self.db.record_change(
                                    change.entity_type,
                                    change.entity_id,
                                    change.operation,
                                    row,
                                    client_id=client_id,
                                    user_id=user_id,
                                    client_timestamp=change.timestamp,
                                    client_change_id=change.change_id,
                                )
                                item_id = item["id"]
                                self.notify_entity_change(
                                    change.entity_type, change.entity_id, change.operation, client_id
                                )
                            applied.append(self._ack(change, item_id))
                            continue

                        item = self.db.record_change(
                            change.entity_type,
                            change.entity_id,
                            change.operation,
                            change.data,
                            client_id=client_id,
                            user_id=user_id,
                            client_timestamp=change.timestamp,
                            client_change_id=change.change_id,
                            status=SyncItemStatus.CONFLICT.value,
                        )
                        strategy = recommend_strategy(
                            entity_config,
                            change.operation,
                            is_deleted(change.entity_type, check.server_data),
                        )
                        conflict = self.conflicts.record_conflict(
                            client_id,
                            user_id,
                            change,
                            check,
                            strategy,
                            self._adjust_for_skew(change.timestamp, skew),
                            sync_item_id=item["id"],
                        )
                        self._log(
                            "conflict_detected", client_id, user_id,
                            change.entity_type, change.entity_id, {"reason": check.reason},
                        )

                        if config.auto_resolve_conflicts and strategy != ConflictStrategy.MANUAL_RESOLUTION.value:
                            try:
                                with self.db.savepoint():
                                    self._apply_resolution(conflict, strategy, SYSTEM_USER)
                            except (ValidationError, SyncApplyError) as e:
                                logger.warning(f"Auto-resolve of conflict {conflict['id']} failed: {e}")
                            else:
                                auto_resolved += 1
                                applied.append(self._ack(change, item["id"], resolution=strategy))
                                continue
                        conflicts.append(dict(conflict, change_id=change.change_id))

                except ValidationError as e:
                    errors.append(self._error(raw_change, change_id, "VALIDATION_ERROR", str(e), False))
                    self._record_failure(raw_change, client_id, user_id, "VALIDATION_ERROR", str(e))
                except SyncApplyError as e:
                    errors.append(self._error(raw_change, change_id, e.code, e.message, e.retryable))
                    self._record_failure(raw_change, client_id, user_id, e.code, e.message)
                except sqlite3.IntegrityError as e:
                    errors.append(self._error(raw_change, change_id, "VALIDATION_ERROR", str(e), False))
                    self._record_failure(raw_change, client_id, user_id, "VALIDATION_ERROR", str(e))
                except Exception as e:
                    logger.error(f"Error processing change {change_id} from client {client_id}: {e}")
                    errors.append(self._error(raw_change, change_id, "PROCESSING_ERROR", str(e), True))
                    self._record_failure(raw_change, client_id, user_id, "PROCESSING_ERROR", str(e))

            server_timestamp = self.db.stamp()
            pull_cursors = {
                entity_type: entity_timestamps.get(entity_type) or last_sync
                for entity_type in enum_values(EntityType)
                if config.for_entity(entity_type).enabled
            }
            items = self.db.get_changes(
                pull_cursors, config.batch_size + 1, exclude_client_id=client_id
            ) if pull_cursors else []
            has_more = len(items) > config.batch_size
            items = items[:config.batch_size]
            next_token = None
            checkpoint = server_timestamp
            if has_more:
                next_token = encode_continuation_token(items[-1]["timestamp"], items[-1]["seq"])
                checkpoint = items[-1]["timestamp"]

            new_cursors: Dict[str, str] = {}
            for entity_type, since in pull_cursors.items():
                new_cursors[entity_type] = max(checkpoint, since) if since else checkpoint
                self.db.set_client_cursor(client_id, entity_type, new_cursors[entity_type])
            if not has_more:
                self.db.update_client_fields(client_id, {"last_sync_timestamp": server_timestamp})

            statistics = {
                "received": len(client_changes),
                "applied": len(applied),
                "conflicts": len(conflicts),
                "errors": len(errors),
                "sent": len(items),
                "auto_resolved": auto_resolved,
            }
            self._log("sync", client_id, user_id, details=statistics)

        if errors:
            logger.warning(
                f"Sync from {client_id}: {len(applied)} applied, {len(conflicts)} conflicts, "
                f"{len(errors)} errors: {errors[:3]}{'...' if len(errors) > 3 else ''}"
            )
        else:
            logger.info(
                f"Sync from {client_id}: {len(applied)} applied, {len(conflicts)} conflicts, "
                f"{len(items)} sent"
            )

        return {
            "server_timestamp": server_timestamp,
            "server_changes": [_change_out(item) for item in items],
            "applied": applied,
            "conflicts": conflicts,
            "errors": errors,
            "has_more_data": has_more,
            "next_token": next_token,
            "entity_timestamps": new_cursors,
            "statistics": statistics,
        }

    @staticmethod
    def _ack(
        change: SyncChange,
        item_id: Optional[str],
        duplicate: bool = False,
        resolution: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "change_id": change.change_id,
            "entity_type": change.entity_type,
            "entity_id": change.entity_id,
            "item_id": item_id,
            "duplicate": duplicate,
            "resolution": resolution,
        }

    @staticmethod
    def _error(
        raw: Any, change_id: Optional[str], code: str, message: str, retryable: bool
    ) -> Dict[str, Any]:
        raw = raw if isinstance(raw, dict) else {}
        return {
            "change_id": change_id,
            "entity_type": raw.get("entity_type"),
            "entity_id": raw.get("entity_id"),
            "operation": raw.get("operation"),
            "error_code": code,
            "error_message": message,
            "is_retryable": retryable,
        }

    def _conflict_for_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        for conflict in self.db.get_conflicts(None, include_resolved=False):
            if conflict["sync_item_id"] == item_id:
                return conflict
        return None

    def get_delta_changes(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Get one page of changes of a single entity type.

        Request fields:
            client_id, entity_type, last_sync_timestamp, page_size,
            continuation_token, requested_entity_ids
        """
        if not isinstance(raw, dict):
            raise ValidationError("request", "must be an object")
        client_id = validate_uuid_hex(raw.get("client_id"), "client_id")
        entity_type = validate_entity_type(raw.get("entity_type"))
        since = validate_timestamp(raw.get("last_sync_timestamp"), "last_sync_timestamp")
        page_size = validate_non_negative_int(raw.get("page_size", 100), "page_size")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError("page_size", f"must be between 1 and {MAX_PAGE_SIZE} (got {page_size})")
        after = decode_continuation_token(raw.get("continuation_token"))
        entity_ids = raw.get("requested_entity_ids") or None
        if entity_ids is not None:
            if not isinstance(entity_ids, list):
                raise ValidationError("requested_entity_ids", "must be a list")
            entity_ids = [validate_uuid_hex(e, "requested_entity_ids") for e in entity_ids]
        if not self.get_configuration().for_entity(entity_type).enabled:
            raise ValidationError("entity_type", f"sync is disabled for {entity_type}")

        with self.db.transaction():
            self._ensure_client(client_id, None)
            server_timestamp = self.db.stamp()
            cursors = {entity_type: since}
            items = self.db.get_changes(
                cursors, page_size + 1, after=after, exclude_client_id=client_id, entity_ids=entity_ids
            )
            has_more = len(items) > page_size
            items = items[:page_size]
            total = self.db.count_changes(cursors, exclude_client_id=client_id, entity_ids=entity_ids)

            token = None
            if has_more:
                token = encode_continuation_token(items[-1]["timestamp"], items[-1]["seq"])
            elif not entity_ids:
                self.db.set_client_cursor(client_id, entity_type, server_timestamp)

        logger.debug(f"Delta for {client_id}: {len(items)} {entity_type} changes, more={has_more}")
        return {
            "entity_type": entity_type,
            "changes": [_change_out(item) for item in items],
            "server_timestamp": server_timestamp,
            "has_more_data": has_more,
            "continuation_token": token,
            "total_changes": total,
        }

    # ===== Conflicts =====

    def get_conflicts(self, client_id: Optional[str], include_resolved: bool = False) -> List[Dict[str, Any]]:
        if client_id:
            client_id = validate_uuid_hex(client_id, "client_id")
        return self.conflicts.get_conflicts(client_id, include_resolved)

    def resolve_conflict(
        self,
        conflict_id: str,
        strategy: str,
        resolved_by: Optional[str] = None,
        custom_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Resolve a conflict and publish the result to every client.

        Args:
            conflict_id: Full conflict ID or a unique prefix
            strategy: One of ConflictStrategy values
            resolved_by: User who resolved it
            custom_data: Field values for manual_resolution

        Returns:
            The resolved conflict, or None if no such conflict exists

        Raises:
            ValidationError: Unknown strategy, already resolved, or invalid data
        """
        validate_strategy(strategy)
        if not isinstance(conflict_id, str) or not conflict_id:
            raise ValidationError("conflict_id", "is required")
        with self.db.transaction():
            conflict = self.conflicts.find_conflict(conflict_id)
            if conflict is None:
                return None
            if conflict["is_resolved"]:
                raise ValidationError("conflict_id", f"conflict {conflict['id']} is already resolved")
            try:
                return self._apply_resolution(conflict, strategy, resolved_by, custom_data)
            except SyncApplyError as e:
                raise ValidationError("strategy", e.message) from e

    def _apply_resolution(
        self,
        conflict: Dict[str, Any],
        strategy: str,
        resolved_by: Optional[str],
        custom_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entity_type = conflict["entity_type"]
        current = self.db.get_entity(entity_type, conflict["entity_id"])
        server_data = entity_payload(entity_type, current) if current else conflict["server_data"]

        resolution = resolve_data(
            strategy,
            entity_type,
            conflict["client_data"],
            server_data,
            conflict["client_timestamp"],
            conflict["server_timestamp"],
            conflict["client_operation"],
            conflict["base_data"],
            custom_data,
        )

        now = self.db.stamp()
        data = dict(resolution.data)
        if entity_type != EntityType.PROJECT_MEMBER.value:
            data["updated_at"] = now
        row = validate_entity_payload(entity_type, data, now)
        self._check_dependencies(entity_type, row)
        duplicate = None
        if resolution.duplicate is not None:
            duplicate = validate_entity_payload(entity_type, resolution.duplicate, now)
            self._check_dependencies(entity_type, duplicate)

        self.db.upsert_entity(entity_type, row)
        author = None if resolved_by == SYSTEM_USER else resolved_by
        self.db.record_change(entity_type, row["id"], resolution.operation, row, user_id=author)

        duplicate_id = None
        if duplicate is not None:
            self.db.upsert_entity(entity_type, duplicate)
            self.db.record_change(
                entity_type, duplicate["id"], SyncOperation.CREATE.value, duplicate, user_id=author
            )
            duplicate_id = duplicate["id"]
            if entity_type == EntityType.PROJECT.value:
                self._copy_memberships(row["id"], duplicate, author, now)

        if conflict["sync_item_id"]:
            self.db.update_sync_item_fields(conflict["sync_item_id"], {
                "status": SyncItemStatus.CANCELLED.value,
                "updated_at": now,
            })

        resolved = self.conflicts.mark_resolved(
            conflict["id"],
            strategy,
            {
                "operation": resolution.operation,
                "data": row,
                "duplicate_id": duplicate_id,
                "conflicted_fields": resolution.conflicted_fields,
            },
            resolved_by,
        )
        self._log(
            "conflict_resolved", conflict["client_id"], author, entity_type, row["id"],
            {"strategy": strategy, "conflict_id": conflict["id"]},
        )
        self.notify_entity_change(entity_type, row["id"], resolution.operation)
        return resolved

    def _copy_memberships(
        self,
        project_id: str,
        duplicate: Dict[str, Any],
        author: Optional[str],
        now: str,
    ) -> None:
        """Give a duplicated project the memberships of the original.

        Access to a project goes through its memberships, so the copy gets
        the original's active members, its owner as owner.
        """
        roles = {m["user_id"]: m["role"] for m in self.db.get_members(project_id)}
        owner_id = duplicate.get("owner_id") or author
        if owner_id:
            roles[owner_id] = ProjectRole.OWNER.value
        for user_id, role in roles.items():
            member = validate_entity_payload(EntityType.PROJECT_MEMBER.value, {
                "id": uuid7().hex,
                "project_id": duplicate["id"],
                "user_id": user_id,
                "role": role,
                "joined_at": now,
                "is_active": True,
            }, now)
            self.db.upsert_entity(EntityType.PROJECT_MEMBER.value, member)
            self.db.record_change(
                EntityType.PROJECT_MEMBER.value, member["id"], SyncOperation.CREATE.value,
                member, user_id=author,
            )

    def auto_resolve_conflicts(self, client_id: str) -> int:
        """Resolve every open conflict of a client with its recommended strategy.

        Conflicts that recommend manual resolution are left alone.

        Returns:
            Number of conflicts resolved
        """
        client_id = validate_uuid_hex(client_id, "client_id")
        resolved = 0
        with self.db.transaction():
            for conflict in self.conflicts.get_conflicts(client_id):
                strategy = conflict["recommended_strategy"]
                if strategy == ConflictStrategy.MANUAL_RESOLUTION.value:
                    continue
                try:
                    with self.db.savepoint():
                        self._apply_resolution(conflict, strategy, SYSTEM_USER)
                    resolved += 1
                except (ValidationError, SyncApplyError) as e:
                    logger.warning(f"Could not auto-resolve conflict {conflict['id']}: {e}")
        logger.info(f"Auto-resolved {resolved} conflicts for client {client_id}")
        return resolved

    # ===== Items =====

    def create_sync_item(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a change as a pending sync item for later processing."""
        if not isinstance(raw, dict):
            raise ValidationError("item", "must be an object")
        client_id = validate_uuid_hex(raw.get("client_id"), "client_id")
        user_id = validate_optional_uuid_hex(raw.get("user_id"), "user_id")
        change = validate_sync_change(raw)
        return self.db.record_change(
            change.entity_type,
            change.entity_id,
            change.operation,
            change.data,
            client_id=client_id,
            user_id=user_id,
            client_timestamp=change.timestamp,
            client_change_id=change.change_id,
            status=SyncItemStatus.PENDING.value,
        )

    def mark_item_completed(self, item_id: str) -> bool:
        # The new timestamp must be written before any cursor can move past it
        with self.db.transaction():
            now = self.db.stamp()
            return self.db.update_sync_item_fields(item_id, {
                "status": SyncItemStatus.COMPLETED.value,
                "error_message": None,
                "timestamp": now,
                "updated_at": now,
            })

    def mark_item_failed(self, item_id: str, error_message: str) -> Optional[Dict[str, Any]]:
        """Mark an item failed and count the attempt. Returns None if unknown."""
        with self.db.transaction():
            item = self.db.get_sync_item(item_id)
            if item is None:
                return None
            now = self.db.stamp()
            self.db.update_sync_item_fields(item_id, {
                "status": SyncItemStatus.FAILED.value,
                "error_message": error_message,
                "retry_count": item["retry_count"] + 1,
                "last_retry_at": now,
                "updated_at": now,
            })
            return self.db.get_sync_item(item_id)

    def get_pending_items(self, client_id: str, max_items: int = 100) -> List[Dict[str, Any]]:
        client_id = validate_uuid_hex(client_id, "client_id")
        max_items = validate_non_negative_int(max_items, "max_items")
        if max_items < 1 or max_items > MAX_PAGE_SIZE:
            raise ValidationError("max_items", f"must be between 1 and {MAX_PAGE_SIZE} (got {max_items})")
        return self.db.get_items_by_status(client_id, SyncItemStatus.PENDING.value, max_items)

    def process_pending_items(self, client_id: str) -> Dict[str, int]:
        """Apply the pending items of a client, completing or failing each one."""
        client_id = validate_uuid_hex(client_id, "client_id")
        completed = 0
        failed = 0
        with self.db.transaction():
            items = self.db.get_items_by_status(client_id, SyncItemStatus.PENDING.value)
            for item in items:
                self.db.update_sync_item_fields(item["id"], {"status": SyncItemStatus.IN_PROGRESS.value})
                change = SyncChange(
                    entity_type=item["entity_type"],
                    entity_id=item["entity_id"],
                    operation=item["operation"],
                    data=item["data"],
                    timestamp=item["client_timestamp"] or item["timestamp"],
                    change_id=item["client_change_id"],
                )
                try:
                    validate_entity_type(change.entity_type)
                    validate_operation(change.operation)
                    row = self._apply_change(change)
                except (ValidationError, SyncApplyError, sqlite3.IntegrityError) as e:
                    self.mark_item_failed(item["id"], str(e))
                    failed += 1
                    continue
                now = self.db.stamp()
                self.db.update_sync_item_fields(item["id"], {
                    "status": SyncItemStatus.COMPLETED.value,
                    "data": row if row is not None else item["data"],
                    "error_message": None,
                    "timestamp": now,
                    "updated_at": now,
                })
                self.notify_entity_change(change.entity_type, change.entity_id, change.operation, client_id)
                completed += 1
        if items:
            logger.info(f"Processed {len(items)} pending items for {client_id}: {completed} completed, {failed} failed")
        return {"processed": len(items), "completed": completed, "failed": failed}

    # ===== Status and health =====

    def get_sync_status(self, client_id: str) -> Optional[Dict[str, Any]]:
        client_id = validate_uuid_hex(client_id, "client_id")
        client = self.db.get_client(client_id)
        if client is None:
            return None
        counts = self.db.count_items_by_status(client_id)
        return {
            "client_id": client_id,
            "last_sync_timestamp": client["last_sync_timestamp"],
            "last_seen_at": client["last_seen_at"],
            "entity_last_sync": self.db.get_client_cursors(client_id),
            "pending_count": counts.get(SyncItemStatus.PENDING.value, 0),
            "failed_count": counts.get(SyncItemStatus.FAILED.value, 0),
            "conflict_count": self.conflicts.get_unresolved_count(client_id),
            "pending_items": self.db.get_items_by_status(client_id, SyncItemStatus.PENDING.value, 100),
            "server_timestamp": self.db.stamp(),
        }

    def get_sync_health(self, client_id: str) -> Dict[str, Any]:
        """Health of one client's sync state.

        A client is healthy with no failed items, fewer than 100 pending
        items and no open conflicts.
        """
        client_id = validate_uuid_hex(client_id, "client_id")
        counts = self.db.count_items_by_status(client_id)
        pending = counts.get(SyncItemStatus.PENDING.value, 0)
        failed = counts.get(SyncItemStatus.FAILED.value, 0)
        open_conflicts = self.conflicts.get_unresolved_count(client_id)

        issues = []
        if failed:
            issues.append(f"{failed} failed sync items")
        if pending >= UNHEALTHY_PENDING_COUNT:
            issues.append(f"Sync backlog of {pending} pending items")
        if open_conflicts:
            issues.append(f"{open_conflicts} unresolved conflicts")

        client = self.db.get_client(client_id)
        return {
            "client_id": client_id,
            "is_healthy": not issues,
            "health_issues": issues,
            "pending_count": pending,
            "failed_count": failed,
            "conflict_count": open_conflicts,
            "last_sync_timestamp": client["last_sync_timestamp"] if client else None,
        }

    def service_health(self) -> Dict[str, Any]:
        counts = self.db.count_items_by_status()
        return {
            "status": "healthy",
            "service": "sync",
            "timestamp": self.db.stamp(),
            "pending_items": counts.get(SyncItemStatus.PENDING.value, 0),
            "active_clients": len(self.db.get_clients_seen_since(timestamp_days_ago(1))),
        }

    # ===== Maintenance =====

    def retry_failed_items(self, client_id: str) -> Dict[str, int]:
        """Requeue failed items under the retry limit and process them again."""
        client_id = validate_uuid_hex(client_id, "client_id")
        limit = self.get_configuration().max_retry_attempts
        with self.db.transaction():
            requeued = 0
            for item in self.db.get_items_by_status(client_id, SyncItemStatus.FAILED.value):
                if item["retry_count"] >= limit:
                    continue
                self.db.update_sync_item_fields(item["id"], {
                    "status": SyncItemStatus.PENDING.value,
                    "updated_at": self.db.stamp(),
                })
                requeued += 1
            result = self.process_pending_items(client_id)
        logger.info(f"Requeued {requeued} failed items for {client_id}")
        return {"requeued": requeued, **result}

    def cleanup_old_items(self, days_old: int = 30) -> Dict[str, int]:
        """Delete finished items, resolved conflicts and logs older than ``days_old`` days."""
        days_old = validate_non_negative_int(days_old, "days_old")
        if days_old < 1:
            raise ValidationError("days_old", "must be at least 1")
        cutoff = timestamp_days_ago(days_old)
        with self.db.transaction():
            result = {
                "sync_items": self.db.delete_sync_items_before(
                    cutoff, [SyncItemStatus.COMPLETED.value, SyncItemStatus.CANCELLED.value]
                ),
                "conflicts": self.db.delete_resolved_conflicts_before(cutoff),
                "logs": self.db.delete_sync_logs_before(cutoff),
            }
        logger.info(f"Cleanup older than {days_old} days: {result}")
        return result

    # ===== Subscriptions and notifications =====

    def subscribe(self, client_id: str, entity_type: str, entity_id: Optional[str] = None) -> Dict[str, Any]:
        """Subscribe a client to one entity, or to a whole type when entity_id is None."""
        client_id = validate_uuid_hex(client_id, "client_id")
        entity_type = validate_entity_type(entity_type)
        entity_id = validate_optional_uuid_hex(entity_id, "entity_id")
        created = self.db.add_subscription(client_id, entity_type, entity_id or "", self.db.stamp())
        return {
            "client_id": client_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "created": created,
        }

    def unsubscribe(self, client_id: str, entity_type: str, entity_id: Optional[str] = None) -> bool:
        client_id = validate_uuid_hex(client_id, "client_id")
        entity_type = validate_entity_type(entity_type)
        entity_id = validate_optional_uuid_hex(entity_id, "entity_id")
        return self.db.remove_subscription(client_id, entity_type, entity_id or "")

    def get_subscriptions(self, client_id: str) -> List[Dict[str, Any]]:
        client_id = validate_uuid_hex(client_id, "client_id")
        return [
            dict(sub, entity_id=sub["entity_id"] or None)
            for sub in self.db.get_subscriptions(client_id)
        ]

    def notify_entity_change(
        self,
        entity_type: str,
        entity_id: str,
        operation: str,
        originating_client: Optional[str] = None,
    ) -> List[str]:
        """Record a notification for every client subscribed to the entity.

        The client that made the change is not notified.

        Returns:
            IDs of the notified clients
        """
        notified = [
            client_id for client_id in self.db.get_subscribers(entity_type, entity_id)
            if client_id != originating_client
        ]
        for client_id in notified:
            self._log(
                "entity_changed", client_id, None, entity_type, entity_id,
                {"operation": operation, "originating_client": originating_client},
            )
        if notified:
            logger.debug(f"Notified {len(notified)} clients of {operation} on {entity_type} {entity_id}")
        return notified

    def get_notifications(self, client_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        client_id = validate_uuid_hex(client_id, "client_id")
        return [
            log for log in self.db.get_sync_logs(client_id, limit)
            if log["action"] == "entity_changed"
        ]

    def _log(
        self,
        action: str,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.db.insert_sync_log({
            "id": uuid7().hex,
            "client_id": client_id,
            "user_id": user_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
            "created_at": self.db.stamp(),
        })


def create_sync_blueprint(service: SyncService) -> Blueprint:
    """Create Flask blueprint for sync endpoints.

    Args:
        service: SyncService bound to the server database

    Returns:
        Flask Blueprint with sync routes under /api/sync
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")

    def sync_endpoint(func: Callable) -> Callable:
        """Map ValidationError to 400 and anything else to 500."""

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ValidationError as e:
                logger.warning(f"Sync request rejected ({request.path}): {e}")
                return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
            except Exception as e:
                error_msg = f"Internal server error in {request.path}: {e}"
                logger.error(error_msg)
                return jsonify({"error": error_msg}), 500

        return wrapper

    def json_body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("body", "missing JSON request body")
        return data

    def query_int(name: str, default: int) -> int:
        value = request.args.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ValidationError(name, f"must be an integer (got {value!r})") from None

    @sync_bp.route("/health", methods=["GET"])
    @sync_endpoint
    def health() -> Tuple[Any, int]:
        return jsonify(service.service_health()), 200

    @sync_bp.route("/sync", methods=["POST"])
    @sync_endpoint
    def sync() -> Tuple[Any, int]:
        """Apply client changes and return server changes.

        Request body:
            {
                "client_id": "...",
                "user_id": "...",
                "last_sync_timestamp": "...",
                "entity_timestamps": {"task": "..."},
                "client_changes": [...]
            }

        Response: 200 when all changes applied, 207 on partial success,
        422 when every change failed.
        """
        response = service.process_sync(json_body())
        return jsonify(response), sync_status_code(response)

    @sync_bp.route("/delta", methods=["POST"])
    @sync_endpoint
    def delta() -> Tuple[Any, int]:
        return jsonify(service.get_delta_changes(json_body())), 200

    @sync_bp.route("/status/<client_id>", methods=["GET"])
    @sync_endpoint
    def status(client_id: str) -> Tuple[Any, int]:
        result = service.get_sync_status(client_id)
        if result is None:
            return jsonify({"error": f"Client {client_id} not found"}), 404
        return jsonify(result), 200

    @sync_bp.route("/health/<client_id>", methods=["GET"])
    @sync_endpoint
    def client_health(client_id: str) -> Tuple[Any, int]:
        return jsonify(service.get_sync_health(client_id)), 200

    @sync_bp.route("/conflicts/<client_id>", methods=["GET"])
    @sync_endpoint
    def list_conflicts(client_id: str) -> Tuple[Any, int]:
        include_resolved = request.args.get("include_resolved", "false").lower() in ("1", "true", "yes")
        return jsonify(service.get_conflicts(client_id, include_resolved)), 200

    @sync_bp.route("/conflicts/resolve", methods=["POST"])
    @sync_endpoint
    def resolve_conflict() -> Tuple[Any, int]:
        data = json_body()
        resolved_by = data.get("resolved_by") or request.headers.get("X-User-ID")
        conflict = service.resolve_conflict(
            data.get("conflict_id"),
            data.get("strategy"),
            resolved_by,
            data.get("custom_data"),
        )
        if conflict is None:
            return jsonify({"error": f"Conflict {data.get('conflict_id')} not found"}), 404
        return jsonify(conflict), 200

    @sync_bp.route("/conflicts/<client_id>/auto-resolve", methods=["POST"])
    @sync_endpoint
    def auto_resolve(client_id: str) -> Tuple[Any, int]:
        return jsonify({"resolved": service.auto_resolve_conflicts(client_id)}), 200

    @sync_bp.route("/items", methods=["POST"])
    @sync_endpoint
    def create_item() -> Tuple[Any, int]:
        return jsonify(service.create_sync_item(json_body())), 201

    @sync_bp.route("/items/<item_id>/complete", methods=["PUT"])
    @sync_endpoint
    def complete_item(item_id: str) -> Tuple[Any, int]:
        if not service.mark_item_completed(item_id):
            return jsonify({"error": f"Sync item {item_id} not found"}), 404
        return jsonify({"success": True}), 200

    @sync_bp.route("/items/<item_id>/failed", methods=["PUT"])
    @sync_endpoint
    def fail_item(item_id: str) -> Tuple[Any, int]:
        data = request.get_json(silent=True) or {}
        item = service.mark_item_failed(item_id, str(data.get("error_message") or "Unknown error"))
        if item is None:
            return jsonify({"error": f"Sync item {item_id} not found"}), 404
        return jsonify(item), 200

    @sync_bp.route("/items/<client_id>/pending", methods=["GET"])
    @sync_endpoint
    def pending_items(client_id: str) -> Tuple[Any, int]:
        return jsonify(service.get_pending_items(client_id, query_int("max_items", 100))), 200

    @sync_bp.route("/configuration", methods=["GET"])
    @sync_endpoint
    def get_configuration() -> Tuple[Any, int]:
        return jsonify(service.get_configuration().to_dict()), 200

    @sync_bp.route("/configuration", methods=["PUT"])
    @sync_endpoint
    def update_configuration() -> Tuple[Any, int]:
        return jsonify(service.update_configuration(json_body()).to_dict()), 200

    @sync_bp.route("/maintenance/<client_id>/retry-failed", methods=["POST"])
    @sync_endpoint
    def retry_failed(client_id: str) -> Tuple[Any, int]:
        return jsonify(service.retry_failed_items(client_id)), 200

    @sync_bp.route("/maintenance/cleanup", methods=["POST"])
    @sync_endpoint
    def cleanup() -> Tuple[Any, int]:
        return jsonify(service.cleanup_old_items(query_int("days_old", 30))), 200

    @sync_bp.route("/clients/register", methods=["POST"])
    @sync_endpoint
    def register_client() -> Tuple[Any, int]:
        return jsonify(service.register_client(json_body())), 200

    @sync_bp.route("/clients/<client_id>/heartbeat", methods=["PUT"])
    @sync_endpoint
    def heartbeat(client_id: str) -> Tuple[Any, int]:
        client = service.heartbeat(client_id)
        if client is None:
            return jsonify({"error": f"Client {client_id} not found"}), 404
        return jsonify(client), 200

    @sync_bp.route("/clients/active", methods=["GET"])
    @sync_endpoint
    def active_clients() -> Tuple[Any, int]:
        return jsonify(service.get_active_clients(query_int("hours", ACTIVE_CLIENT_HOURS))), 200

    @sync_bp.route("/clients/<client_id>", methods=["DELETE"])
    @sync_endpoint
    def deactivate_client(client_id: str) -> Tuple[Any, int]:
        if not service.deactivate_client(client_id):
            return jsonify({"error": f"Client {client_id} not found"}), 404
        return jsonify({"success": True}), 200

    @sync_bp.route("/subscriptions", methods=["POST"])
    @sync_endpoint
    def subscribe() -> Tuple[Any, int]:
        data = json_body()
        result = service.subscribe(data.get("client_id"), data.get("entity_type"), data.get("entity_id"))
        return jsonify(result), 201 if result["created"] else 200

    @sync_bp.route("/subscriptions", methods=["DELETE"])
    @sync_endpoint
    def unsubscribe() -> Tuple[Any, int]:
        data = json_body()
        removed = service.unsubscribe(data.get("client_id"), data.get("entity_type"), data.get("entity_id"))
        if not removed:
            return jsonify({"error": "Subscription not found"}), 404
        return jsonify({"success": True}), 200

    @sync_bp.route("/subscriptions/<client_id>", methods=["GET"])
    @sync_endpoint
    def list_subscriptions(client_id: str) -> Tuple[Any, int]:
        return jsonify(service.get_subscriptions(client_id)), 200

    @sync_bp.route("/notify", methods=["POST"])
    @sync_endpoint
    def notify() -> Tuple[Any, int]:
        data = json_body()
        entity_type = validate_entity_type(data.get("entity_type"))
        entity_id = validate_uuid_hex(data.get("entity_id"), "entity_id")
        operation = validate_operation(data.get("operation"))
        originating = validate_optional_uuid_hex(data.get("originating_client"), "originating_client")
        notified = service.notify_entity_change(entity_type, entity_id, operation, originating)
        return jsonify({"notified_clients": notified}), 200

    @sync_bp.route("/notifications/<client_id>", methods=["GET"])
    @sync_endpoint
    def notifications(client_id: str) -> Tuple[Any, int]:
        return jsonify(service.get_notifications(client_id, query_int("limit", 100))), 200

    return sync_bp
