"""Sync client for TaskHub.

This module provides the client side of the sync protocol, allowing
this device to:
- Push local changes to the server and receive server changes in the
  same exchange
- Page through remaining server changes per entity type
- Record and resolve conflicts between local edits and server changes
- Sync periodically on a background thread

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from .. import __version__
from .config import Config
from .local_store import GLOBAL_CURSOR, LocalStore
from .merge import changed_fields, merge_entity_data
from .models import ENTITY_ORDER, ConflictStrategy, SyncOperation
from .timestamp_utils import utc_now
from .validation import ValidationError

logger = logging.getLogger(__name__)

__all__ = ["SyncClient", "SyncResult", "STRATEGY_ALIASES"]

# Short names accepted wherever a strategy is given
STRATEGY_ALIASES = {
    "merge": ConflictStrategy.MERGE_CHANGES.value,
    "manual": ConflictStrategy.MANUAL_RESOLUTION.value,
    "lww": ConflictStrategy.LAST_WRITER_WINS.value,
    "duplicate": ConflictStrategy.CREATE_DUPLICATE.value,
}

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    pulled: int = 0  # Changes applied from the server
    pushed: int = 0  # Local changes accepted by the server
    conflicts: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.pulled += other.pulled
        self.pushed += other.pushed
        self.conflicts += other.conflicts
        self.errors.extend(other.errors)
        self.success = self.success and other.success


class SyncClient:
    """Client for syncing a LocalStore with the TaskHub server.

    Handles pushing the change log, pulling server changes, conflict
    bookkeeping and the background sync loop.
    """

    def __init__(
        self,
        store: LocalStore,
        config: Config,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize sync client.

        Args:
            store: Local database
            config: Config instance
            session: HTTP session (a new one is created if None)
        """
        self.store = store
        self.config = config
        self.session = session or requests.Session()
        self.client_id = config.get_client_id()
        self.user_id = config.get_user_id()

        sync_config = config.get_sync_config()
        self.server_url = config.get_server_url().rstrip("/")
        self.timeout = sync_config["request_timeout"]
        self.batch_size = sync_config["batch_size"]
        self.max_retry_attempts = sync_config["max_retry_attempts"]

        self.on_progress: Optional[ProgressCallback] = None
        self.on_conflict: Optional[Callable[[Dict[str, Any]], None]] = None
        self.on_completed: Optional[Callable[[SyncResult], None]] = None

        self._state_lock = threading.Lock()
        self._in_progress = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ===== HTTP =====

    def _make_request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP request to the server.

        Returns:
            Dict with success status and response data or error
        """
        url = f"{self.server_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=data,
                params=params,
                headers={"X-User-ID": self.user_id},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            error_msg = f"Connection failed to {url}: {e}"
            logger.error(error_msg)
            return {"success": False, "error": error_msg}

        try:
            response_data = response.json()
        except ValueError:
            response_data = None

        # 207 (partial success) and 422 (nothing applied) still carry
        # per-change results the caller needs
        if response.ok or response.status_code in (207, 422):
            if not isinstance(response_data, dict):
                error_msg = f"HTTP {response.status_code} without a JSON object body"
                logger.error(f"Request to {url} failed: {error_msg}")
                return {"success": False, "error": f"Invalid response: {error_msg}",
                        "status_code": response.status_code}
            return {"success": True, "data": response_data, "status_code": response.status_code}

        if isinstance(response_data, dict) and response_data.get("error"):
            error_msg = response_data["error"]
        else:
            error_msg = f"HTTP {response.status_code}: {response.reason}"
        logger.error(f"Request to {url} failed: {error_msg}")
        return {"success": False, "error": f"Server error: {error_msg}", "status_code": response.status_code}

    def is_online(self) -> bool:
        """Check whether the server answers its health check."""
        result = self._make_request("GET", "/api/sync/health")
        return result["success"]

    # ===== Sync =====

    def _progress(self, stage: str, done: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(stage, done, total)

    def sync_all(self) -> SyncResult:
        """Perform a full sync: push local changes, then pull everything new.

        Returns:
            SyncResult with summary of the sync
        """
        with self._state_lock:
            if self._in_progress:
                return SyncResult(success=False, errors=["Sync already in progress"])
            self._in_progress = True

        try:
            logger.info(f"Starting sync with {self.server_url}")
            self.store.reset_in_progress()

            result, has_more = self._push(pull_only_if_empty=True)
            if has_more:
                result.merge(self.pull_server_changes())

            logger.info(
                f"Sync complete: pulled={result.pulled}, pushed={result.pushed}, "
                f"conflicts={result.conflicts}"
            )
        except Exception as e:
            logger.error(f"Sync error: {e}")
            result = SyncResult(success=False, errors=[str(e)])
        finally:
            with self._state_lock:
                self._in_progress = False

        if self.on_completed is not None:
            self.on_completed(result)
        return result

    def push_local_changes(self) -> SyncResult:
        """Push pending changes in batches (server changes are applied too)."""
        result, _ = self._push(pull_only_if_empty=False)
        return result

    def _push(self, pull_only_if_empty: bool) -> tuple[SyncResult, bool]:
        """Run sync exchanges until no pending change is left.

        Args:
            pull_only_if_empty: Make one exchange even with nothing to push,
                to receive server changes

        Returns:
            (result, whether the server has more changes to pull)
        """
        result = SyncResult(success=True)
        has_more = False
        total = len(self.store.get_pending_changes(limit=-1))
        done = 0
        first = True

        while True:
            batch = self.store.get_pending_changes(self.batch_size)
            if not batch and not (first and pull_only_if_empty):
                break
            first = False
            self._progress("push", done, total)

            exchange = self._exchange(batch)
            result.merge(exchange["result"])
            has_more = exchange["has_more"]
            done += len(batch)
            if exchange["request_failed"] or exchange["stalled"] or not batch:
                break

        self._progress("push", done, total)
        return result, has_more

    def _exchange(self, batch: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Send one batch to /api/sync/sync and process the response."""
        result = SyncResult(success=True)
        change_ids = [change["id"] for change in batch]
        self.store.mark_changes_in_progress(change_ids)

        request_data = {
            "client_id": self.client_id,
            "user_id": self.user_id,
            "last_sync_timestamp": self.store.get_cursor(GLOBAL_CURSOR),
            "entity_timestamps": self.store.get_cursors(),
            "client_version": __version__,
            "client_time": utc_now(),
            "client_changes": [
                {
                    "change_id": change["id"],
                    "entity_type": change["entity_type"],
                    "entity_id": change["entity_id"],
                    "operation": change["operation"],
                    "data": change["data"],
                    "timestamp": change["timestamp"],
                }
                for change in batch
            ],
        }

        response = self._make_request("POST", "/api/sync/sync", request_data)
        if not response["success"]:
            self.store.reset_in_progress()
            result.success = False
            result.errors.append(f"Push failed: {response.get('error')}")
            return {"result": result, "has_more": False, "request_failed": True, "stalled": False}

        data = response["data"]
        by_id = {change["id"]: change for change in batch}

        acknowledged = [a["change_id"] for a in data.get("applied", []) if a.get("change_id") in by_id]
        self.store.mark_changes_synced(acknowledged)
        result.pushed = len(acknowledged)

        for error in data.get("errors", []):
            change_id = error.get("change_id")
            message = f"{error.get('error_code')}: {error.get('error_message')}"
            result.errors.append(f"Change {change_id} rejected: {message}")
            if change_id in by_id:
                self.store.mark_change_failed(
                    change_id, message,
                    permanent=not error.get("is_retryable", False),
                    max_retries=self.max_retry_attempts,
                )

        for conflict in data.get("conflicts", []):
            change_id = conflict.get("change_id")
            change = by_id.get(change_id)
            if change is None:
                continue
            self.store.mark_change_conflict(change_id, conflict.get("reason"))
            local = self.store.add_conflict(
                conflict["entity_type"],
                conflict["entity_id"],
                change["data"],
                conflict["server_data"],
                change["timestamp"],
                conflict["server_timestamp"],
                server_conflict_id=conflict["id"],
                change_ids=[change_id],
            )
            result.conflicts += 1
            if self.on_conflict is not None:
                self.on_conflict(local)

        # Anything the server did not mention goes back to the queue
        mentioned = set(acknowledged)
        mentioned.update(e.get("change_id") for e in data.get("errors", []))
        mentioned.update(c.get("change_id") for c in data.get("conflicts", []))
        leftover = [cid for cid in change_ids if cid not in mentioned]
        if leftover:
            logger.warning(f"Server did not acknowledge {len(leftover)} changes, requeueing")
            self.store.reset_in_progress()

        pull = self._apply_incoming(data.get("server_changes", []))
        result.merge(pull)
        if not pull.errors:
            for entity_type, timestamp in (data.get("entity_timestamps") or {}).items():
                self.store.set_cursor(entity_type, timestamp)
            if not data.get("has_more_data"):
                self.store.set_cursor(GLOBAL_CURSOR, data["server_timestamp"])

        if result.errors:
            result.success = False
        return {
            "result": result,
            "has_more": bool(data.get("has_more_data")) and not pull.errors,
            "request_failed": False,
            "stalled": bool(leftover),
        }

    def pull_server_changes(self) -> SyncResult:
        """Page through server changes of every entity type with /api/sync/delta."""
        result = SyncResult(success=True)
        for entity_type in sorted(ENTITY_ORDER, key=ENTITY_ORDER.get):
            token: Optional[str] = None
            pulled = 0
            while True:
                response = self._make_request("POST", "/api/sync/delta", {
                    "client_id": self.client_id,
                    "entity_type": entity_type,
                    "last_sync_timestamp": self.store.get_cursor(entity_type),
                    "page_size": self.batch_size,
                    "continuation_token": token,
                })
                if not response["success"]:
                    result.success = False
                    result.errors.append(f"Pull of {entity_type} failed: {response.get('error')}")
                    break

                page = response["data"]
                applied = self._apply_incoming(page["changes"])
                result.merge(applied)
                pulled += len(page["changes"])
                self._progress(f"pull:{entity_type}", pulled, page["total_changes"])
                if applied.errors:
                    break

                if page["has_more_data"]:
                    # Keep the cursor at the last applied change while paging
                    token = page["continuation_token"]
                    if page["changes"]:
                        self.store.set_cursor(entity_type, page["changes"][-1]["timestamp"])
                    continue
                self.store.set_cursor(entity_type, page["server_timestamp"])
                break

        if result.errors:
            result.success = False
        return result

    def _apply_incoming(self, changes: List[Dict[str, Any]]) -> SyncResult:
        """Apply server changes, holding back the ones that collide with local edits."""
        result = SyncResult(success=True)
        for change in changes:
            try:
                unsent = self.store.get_unsent_change(change["entity_type"], change["entity_id"])
                if unsent is not None and changed_fields(unsent["data"], change["data"]):
                    change_ids = self.store.mark_entity_changes_conflict(
                        change["entity_type"], change["entity_id"]
                    )
                    local = self.store.add_conflict(
                        change["entity_type"],
                        change["entity_id"],
                        unsent["data"],
                        change["data"],
                        unsent["timestamp"],
                        change["timestamp"],
                        change_ids=change_ids,
                    )
                    result.conflicts += 1
                    if self.on_conflict is not None:
                        self.on_conflict(local)
                    continue
                self.store.apply_server_change(change)
                result.pulled += 1
            except (ValidationError, KeyError) as e:
                logger.warning(f"Could not apply server change {change.get('id')}: {e}")
                result.errors.append(f"Server change {change.get('id')}: {e}")
        if result.errors:
            result.success = False
        return result

    # ===== Conflicts and retries =====

    def resolve_conflict(
        self,
        conflict_id: str,
        strategy: str,
        custom_data: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        """Resolve a local conflict.

        Conflicts reported by the server are resolved on the server and the
        outcome is pulled back. Conflicts found while pulling are resolved
        locally; a resolution that keeps local data is queued as a new change.

        Raises:
            ValidationError: Unknown conflict, already resolved, or a strategy
                that does not apply
        """
        strategy = STRATEGY_ALIASES.get(strategy, strategy)
        conflict = self.store.get_conflict(conflict_id)
        if conflict is None:
            raise ValidationError("conflict_id", f"conflict {conflict_id} not found")
        if conflict["is_resolved"]:
            raise ValidationError("conflict_id", f"conflict {conflict['id']} is already resolved")

        if conflict["server_conflict_id"]:
            response = self._make_request("POST", "/api/sync/conflicts/resolve", {
                "conflict_id": conflict["server_conflict_id"],
                "strategy": strategy,
                "resolved_by": self.user_id,
                "custom_data": custom_data,
            })
            if not response["success"]:
                return SyncResult(success=False, errors=[response.get("error", "Resolve failed")])
            self.store.cancel_changes(conflict["change_ids"])
            self.store.resolve_conflict(conflict["id"], strategy)
            logger.info(f"Resolved server conflict {conflict['server_conflict_id']} with {strategy}")
            return self.pull_server_changes()

        self._resolve_locally(conflict, strategy, custom_data)
        self.store.cancel_changes(conflict["change_ids"])
        self.store.resolve_conflict(conflict["id"], strategy)
        logger.info(f"Resolved local conflict {conflict['id']} with {strategy}")
        return SyncResult(success=True)

    def _resolve_locally(
        self, conflict: Dict[str, Any], strategy: str, custom_data: Optional[Dict[str, Any]]
    ) -> None:
        entity_type = conflict["entity_type"]
        local_data = conflict["local_data"]
        server_data = conflict["server_data"]

        def take_server() -> None:
            self.store.apply_server_change({
                "entity_type": entity_type,
                "entity_id": conflict["entity_id"],
                "operation": SyncOperation.UPDATE.value,
                "data": server_data,
                "timestamp": conflict["server_timestamp"],
            })

        def requeue(data: Dict[str, Any]) -> None:
            take_server()
            payload = dict(data, updated_at=utc_now())
            operation = SyncOperation.DELETE.value if payload.get("deleted_at") else SyncOperation.UPDATE.value
            self.store.save_entity(entity_type, payload, operation)

        if strategy == ConflictStrategy.LAST_WRITER_WINS.value:
            newer_local = conflict["local_timestamp"] > conflict["server_timestamp"]
            strategy = ConflictStrategy.CLIENT_WINS.value if newer_local else ConflictStrategy.SERVER_WINS.value

        if strategy == ConflictStrategy.SERVER_WINS.value:
            take_server()
        elif strategy == ConflictStrategy.CLIENT_WINS.value:
            requeue(local_data)
        elif strategy == ConflictStrategy.MERGE_CHANGES.value:
            merged = merge_entity_data(
                local_data, server_data, conflict["local_timestamp"], conflict["server_timestamp"]
            )
            requeue(merged.data)
        elif strategy == ConflictStrategy.MANUAL_RESOLUTION.value:
            if not custom_data:
                raise ValidationError("custom_data", "is required for manual resolution")
            data = dict(server_data, **custom_data)
            data["id"] = conflict["entity_id"]
            requeue(data)
        else:
            raise ValidationError("strategy", f"{strategy} is not supported for local conflicts")

    def retry_failed(self) -> SyncResult:
        """Requeue failed changes under the retry limit and push again."""
        requeued = self.store.requeue_failed(self.max_retry_attempts)
        logger.info(f"Requeued {requeued} failed changes")
        if not requeued:
            return SyncResult(success=True)
        return self.push_local_changes()

    def get_sync_status(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "server_url": self.server_url,
            "online": self.is_online(),
            "last_sync": self.store.get_cursor(GLOBAL_CURSOR),
            "cursors": self.store.get_cursors(),
            "changes": self.store.get_status_counts(),
            "in_progress": self._in_progress,
            "background_sync": self.is_background_sync_running(),
        }

    # ===== Background sync =====

    def start_background_sync(self, interval: Optional[float] = None) -> None:
        """Run sync_all every ``interval`` seconds on a daemon thread."""
        if self.is_background_sync_running():
            return
        if interval is None:
            interval = self.config.get_sync_config()["interval_seconds"]
        self._stop_event.clear()

        def loop() -> None:
            while not self._stop_event.is_set():
                result = self.sync_all()
                if not result.success:
                    logger.warning(f"Background sync failed: {result.errors[:3]}")
                self._stop_event.wait(interval)

        self._thread = threading.Thread(target=loop, name="taskhub-sync", daemon=True)
        self._thread.start()
        logger.info(f"Background sync started (every {interval}s)")

    def stop_background_sync(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Background sync stopped")

    def is_background_sync_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
