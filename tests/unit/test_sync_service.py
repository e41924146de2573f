"""Unit tests for the server sync engine.

Tests the sync exchange (push and pull), conflict detection and resolution,
delta paging, queued items, status reporting and subscriptions.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest

from taskhub.core.database import Database
from taskhub.core.projects import ProjectService
from taskhub.core.sync import (
    SyncService,
    decode_continuation_token,
    encode_continuation_token,
    sync_status_code,
)
from taskhub.core.timestamp_utils import timestamp_days_ahead, utc_now
from taskhub.core.validation import ValidationError

from tests.helpers import CLIENT_A_ID, CLIENT_B_ID, MEMBER_ID, OWNER_ID, make_change, new_id


def project_change(
    project_id: str,
    operation: str = "create",
    timestamp: Optional[str] = None,
    **data: Any,
) -> Dict[str, Any]:
    payload = {"id": project_id, **data}
    if operation == "create":
        payload.setdefault("name", "Synced project")
        payload.setdefault("owner_id", OWNER_ID)
    return make_change("project", project_id, operation, payload, timestamp or utc_now())


def task_change(task_id: str, project_id: str, title: str = "Synced task") -> Dict[str, Any]:
    return make_change("task", task_id, "create", {
        "id": task_id,
        "project_id": project_id,
        "title": title,
        "created_by_id": OWNER_ID,
    }, utc_now())


def sync(
    service: SyncService,
    client_id: str,
    changes: Optional[List[Dict[str, Any]]] = None,
    last_sync: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    return service.process_sync({
        "client_id": client_id,
        "user_id": OWNER_ID,
        "last_sync_timestamp": last_sync,
        "client_changes": changes or [],
        **extra,
    })


@pytest.fixture
def shared_project(sync_service: SyncService) -> Dict[str, Any]:
    """A project created by client A and pulled by client B.

    Returns the project id and each client's last sync timestamp.
    """
    project_id = new_id()
    pushed = sync(sync_service, CLIENT_A_ID, [project_change(project_id, name="Original")])
    pulled = sync(sync_service, CLIENT_B_ID)
    assert [c["entity_id"] for c in pulled["server_changes"]] == [project_id]
    return {
        "id": project_id,
        "a_sync": pushed["server_timestamp"],
        "b_sync": pulled["server_timestamp"],
    }


class TestContinuationToken:
    def test_round_trip(self) -> None:
        token = encode_continuation_token("2024-05-01T12:00:00.000000Z", 42)
        assert decode_continuation_token(token) == ("2024-05-01T12:00:00.000000Z", 42)

    def test_empty(self) -> None:
        assert decode_continuation_token(None) is None

    def test_invalid(self) -> None:
        with pytest.raises(ValidationError):
            decode_continuation_token("garbage")


class TestStatusCode:
    def _response(self, applied: int, conflicts: int, errors: int) -> Dict[str, Any]:
        return {"statistics": {"applied": applied, "conflicts": conflicts, "errors": errors}}

    def test_codes(self) -> None:
        assert sync_status_code(self._response(1, 0, 0)) == 200
        assert sync_status_code(self._response(0, 0, 0)) == 200
        assert sync_status_code(self._response(1, 0, 1)) == 207
        assert sync_status_code(self._response(0, 1, 0)) == 207
        assert sync_status_code(self._response(0, 0, 2)) == 422


class TestPush:
    """Test applying client changes."""

    def test_create_applied(self, empty_db: Database, sync_service: SyncService) -> None:
        project_id = new_id()
        response = sync(sync_service, CLIENT_A_ID, [project_change(project_id)])

        assert response["statistics"]["applied"] == 1
        assert response["errors"] == []
        assert response["applied"][0]["entity_id"] == project_id
        project = empty_db.get_project(project_id)
        assert project["name"] == "Synced project"
        assert project["status"] == "planning"

    def test_client_registered_on_first_sync(self, empty_db: Database, sync_service: SyncService) -> None:
        sync(sync_service, CLIENT_A_ID)
        client = empty_db.get_client(CLIENT_A_ID)
        assert client["user_id"] == OWNER_ID
        assert client["last_sync_timestamp"] is not None

    def test_duplicate_change_acknowledged_once(
        self, empty_db: Database, sync_service: SyncService
    ) -> None:
        change = project_change(new_id())
        sync(sync_service, CLIENT_A_ID, [change])
        response = sync(sync_service, CLIENT_A_ID, [change])

        assert response["applied"][0]["duplicate"] is True
        assert len(empty_db.get_changes({"project": None}, limit=10)) == 1

    def test_failed_change_log_leaves_entity_untouched(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        original = empty_db.record_change

        def fail_unless_recording_failure(*args: Any, **kwargs: Any) -> Dict[str, Any]:
            if kwargs.get("status") != "failed":
                raise RuntimeError("disk full")
            return original(*args, **kwargs)

        renamed = project_change(shared_project["id"], "update", name="Renamed")
        created_id = new_id()
        with patch.object(empty_db, "record_change", side_effect=fail_unless_recording_failure):
            response = sync(
                sync_service, CLIENT_A_ID,
                [renamed, project_change(created_id)],
                last_sync=shared_project["a_sync"],
            )

        assert [e["error_code"] for e in response["errors"]] == ["PROCESSING_ERROR"] * 2
        assert empty_db.get_project(shared_project["id"])["name"] == "Original"
        assert empty_db.get_project(created_id) is None

        retried = sync(sync_service, CLIENT_A_ID, [renamed], last_sync=shared_project["a_sync"])
        assert not retried["errors"]
        assert empty_db.get_project(shared_project["id"])["name"] == "Renamed"

    def test_parents_applied_before_children(self, empty_db: Database, sync_service: SyncService) -> None:
        project_id, task_id = new_id(), new_id()
        response = sync(sync_service, CLIENT_A_ID, [task_change(task_id, project_id), project_change(project_id)])

        assert response["statistics"]["applied"] == 2
        assert empty_db.get_task(task_id)["project_id"] == project_id

    def test_missing_dependency_is_retryable(self, empty_db: Database, sync_service: SyncService) -> None:
        response = sync(sync_service, CLIENT_A_ID, [task_change(new_id(), new_id())])

        assert sync_status_code(response) == 422
        error = response["errors"][0]
        assert error["error_code"] == "MISSING_DEPENDENCY"
        assert error["is_retryable"] is True
        assert empty_db.count_items_by_status(CLIENT_A_ID)["failed"] == 1

    def test_invalid_change_reported(self, sync_service: SyncService) -> None:
        bad = make_change("comment", new_id(), "create", {"x": 1}, utc_now())
        good = project_change(new_id())
        response = sync(sync_service, CLIENT_A_ID, [bad, good])

        assert sync_status_code(response) == 207
        assert response["errors"][0]["error_code"] == "VALIDATION_ERROR"
        assert response["errors"][0]["is_retryable"] is False
        assert response["statistics"]["applied"] == 1

    def test_invalid_payload_reported(self, sync_service: SyncService) -> None:
        project_id = new_id()
        response = sync(sync_service, CLIENT_A_ID, [project_change(project_id, name="")])
        assert response["errors"][0]["error_code"] == "VALIDATION_ERROR"

    def test_delete_of_unknown_entity_ignored(self, sync_service: SyncService) -> None:
        response = sync(sync_service, CLIENT_A_ID, [project_change(new_id(), "delete")])
        assert response["applied"][0]["item_id"] is None
        assert response["errors"] == []

    def test_delete_soft_deletes(self, empty_db: Database, sync_service: SyncService) -> None:
        project_id = new_id()
        first = sync(sync_service, CLIENT_A_ID, [project_change(project_id)])
        sync(
            sync_service, CLIENT_A_ID, [project_change(project_id, "delete")],
            last_sync=first["server_timestamp"],
        )
        assert empty_db.get_project(project_id) is None
        assert empty_db.get_entity("project", project_id)["deleted_at"] is not None

    def test_request_validation(self, sync_service: SyncService) -> None:
        with pytest.raises(ValidationError):
            sync_service.process_sync({"client_id": "nope"})
        with pytest.raises(ValidationError):
            sync_service.process_sync({"client_id": CLIENT_A_ID, "client_changes": "x"})
        with pytest.raises(ValidationError):
            sync_service.process_sync({"client_id": CLIENT_A_ID, "entity_timestamps": {"comment": None}})


class TestPull:
    """Test collecting server changes for a client."""

    def test_own_changes_not_returned(self, sync_service: SyncService) -> None:
        sync(sync_service, CLIENT_A_ID, [project_change(new_id())])
        assert sync(sync_service, CLIENT_A_ID)["server_changes"] == []

    def test_server_originated_changes_pulled(
        self, sync_service: SyncService, sample_project: Dict[str, Any]
    ) -> None:
        response = sync(sync_service, CLIENT_A_ID)
        types = sorted(c["entity_type"] for c in response["server_changes"])
        assert types == ["project", "project_member", "project_member"]

    def test_cursor_advances(self, sync_service: SyncService, sample_project: Dict[str, Any]) -> None:
        first = sync(sync_service, CLIENT_A_ID)
        second = sync(sync_service, CLIENT_A_ID, last_sync=first["server_timestamp"])
        assert second["server_changes"] == []

    def test_batches_with_has_more(self, project_service: ProjectService, sync_service: SyncService) -> None:
        sync_service.update_configuration({"batch_size": 3})
        for i in range(4):
            project_service.create_project({"name": f"P{i}"}, OWNER_ID)

        seen: List[str] = []
        response = sync(sync_service, CLIENT_A_ID)
        seen.extend(c["id"] for c in response["server_changes"])
        assert response["has_more_data"] is True
        assert response["next_token"] is not None
        while response["has_more_data"]:
            response = sync(
                sync_service, CLIENT_A_ID, entity_timestamps=response["entity_timestamps"]
            )
            seen.extend(c["id"] for c in response["server_changes"])

        assert len(seen) == 8
        assert len(set(seen)) == 8


class TestDelta:
    def test_paging(self, project_service: ProjectService, sync_service: SyncService) -> None:
        for i in range(5):
            project_service.create_project({"name": f"P{i}"}, OWNER_ID)

        ids: List[str] = []
        token = None
        while True:
            page = sync_service.get_delta_changes({
                "client_id": CLIENT_A_ID,
                "entity_type": "project",
                "page_size": 2,
                "continuation_token": token,
            })
            assert page["total_changes"] == 5
            ids.extend(c["entity_id"] for c in page["changes"])
            if not page["has_more_data"]:
                break
            token = page["continuation_token"]

        assert len(ids) == 5
        assert len(set(ids)) == 5

    def test_requested_entity_ids(self, project_service: ProjectService, sync_service: SyncService) -> None:
        wanted = project_service.create_project({"name": "Wanted"}, OWNER_ID)
        project_service.create_project({"name": "Other"}, OWNER_ID)

        page = sync_service.get_delta_changes({
            "client_id": CLIENT_A_ID,
            "entity_type": "project",
            "requested_entity_ids": [wanted["id"]],
        })
        assert [c["entity_id"] for c in page["changes"]] == [wanted["id"]]

    def test_page_size_bounds(self, sync_service: SyncService) -> None:
        with pytest.raises(ValidationError):
            sync_service.get_delta_changes(
                {"client_id": CLIENT_A_ID, "entity_type": "task", "page_size": 1001}
            )


class TestConflicts:
    """Test conflict detection and resolution between two clients."""

    def _diverge(self, sync_service: SyncService, shared: Dict[str, Any]) -> Dict[str, Any]:
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared["id"], "update", name="Name from B")],
            last_sync=shared["b_sync"],
        )
        return sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared["id"], "update", name="Name from A")],
            last_sync=shared["a_sync"],
        )

    def test_conflict_detected(self, sync_service: SyncService, shared_project: Dict[str, Any]) -> None:
        response = self._diverge(sync_service, shared_project)

        assert sync_status_code(response) == 207
        conflict = response["conflicts"][0]
        assert conflict["entity_id"] == shared_project["id"]
        assert conflict["client_data"]["name"] == "Name from A"
        assert conflict["server_data"]["name"] == "Name from B"
        assert conflict["base_data"]["name"] == "Original"
        assert conflict["recommended_strategy"] == "server_wins"
        assert "name" in conflict["reason"]
        # A still pulls B's change
        assert [c["entity_id"] for c in response["server_changes"]] == [shared_project["id"]]

    def test_agreeing_edit_applies(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["b_sync"],
        )
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["a_sync"],
        )
        assert response["conflicts"] == []
        assert response["statistics"]["applied"] == 1

    def test_conflict_fields_limit_detection(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        sync_service.update_configuration(
            {"entity_configurations": {"project": {"conflict_fields": ["name"]}}}
        )
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["b_sync"],
        )
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared_project["id"], "update", status="active")],
            last_sync=shared_project["a_sync"],
        )
        assert response["conflicts"] == []
        project = empty_db.get_project(shared_project["id"])
        assert project["status"] == "active"
        assert project["name"] == "Name from B"

    def test_resend_returns_open_conflict(
        self, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        response = self._diverge(sync_service, shared_project)
        change_id = response["conflicts"][0]["change_id"]
        conflict_id = response["conflicts"][0]["id"]

        resent = sync(sync_service, CLIENT_A_ID, [project_change(
            shared_project["id"], "update", name="Name from A"
        ) | {"change_id": change_id}])

        assert [c["id"] for c in resent["conflicts"]] == [conflict_id]
        assert sync_service.conflicts.get_unresolved_count() == 1

    def test_resolve_client_wins(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        conflict = self._diverge(sync_service, shared_project)["conflicts"][0]
        b_before = sync(sync_service, CLIENT_B_ID)["server_timestamp"]

        resolved = sync_service.resolve_conflict(conflict["id"], "client_wins", OWNER_ID)

        assert resolved["is_resolved"] is True
        assert resolved["resolved_by"] == OWNER_ID
        assert empty_db.get_project(shared_project["id"])["name"] == "Name from A"
        pulled = sync(sync_service, CLIENT_B_ID, last_sync=b_before)
        assert [c["data"]["name"] for c in pulled["server_changes"]] == ["Name from A"]

    def test_resolve_by_prefix_and_twice(
        self, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        conflict = self._diverge(sync_service, shared_project)["conflicts"][0]
        sync_service.resolve_conflict(conflict["id"][:28], "server_wins")
        with pytest.raises(ValidationError):
            sync_service.resolve_conflict(conflict["id"], "server_wins")

    def test_resolve_unknown(self, sync_service: SyncService) -> None:
        assert sync_service.resolve_conflict(new_id(), "server_wins") is None
        with pytest.raises(ValidationError):
            sync_service.resolve_conflict(new_id(), "flip_a_coin")

    def test_merge_changes(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["b_sync"],
        )
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared_project["id"], "update", name="Original", description="From A")],
            last_sync=shared_project["a_sync"],
        )
        conflict = response["conflicts"][0]

        sync_service.resolve_conflict(conflict["id"], "merge_changes")

        project = empty_db.get_project(shared_project["id"])
        assert project["name"] == "Name from B"
        assert project["description"] == "From A"

    def test_create_duplicate(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        conflict = self._diverge(sync_service, shared_project)["conflicts"][0]
        resolved = sync_service.resolve_conflict(conflict["id"], "create_duplicate")

        duplicate = empty_db.get_project(resolved["resolution_data"]["duplicate_id"])
        assert duplicate["name"] == "Name from A (copy)"
        assert empty_db.get_project(shared_project["id"])["name"] == "Name from B"

    def test_duplicate_project_gets_original_members(
        self,
        empty_db: Database,
        project_service: ProjectService,
        sync_service: SyncService,
        sample_project: Dict[str, Any],
    ) -> None:
        a_sync = sync(sync_service, CLIENT_A_ID)["server_timestamp"]
        project_service.update_project(sample_project["id"], {"name": "Renamed on server"}, OWNER_ID)
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(sample_project["id"], "update", name="Renamed on A")],
            last_sync=a_sync,
        )
        resolved = sync_service.resolve_conflict(response["conflicts"][0]["id"], "create_duplicate", OWNER_ID)
        duplicate_id = resolved["resolution_data"]["duplicate_id"]

        assert project_service.get_project(duplicate_id, OWNER_ID)["name"] == "Renamed on A (copy)"
        assert project_service.get_project(duplicate_id, MEMBER_ID) is not None
        assert duplicate_id in [p["id"] for p in project_service.list_projects(OWNER_ID)]
        roles = {m["user_id"]: m["role"] for m in empty_db.get_members(duplicate_id)}
        assert roles == {OWNER_ID: "owner", MEMBER_ID: "developer"}

        pulled = sync(sync_service, CLIENT_B_ID)["server_changes"]
        copied = [
            c for c in pulled
            if c["entity_type"] == "project_member" and c["data"]["project_id"] == duplicate_id
        ]
        assert len(copied) == 2

    def test_delete_conflict(self, sync_service: SyncService, shared_project: Dict[str, Any]) -> None:
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["b_sync"],
        )
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared_project["id"], "delete")],
            last_sync=shared_project["a_sync"],
        )
        conflict = response["conflicts"][0]
        assert conflict["client_operation"] == "delete"
        assert "deleted on the client" in conflict["reason"]

    def test_auto_resolve_on_sync(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        sync_service.update_configuration({
            "auto_resolve_conflicts": True,
            "entity_configurations": {"project": {"default_strategy": "client_wins"}},
        })
        response = self._diverge(sync_service, shared_project)

        assert response["conflicts"] == []
        assert response["applied"][0]["resolution"] == "client_wins"
        assert response["statistics"]["auto_resolved"] == 1
        assert empty_db.get_project(shared_project["id"])["name"] == "Name from A"

    def test_manual_entities_not_auto_resolved(
        self, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        sync_service.update_configuration({
            "entity_configurations": {"project": {"requires_manual_conflict_resolution": True}},
        })
        conflict = self._diverge(sync_service, shared_project)["conflicts"][0]
        assert conflict["recommended_strategy"] == "manual_resolution"
        assert sync_service.auto_resolve_conflicts(CLIENT_A_ID) == 0

        resolved = sync_service.resolve_conflict(
            conflict["id"], "manual_resolution", OWNER_ID, {"name": "Agreed name"}
        )
        assert resolved["resolution_data"]["data"]["name"] == "Agreed name"

    def test_auto_resolve_endpoint_logic(
        self, empty_db: Database, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        self._diverge(sync_service, shared_project)
        assert sync_service.auto_resolve_conflicts(CLIENT_A_ID) == 1
        assert empty_db.get_project(shared_project["id"])["name"] == "Name from B"
        assert sync_service.get_conflicts(CLIENT_A_ID) == []

    def test_clock_skew_adjusts_client_timestamp(
        self, sync_service: SyncService, shared_project: Dict[str, Any]
    ) -> None:
        ahead = timestamp_days_ahead(1 / 24)
        sync(
            sync_service, CLIENT_B_ID,
            [project_change(shared_project["id"], "update", name="Name from B")],
            last_sync=shared_project["b_sync"],
        )
        response = sync(
            sync_service, CLIENT_A_ID,
            [project_change(shared_project["id"], "update", timestamp=ahead, name="Name from A")],
            last_sync=shared_project["a_sync"],
            client_time=ahead,
        )
        conflict = response["conflicts"][0]
        assert conflict["client_timestamp"] < ahead


class TestConfiguration:
    def test_defaults(self, sync_service: SyncService) -> None:
        config = sync_service.get_configuration()
        assert config.batch_size == 100
        assert config.auto_resolve_conflicts is False

    def test_partial_update_keeps_other_entities(self, sync_service: SyncService) -> None:
        sync_service.update_configuration({"entity_configurations": {"task": {"priority": 1}}})
        config = sync_service.update_configuration(
            {"max_retry_attempts": 5, "entity_configurations": {"project": {"priority": 2}}}
        )
        assert config.max_retry_attempts == 5
        assert config.for_entity("task").priority == 1
        assert config.for_entity("project").priority == 2
        assert sync_service.get_configuration().max_retry_attempts == 5

    def test_invalid_update_not_saved(self, sync_service: SyncService) -> None:
        with pytest.raises(ValidationError):
            sync_service.update_configuration({"batch_size": 5000})
        assert sync_service.get_configuration().batch_size == 100

    def test_disabled_entity_rejected(self, sync_service: SyncService) -> None:
        sync_service.update_configuration({"entity_configurations": {"task": {"enabled": False}}})
        project_id = new_id()
        response = sync(sync_service, CLIENT_A_ID, [project_change(project_id), task_change(new_id(), project_id)])

        assert response["statistics"]["applied"] == 1
        assert response["errors"][0]["error_code"] == "ENTITY_SYNC_DISABLED"
        assert "task" not in response["entity_timestamps"]


class TestItems:
    """Test queued sync items and retries."""

    def _queue(self, sync_service: SyncService, change: Dict[str, Any]) -> Dict[str, Any]:
        return sync_service.create_sync_item(dict(change, client_id=CLIENT_A_ID, user_id=OWNER_ID))

    def test_pending_then_processed(self, empty_db: Database, sync_service: SyncService) -> None:
        project_id = new_id()
        item = self._queue(sync_service, project_change(project_id))
        assert item["status"] == "pending"
        assert len(sync_service.get_pending_items(CLIENT_A_ID)) == 1

        result = sync_service.process_pending_items(CLIENT_A_ID)

        assert result == {"processed": 1, "completed": 1, "failed": 0}
        assert empty_db.get_project(project_id) is not None
        assert empty_db.get_sync_item(item["id"])["status"] == "completed"

    def test_failure_and_retry_limit(self, empty_db: Database, sync_service: SyncService) -> None:
        item = self._queue(sync_service, task_change(new_id(), new_id()))
        sync_service.process_pending_items(CLIENT_A_ID)
        assert empty_db.get_sync_item(item["id"])["retry_count"] == 1

        for expected in (2, 3):
            result = sync_service.retry_failed_items(CLIENT_A_ID)
            assert result["requeued"] == 1
            assert empty_db.get_sync_item(item["id"])["retry_count"] == expected

        assert sync_service.retry_failed_items(CLIENT_A_ID)["requeued"] == 0

    def test_mark_completed_and_failed(self, empty_db: Database, sync_service: SyncService) -> None:
        item = self._queue(sync_service, project_change(new_id()))
        failed = sync_service.mark_item_failed(item["id"], "network down")
        assert failed["status"] == "failed"
        assert failed["error_message"] == "network down"
        assert sync_service.mark_item_completed(item["id"]) is True
        assert empty_db.get_sync_item(item["id"])["status"] == "completed"
        assert sync_service.mark_item_failed(new_id(), "x") is None

    def test_completion_not_skipped_by_concurrent_sync(
        self, empty_db: Database, sync_service: SyncService
    ) -> None:
        b_sync = sync(sync_service, CLIENT_B_ID)["server_timestamp"]
        item = self._queue(sync_service, project_change(new_id()))
        received: List[str] = []
        cursors: List[str] = []

        def sync_b() -> None:
            response = sync(sync_service, CLIENT_B_ID, last_sync=b_sync)
            received.extend(c["id"] for c in response["server_changes"])
            cursors.append(response["server_timestamp"])

        worker = threading.Thread(target=sync_b)
        original = empty_db.update_sync_item_fields

        def complete_while_b_syncs(item_id: str, fields: Dict[str, Any]) -> bool:
            worker.start()
            worker.join(timeout=0.2)
            return original(item_id, fields)

        with patch.object(empty_db, "update_sync_item_fields", side_effect=complete_while_b_syncs):
            assert sync_service.mark_item_completed(item["id"]) is True
        worker.join()

        later = sync(sync_service, CLIENT_B_ID, last_sync=cursors[0])
        received.extend(c["id"] for c in later["server_changes"])
        assert item["id"] in received

    def test_cleanup(self, sync_service: SyncService) -> None:
        sync(sync_service, CLIENT_A_ID, [project_change(new_id())])
        assert sync_service.cleanup_old_items(30)["sync_items"] == 0
        with pytest.raises(ValidationError):
            sync_service.cleanup_old_items(0)


class TestStatusAndClients:
    def test_status(self, sync_service: SyncService) -> None:
        assert sync_service.get_sync_status(CLIENT_A_ID) is None
        sync(sync_service, CLIENT_A_ID, [task_change(new_id(), new_id())])

        status = sync_service.get_sync_status(CLIENT_A_ID)
        assert status["failed_count"] == 1
        assert set(status["entity_last_sync"]) == {"project", "project_member", "task"}

    def test_health(self, sync_service: SyncService) -> None:
        assert sync_service.get_sync_health(CLIENT_A_ID)["is_healthy"] is True
        sync(sync_service, CLIENT_A_ID, [task_change(new_id(), new_id())])

        health = sync_service.get_sync_health(CLIENT_A_ID)
        assert health["is_healthy"] is False
        assert health["health_issues"] == ["1 failed sync items"]

    def test_register_and_deactivate(self, sync_service: SyncService) -> None:
        client = sync_service.register_client(
            {"client_id": CLIENT_A_ID, "device_name": "laptop", "platform": "linux"}
        )
        assert client["device_name"] == "laptop"
        again = sync_service.register_client({"client_id": CLIENT_A_ID, "app_version": "2.0"})
        assert again["device_name"] == "laptop"
        assert again["app_version"] == "2.0"

        assert [c["client_id"] for c in sync_service.get_active_clients()] == [CLIENT_A_ID]
        assert sync_service.deactivate_client(CLIENT_A_ID) is True
        assert sync_service.get_active_clients() == []
        assert sync_service.heartbeat(CLIENT_B_ID) is None

    def test_service_health(self, sync_service: SyncService) -> None:
        sync(sync_service, CLIENT_A_ID)
        health = sync_service.service_health()
        assert health["status"] == "healthy"
        assert health["active_clients"] == 1


class TestSubscriptions:
    def test_subscriber_notified_of_other_clients_changes(self, sync_service: SyncService) -> None:
        assert sync_service.subscribe(CLIENT_B_ID, "project")["created"] is True
        assert sync_service.subscribe(CLIENT_B_ID, "project")["created"] is False
        sync_service.subscribe(CLIENT_A_ID, "project")

        project_id = new_id()
        sync(sync_service, CLIENT_A_ID, [project_change(project_id)])

        notifications = sync_service.get_notifications(CLIENT_B_ID)
        assert len(notifications) == 1
        assert notifications[0]["entity_id"] == project_id
        assert notifications[0]["details"]["originating_client"] == CLIENT_A_ID
        assert sync_service.get_notifications(CLIENT_A_ID) == []

    def test_unsubscribe(self, sync_service: SyncService) -> None:
        entity_id = new_id()
        sync_service.subscribe(CLIENT_B_ID, "task", entity_id)
        assert sync_service.get_subscriptions(CLIENT_B_ID)[0]["entity_id"] == entity_id
        assert sync_service.unsubscribe(CLIENT_B_ID, "task", entity_id) is True
        assert sync_service.unsubscribe(CLIENT_B_ID, "task", entity_id) is False
