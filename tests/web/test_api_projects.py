"""Web API tests for project endpoints.

Tests CRUD, membership management, permissions and statistics.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import pytest
from flask.testing import FlaskClient

from tests.helpers import MEMBER_ID, OUTSIDER_ID, auth_headers, new_id


@pytest.mark.web
class TestCreateProject:
    """Test POST /api/projects."""

    def test_create_project(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/projects",
            json={"name": "Data warehouse", "description": "ETL jobs"},
            headers=auth_headers(),
        )

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["name"] == "Data warehouse"
        assert data["status"] == "planning"
        assert data["member_count"] == 1
        assert data["members"][0]["role"] == "owner"
        assert len(data["id"]) == 32

    def test_create_requires_name(self, client: FlaskClient) -> None:
        response = client.post("/api/projects", json={"name": ""}, headers=auth_headers())

        assert response.status_code == 400
        assert "name" in json.loads(response.data)["error"]

    def test_create_rejects_bad_dates(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/projects",
            json={"name": "X", "start_date": "2024-06-01", "end_date": "2024-05-01"},
            headers=auth_headers(),
        )
        assert response.status_code == 400


@pytest.mark.web
class TestReadProjects:
    """Test project listing and retrieval."""

    def test_list_only_member_projects(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get("/api/projects", headers=auth_headers(MEMBER_ID))
        assert [p["id"] for p in json.loads(response.data)] == [api_project["id"]]

        response = client.get("/api/projects", headers=auth_headers(OUTSIDER_ID))
        assert json.loads(response.data) == []

    def test_list_pagination(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get("/api/projects?page=2&page_size=1", headers=auth_headers())
        assert response.status_code == 200
        assert json.loads(response.data) == []

        response = client.get("/api/projects?page=0", headers=auth_headers())
        assert response.status_code == 400

    def test_get_project(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get(f"/api/projects/{api_project['id']}", headers=auth_headers(MEMBER_ID))

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["member_count"] == 2
        assert {m["user_id"] for m in data["members"]} >= {MEMBER_ID}

    def test_get_project_outsider_forbidden(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get(f"/api/projects/{api_project['id']}", headers=auth_headers(OUTSIDER_ID))
        assert response.status_code == 403

    def test_get_unknown_project(self, client: FlaskClient) -> None:
        response = client.get(f"/api/projects/{new_id()}", headers=auth_headers())
        assert response.status_code == 404

    def test_get_invalid_id(self, client: FlaskClient) -> None:
        response = client.get("/api/projects/not-a-uuid", headers=auth_headers())
        assert response.status_code == 400


@pytest.mark.web
class TestUpdateDeleteProject:
    """Test PUT and DELETE /api/projects/<id>."""

    def test_update(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.put(
            f"/api/projects/{api_project['id']}",
            json={"status": "active"},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "active"
        assert data["name"] == "Mobile app"

    def test_developer_cannot_update(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.put(
            f"/api/projects/{api_project['id']}",
            json={"name": "Hijacked"},
            headers=auth_headers(MEMBER_ID),
        )
        assert response.status_code == 403

    def test_update_without_fields(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.put(f"/api/projects/{api_project['id']}", json={}, headers=auth_headers())
        assert response.status_code == 400

    def test_update_unknown(self, client: FlaskClient) -> None:
        response = client.put(f"/api/projects/{new_id()}", json={"name": "X"}, headers=auth_headers())
        assert response.status_code == 404

    def test_delete(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.delete(f"/api/projects/{api_project['id']}", headers=auth_headers())
        assert response.status_code == 200

        response = client.get(f"/api/projects/{api_project['id']}", headers=auth_headers())
        assert response.status_code == 404

    def test_only_owner_deletes(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.delete(f"/api/projects/{api_project['id']}", headers=auth_headers(MEMBER_ID))
        assert response.status_code == 403


@pytest.mark.web
class TestMembers:
    """Test membership endpoints."""

    def test_list_members(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get(f"/api/projects/{api_project['id']}/members", headers=auth_headers())

        assert response.status_code == 200
        assert len(json.loads(response.data)) == 2

    def test_add_member(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.post(
            f"/api/projects/{api_project['id']}/members",
            json={"user_id": OUTSIDER_ID, "role": "viewer"},
            headers=auth_headers(),
        )

        assert response.status_code == 201
        data = json.loads(response.data)
        assert data["role"] == "viewer"
        assert data["is_active"] is True

        response = client.get(f"/api/projects/{api_project['id']}", headers=auth_headers(OUTSIDER_ID))
        assert response.status_code == 200

    def test_add_existing_member(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.post(
            f"/api/projects/{api_project['id']}/members",
            json={"user_id": MEMBER_ID},
            headers=auth_headers(),
        )
        assert response.status_code == 400

    def test_developer_cannot_add(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.post(
            f"/api/projects/{api_project['id']}/members",
            json={"user_id": OUTSIDER_ID},
            headers=auth_headers(MEMBER_ID),
        )
        assert response.status_code == 403

    def _member_id(self, api_project: Dict[str, Any], user_id: str) -> str:
        return next(m["id"] for m in api_project["members"] if m["user_id"] == user_id)

    def test_update_member_role(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        member_id = self._member_id(api_project, MEMBER_ID)
        response = client.put(
            f"/api/projects/{api_project['id']}/members/{member_id}",
            json={"role": "admin"},
            headers=auth_headers(),
        )

        assert response.status_code == 200
        assert json.loads(response.data)["role"] == "admin"

    def test_remove_member(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        member_id = self._member_id(api_project, MEMBER_ID)
        response = client.delete(
            f"/api/projects/{api_project['id']}/members/{member_id}", headers=auth_headers()
        )
        assert response.status_code == 200

        response = client.get(f"/api/projects/{api_project['id']}", headers=auth_headers(MEMBER_ID))
        assert response.status_code == 403

    def test_cannot_remove_owner(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        owner_member = next(m["id"] for m in api_project["members"] if m["role"] == "owner")
        response = client.delete(
            f"/api/projects/{api_project['id']}/members/{owner_member}", headers=auth_headers()
        )
        assert response.status_code == 400

    def test_remove_unknown_member(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.delete(
            f"/api/projects/{api_project['id']}/members/{new_id()}", headers=auth_headers()
        )
        assert response.status_code == 404


@pytest.mark.web
class TestProjectStats:
    def test_stats(self, client: FlaskClient, api_project: Dict[str, Any]) -> None:
        response = client.get("/api/projects/stats", headers=auth_headers())

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["total_projects"] == 1
        assert data["active_projects"] == 0
