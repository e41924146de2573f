"""Web API tests for general functionality.

Tests health check, error handling, user identification and CORS.
"""

from __future__ import annotations

import json

import pytest
from flask.testing import FlaskClient

from tests.helpers import auth_headers


@pytest.mark.web
class TestHealthCheck:
    """Test health check endpoint."""

    def test_health_check(self, client: FlaskClient) -> None:
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.content_type == "application/json"
        data = json.loads(response.data)
        assert data["status"] == "ok"


@pytest.mark.web
class TestErrorHandling:
    """Test API error handling."""

    def test_nonexistent_endpoint_returns_404(self, client: FlaskClient) -> None:
        response = client.get("/api/nonexistent")

        assert response.status_code == 404
        data = json.loads(response.data)
        assert "error" in data

    def test_wrong_method_returns_405(self, client: FlaskClient) -> None:
        response = client.patch("/api/projects", headers=auth_headers())

        assert response.status_code == 405
        assert "error" in json.loads(response.data)

    def test_missing_body(self, client: FlaskClient) -> None:
        response = client.post("/api/projects", headers=auth_headers())

        assert response.status_code == 400
        assert "body" in json.loads(response.data)["error"]

    def test_malformed_json(self, client: FlaskClient) -> None:
        response = client.post(
            "/api/projects",
            data="{not json",
            content_type="application/json",
            headers=auth_headers(),
        )
        assert response.status_code == 400


@pytest.mark.web
class TestUserHeader:
    """Test identification of the acting user."""

    def test_missing_header(self, client: FlaskClient) -> None:
        response = client.get("/api/projects")

        assert response.status_code == 400
        assert "X-User-ID" in json.loads(response.data)["error"]

    def test_invalid_header(self, client: FlaskClient) -> None:
        response = client.get("/api/projects", headers={"X-User-ID": "alice"})
        assert response.status_code == 400


@pytest.mark.web
class TestCORS:
    """Test CORS headers."""

    def test_cors_headers_present(self, client: FlaskClient) -> None:
        response = client.get("/api/health", headers={"Origin": "http://localhost:3000"})

        assert "Access-Control-Allow-Origin" in response.headers

    def test_options_request_supported(self, client: FlaskClient) -> None:
        response = client.options(
            "/api/projects",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code in [200, 204]
