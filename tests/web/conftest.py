"""Pytest fixtures for web API tests.

Provides a Flask test client backed by a fresh server database.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from taskhub.web import create_app

from tests.helpers import MEMBER_ID, auth_headers


@pytest.fixture
def web_app(test_config_dir: Path) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config_dir: Temporary configuration directory

    Yields:
        Flask application instance
    """
    app = create_app(config_dir=test_config_dir)
    app.config["TESTING"] = True
    yield app
    app.config["DATABASE"].close()


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()


@pytest.fixture
def api_project(client: FlaskClient) -> Dict[str, Any]:
    """Project created through the API by OWNER_ID, with MEMBER_ID as developer."""
    response = client.post(
        "/api/projects",
        json={"name": "Mobile app", "member_ids": [MEMBER_ID]},
        headers=auth_headers(),
    )
    assert response.status_code == 201
    return json.loads(response.data)


@pytest.fixture
def api_task(client: FlaskClient, api_project: Dict[str, Any]) -> Dict[str, Any]:
    response = client.post(
        "/api/tasks",
        json={"project_id": api_project["id"], "title": "Login screen"},
        headers=auth_headers(),
    )
    assert response.status_code == 201
    return json.loads(response.data)
