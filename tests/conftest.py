"""Pytest fixtures for TaskHub tests.

This module provides fixtures for test configuration, the server database
and its services, and the client-side local store.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Generator

import pytest

from taskhub.core.config import Config
from taskhub.core.database import Database
from taskhub.core.local_store import LocalStore
from taskhub.core.projects import ProjectService
from taskhub.core.sync import SyncService
from taskhub.core.tasks import TaskService

from tests.helpers import CLIENT_A_ID, MEMBER_ID, OWNER_ID


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "taskhub_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration."""
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db_path(test_config_dir: Path) -> Path:
    """Get path for the test server database."""
    return test_config_dir / "server.db"


@pytest.fixture
def empty_db(test_db_path: Path) -> Generator[Database, None, None]:
    """Create empty server database.

    Yields:
        Empty Database instance.
    """
    db = Database(test_db_path)
    yield db
    db.close()


@pytest.fixture
def project_service(empty_db: Database) -> ProjectService:
    return ProjectService(empty_db)


@pytest.fixture
def task_service(empty_db: Database) -> TaskService:
    return TaskService(empty_db)


@pytest.fixture
def sync_service(empty_db: Database) -> SyncService:
    return SyncService(empty_db)


@pytest.fixture
def sample_project(project_service: ProjectService) -> Dict[str, Any]:
    """Create a project owned by OWNER_ID with MEMBER_ID as developer."""
    return project_service.create_project(
        {"name": "Website relaunch", "description": "New site", "member_ids": [MEMBER_ID]},
        OWNER_ID,
    )


@pytest.fixture
def sample_task(task_service: TaskService, sample_project: Dict[str, Any]) -> Dict[str, Any]:
    return task_service.create_task(
        {"project_id": sample_project["id"], "title": "Draft landing page"},
        OWNER_ID,
    )


@pytest.fixture
def local_store(test_config_dir: Path) -> Generator[LocalStore, None, None]:
    """Create a client-side local store for CLIENT_A_ID / OWNER_ID."""
    store = LocalStore(test_config_dir / "local.db", CLIENT_A_ID, OWNER_ID)
    yield store
    store.close()
