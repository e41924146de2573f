"""Pytest fixtures for sync integration tests.

This module provides fixtures for:
- Spawning a real TaskHub server process
- Creating client devices, each with its own config, local store and
  sync client
"""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generator, IO, Optional, Tuple

import pytest
import requests

from taskhub.core.config import Config
from taskhub.core.local_store import LocalStore
from taskhub.core.sync_client import SyncClient

from tests.helpers import CLIENT_A_ID, CLIENT_B_ID, MEMBER_ID, OWNER_ID

PROJECT_ROOT = Path(__file__).parent.parent.parent


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


@dataclass
class SyncServer:
    """A TaskHub web/sync server running in a subprocess."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None
    log_file: Optional[IO[Any]] = field(default=None, repr=False)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def is_running(self) -> bool:
        """Check if the sync server is responding."""
        try:
            resp = requests.get(f"{self.url}/api/sync/health", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def start(self, timeout: float = 10.0) -> None:
        env = os.environ.copy()
        env["PYTHONPATH"] = str(PROJECT_ROOT)
        cmd = [
            sys.executable,
            "-m", "taskhub.main",
            "-d", str(self.config_dir),
            "web",
            "--host", "127.0.0.1",
            "--port", str(self.port),
        ]
        # Request logs go to a file so a full pipe never blocks the server
        self.log_file = open(self.config_dir / "server.log", "a")
        self.process = subprocess.Popen(
            cmd,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=self.log_file,
            cwd=str(PROJECT_ROOT),
        )

        start = time.time()
        while time.time() - start < timeout:
            if self.is_running():
                return
            time.sleep(0.1)
        self.stop()
        pytest.fail(f"Failed to start sync server on port {self.port}")

    def stop(self) -> None:
        """Stop the server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            self.process = None
        if self.log_file:
            self.log_file.close()
            self.log_file = None

    def put_configuration(self, **values: Any) -> None:
        resp = requests.put(f"{self.url}/api/sync/configuration", json=values, timeout=5)
        resp.raise_for_status()


@dataclass
class SyncDevice:
    """A client device: config, local store and sync client."""

    name: str
    config: Config
    store: LocalStore
    client: SyncClient

    def close(self) -> None:
        self.client.stop_background_sync()
        self.client.session.close()
        self.store.close()


def create_sync_device(
    name: str, client_id: str, user_id: str, base_dir: Path, server_url: str
) -> SyncDevice:
    """Create a device whose sync client points at ``server_url``.

    Args:
        name: Device name, also used as its config directory name
        client_id: Fixed sync client ID
        user_id: Local user of the device
        base_dir: Base directory for device files
        server_url: Server the device syncs with

    Returns:
        Configured SyncDevice instance
    """
    config_dir = base_dir / name
    config_dir.mkdir(parents=True, exist_ok=True)
    with open(config_dir / "config.json", "w") as f:
        json.dump({
            "client_id": client_id,
            "user_id": user_id,
            "device_name": name,
            "sync": {"server_url": server_url, "request_timeout": 5},
        }, f, indent=2)

    config = Config(config_dir=config_dir)
    store = LocalStore(config.get("database_file"), client_id, user_id)
    return SyncDevice(name=name, config=config, store=store, client=SyncClient(store, config))


@pytest.fixture
def sync_server(tmp_path: Path) -> Generator[SyncServer, None, None]:
    """A server that is configured but not started."""
    config_dir = tmp_path / "server"
    config_dir.mkdir()
    server = SyncServer(config_dir=config_dir, port=find_free_port())
    yield server
    server.stop()


@pytest.fixture
def running_server(sync_server: SyncServer) -> SyncServer:
    sync_server.start()
    return sync_server


@pytest.fixture
def device_a(tmp_path: Path, sync_server: SyncServer) -> Generator[SyncDevice, None, None]:
    device = create_sync_device("laptop", CLIENT_A_ID, OWNER_ID, tmp_path, sync_server.url)
    yield device
    device.close()


@pytest.fixture
def device_b(tmp_path: Path, sync_server: SyncServer) -> Generator[SyncDevice, None, None]:
    device = create_sync_device("phone", CLIENT_B_ID, MEMBER_ID, tmp_path, sync_server.url)
    yield device
    device.close()


@pytest.fixture
def two_devices(
    running_server: SyncServer, device_a: SyncDevice, device_b: SyncDevice
) -> Tuple[SyncDevice, SyncDevice]:
    """Two devices syncing with one running server."""
    return device_a, device_b
