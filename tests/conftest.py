# tests/conftest.py
"""
Pytest fixtures and configuration for llmbox tests.

This module provides fixtures for:
    - An in-memory, thread-safe container backend
    - Small manager configurations
    - Started managers wired to the in-memory backend
    - fakeredis clients sharing one fake server
    - Docker availability detection
"""

import threading
import time
import uuid
from typing import Any

import fakeredis
import pytest

from llmbox.backends.base import ContainerBackend
from llmbox.config import CleanupSettings, LeaseSettings, ManagerConfig
from llmbox.exceptions import ContainerNotFoundError
from llmbox.manager import SandboxManager
from llmbox.models import ContainerCreateResult, VolumeBinding

# ==============================================================================
# Docker Availability
# ==============================================================================


def is_docker_available() -> bool:
    """Check if Docker is available for testing."""
    try:
        import docker

        client = docker.from_env()
        client.ping()
        return True
    except Exception:
        return False


requires_docker = pytest.mark.skipif(not is_docker_available(), reason="Docker not available")


# ==============================================================================
# Mock Backend
# ==============================================================================


class MockBackend(ContainerBackend):
    """
    In-memory backend for testing.

    Containers are dictionaries; every call is recorded. Failures can be
    injected through the ``fail_*`` attributes.
    """

    backend_type = "mock"
    uses_host_ports = True
    supports_volumes = True

    def __init__(self, create_delay: float = 0.0):
        self.create_delay = create_delay
        self.containers: dict[str, dict[str, Any]] = {}
        self.local_images: set = set()
        self.all_images_present = True
        self.pull_succeeds = True
        self.connect_result = True
        self.connect_error: Exception | None = None
        self.fail_create: Exception | None = None
        self.fail_start: Exception | None = None
        self.fail_remove: Exception | None = None
        self.create_calls = 0
        self.pull_calls: list[str] = []
        self.removed: list[str] = []
        self.connected = False
        self.closed = False
        self._lock = threading.Lock()

    def connect(self) -> bool:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = self.connect_result
        return self.connect_result

    def is_connected(self) -> bool:
        return self.connected

    def create_container(
        self,
        name: str,
        image: str,
        ports: list[str],
        volume_bindings: list[VolumeBinding],
        environment: dict[str, str],
        runtime_config: dict[str, Any],
        host_ports: list[int] | None = None,
    ) -> ContainerCreateResult:
        if self.create_delay:
            time.sleep(self.create_delay)
        with self._lock:
            self.create_calls += 1
            if self.fail_create is not None:
                raise self.fail_create
            container_id = f"mock{uuid.uuid4().hex}"
            self.containers[container_id] = {
                "name": name,
                "image": image,
                "ports": list(ports),
                "host_ports": list(host_ports or []),
                "volumes": list(volume_bindings),
                "environment": dict(environment),
                "runtime_config": dict(runtime_config),
                "status": "created",
            }
        return ContainerCreateResult(
            container_id=container_id, ports=list(host_ports or []), ip="127.0.0.1"
        )

    def _get(self, container_id: str) -> dict[str, Any]:
        with self._lock:
            container = self.containers.get(container_id)
        if container is None:
            raise ContainerNotFoundError("No such container", container_id=container_id)
        return container

    def start_container(self, container_id: str) -> None:
        if self.fail_start is not None:
            raise self.fail_start
        self._get(container_id)["status"] = "running"

    def stop_container(self, container_id: str) -> None:
        self._get(container_id)["status"] = "exited"

    def remove_container(self, container_id: str) -> None:
        if self.fail_remove is not None:
            raise self.fail_remove
        with self._lock:
            self.containers.pop(container_id, None)
            self.removed.append(container_id)

    def get_container_status(self, container_id: str) -> str:
        return self._get(container_id)["status"]

    def image_exists(self, image: str) -> bool:
        return self.all_images_present or image in self.local_images

    def pull_image(self, image: str) -> bool:
        self.pull_calls.append(image)
        if self.pull_succeeds:
            self.local_images.add(image)
        return self.pull_succeeds

    def close(self) -> None:
        self.closed = True

    # Test helpers

    def running(self) -> list[str]:
        with self._lock:
            return [cid for cid, c in self.containers.items() if c["status"] == "running"]

    def kill(self, container_id: str) -> None:
        """Simulate a container disappearing behind the manager's back."""
        with self._lock:
            self.containers.pop(container_id, None)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def mock_backend():
    """Provide a fresh in-memory backend."""
    return MockBackend()


@pytest.fixture
def manager_config():
    """Manager config with a ten-port range and fast lease polling."""
    return ManagerConfig(
        backend="docker",
        port_range_start=50000,
        port_range_end=50010,
        lease=LeaseSettings(ttl_seconds=30.0, retry_interval=0.005, retry_max_interval=0.05),
        cleanup=CleanupSettings(on_shutdown=True),
    )


@pytest.fixture
def manager(manager_config, mock_backend):
    """Provide a started manager on the in-memory backend."""
    mgr = SandboxManager(manager_config, backend=mock_backend)
    mgr.start()
    yield mgr
    mgr.close()


@pytest.fixture
def fake_redis_server():
    """One fake Redis server; clients built on it see the same data."""
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(fake_redis_server):
    """Provide a fakeredis client with decoded responses."""
    client = fakeredis.FakeRedis(server=fake_redis_server, decode_responses=True)
    client.flushall()
    yield client
    client.close()


@pytest.fixture
def second_redis_client(fake_redis_server):
    """A second client on the same fake server, standing in for another process."""
    client = fakeredis.FakeRedis(server=fake_redis_server, decode_responses=True)
    yield client
    client.close()
