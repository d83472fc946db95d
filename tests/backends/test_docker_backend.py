# tests/backends/test_docker_backend.py
"""
Unit tests for DockerBackend.

The docker module is imported lazily inside connect(), so the SDK is
replaced through sys.modules rather than patched on the backend module.
Exception classes are real classes so ``except`` clauses match.
"""

import sys
from unittest.mock import MagicMock

import pytest

from llmbox.backends.docker_backend import DockerBackend, _split_image
from llmbox.exceptions import ContainerNotFoundError, ImagePullError, SandboxConnectionError
from llmbox.models import VolumeBinding

# =============================================================================
# FIXTURES
# =============================================================================


class FakeDockerException(Exception):
    pass


class FakeAPIError(FakeDockerException):
    def __init__(self, message, status_code=500):
        super().__init__(message)
        self.status_code = status_code


class FakeNotFound(FakeAPIError):
    def __init__(self, message):
        super().__init__(message, status_code=404)


class FakeImageNotFound(FakeNotFound):
    pass


@pytest.fixture
def mock_docker_module():
    """
    Install a mock docker module in sys.modules.

    Works regardless of where/when the import happens (lazy or eager).
    """
    mock_docker = MagicMock()
    mock_client = MagicMock()

    mock_docker.from_env.return_value = mock_client
    mock_docker.DockerClient.return_value = mock_client
    mock_docker.errors.DockerException = FakeDockerException
    mock_docker.errors.APIError = FakeAPIError
    mock_docker.errors.NotFound = FakeNotFound
    mock_docker.errors.ImageNotFound = FakeImageNotFound

    mock_client.version.return_value = {"Version": "24.0.0"}
    mock_client.ping.return_value = True

    original_docker = sys.modules.get("docker")
    sys.modules["docker"] = mock_docker

    yield mock_docker, mock_client

    if original_docker is not None:
        sys.modules["docker"] = original_docker
    else:
        sys.modules.pop("docker", None)


@pytest.fixture
def mock_client(mock_docker_module):
    return mock_docker_module[1]


@pytest.fixture
def backend(mock_client):
    """Connected DockerBackend on the mocked SDK."""
    backend = DockerBackend(labels={"llmbox.managed": "true"})
    assert backend.connect() is True
    return backend


def _container(container_id="c0ffee0123456789", status="created"):
    container = MagicMock()
    container.id = container_id
    container.status = status
    return container


# =============================================================================
# CONNECTION TESTS
# =============================================================================


class TestConnection:
    """Tests for connecting to the daemon."""

    def test_local_daemon(self, mock_docker_module):
        mock_docker, mock_client = mock_docker_module
        backend = DockerBackend()
        assert backend.connect() is True
        mock_docker.from_env.assert_called_once()
        mock_client.ping.assert_called_once()
        assert backend.is_connected()

    def test_remote_daemon(self, mock_docker_module):
        """A remote host is used as the client URL and the published address."""
        mock_docker, _ = mock_docker_module
        backend = DockerBackend(docker_host="tcp://10.0.0.5:2375")
        backend.connect()
        mock_docker.DockerClient.assert_called_once_with(base_url="tcp://10.0.0.5:2375")
        assert backend.get_info()["host_ip"] == "10.0.0.5"

    def test_explicit_host_ip(self):
        backend = DockerBackend(docker_host="tcp://10.0.0.5:2375", host_ip="sandbox.local")
        assert backend.get_info()["host_ip"] == "sandbox.local"

    def test_ping_failure(self, mock_client):
        mock_client.ping.side_effect = FakeDockerException("connection refused")
        backend = DockerBackend()
        with pytest.raises(SandboxConnectionError) as exc_info:
            backend.connect()
        assert exc_info.value.connection_type == "docker"
        assert exc_info.value.host == "local"
        assert not backend.is_connected()

    def test_operations_require_connection(self):
        with pytest.raises(SandboxConnectionError):
            DockerBackend().get_container_status("abc")

    def test_close(self, backend, mock_client):
        backend.close()
        mock_client.close.assert_called_once()
        assert not backend.is_connected()


# =============================================================================
# CONTAINER LIFECYCLE TESTS
# =============================================================================


class TestCreateContainer:
    """Tests for container creation."""

    def test_create_maps_ports_and_volumes(self, backend, mock_client):
        mock_client.containers.create.return_value = _container()

        result = backend.create_container(
            "sandbox-abc",
            "python:3.11-slim",
            ["80/tcp", "5900/tcp"],
            [VolumeBinding("/tmp/s1", "/workspace", "rw"), VolumeBinding("/data", "/data", "ro")],
            {"SECRET_TOKEN": "tok"},
            {"mem_limit": "1g", "cpu_limit": 1.5, "shm_size": "2g"},
            host_ports=[50001, 50002],
        )

        kwargs = mock_client.containers.create.call_args.kwargs
        assert kwargs["name"] == "sandbox-abc"
        assert kwargs["image"] == "python:3.11-slim"
        assert kwargs["detach"] is True
        assert kwargs["ports"] == {"80/tcp": 50001, "5900/tcp": 50002}
        assert kwargs["volumes"] == {
            "/tmp/s1": {"bind": "/workspace", "mode": "rw"},
            "/data": {"bind": "/data", "mode": "ro"},
        }
        assert kwargs["environment"] == {"SECRET_TOKEN": "tok"}
        assert kwargs["labels"] == {"llmbox.managed": "true"}
        assert kwargs["mem_limit"] == "1g"
        assert kwargs["nano_cpus"] == 1_500_000_000
        assert kwargs["shm_size"] == "2g"

        assert result.container_id == "c0ffee0123456789"
        assert result.ports == [50001, 50002]
        assert result.ip == "localhost"

    def test_create_without_ports(self, backend, mock_client):
        mock_client.containers.create.return_value = _container()
        result = backend.create_container("sandbox-abc", "img", [], [], {}, {})
        assert "ports" not in mock_client.containers.create.call_args.kwargs
        assert result.ports == []

    def test_port_count_mismatch(self, backend):
        with pytest.raises(ValueError):
            backend.create_container("n", "img", ["80/tcp"], [], {}, {}, host_ports=[1, 2])

    def test_gpu_request(self, backend, mock_client, mock_docker_module):
        mock_docker, _ = mock_docker_module
        mock_client.containers.create.return_value = _container()
        backend.create_container("n", "img", [], [], {}, {"enable_gpu": True})
        mock_docker.types.DeviceRequest.assert_called_once_with(count=-1, capabilities=[["gpu"]])
        assert "device_requests" in mock_client.containers.create.call_args.kwargs

    def test_unknown_runtime_option_is_ignored(self, backend, mock_client, caplog):
        mock_client.containers.create.return_value = _container()
        backend.create_container("n", "img", [], [], {}, {"privileged": True})
        assert "privileged" not in mock_client.containers.create.call_args.kwargs
        assert "privileged" in caplog.text

    def test_name_conflict_retries_with_suffix(self, backend, mock_client):
        """A 409 name conflict is retried under a suffixed name."""
        mock_client.containers.create.side_effect = [
            FakeAPIError("Conflict", status_code=409),
            _container(),
        ]
        result = backend.create_container("sandbox-abc", "img", [], [], {}, {})
        names = [c.kwargs["name"] for c in mock_client.containers.create.call_args_list]
        assert names[0] == "sandbox-abc"
        assert names[1].startswith("sandbox-abc-")
        assert result.container_id == "c0ffee0123456789"

    def test_other_api_errors_propagate(self, backend, mock_client):
        mock_client.containers.create.side_effect = FakeAPIError("bad request", status_code=400)
        with pytest.raises(FakeAPIError):
            backend.create_container("n", "img", [], [], {}, {})


class TestContainerOperations:
    """Tests for start/stop/remove/status."""

    def test_start(self, backend, mock_client):
        container = _container()
        mock_client.containers.get.return_value = container
        backend.start_container(container.id)
        container.start.assert_called_once()

    def test_stop_running(self, backend, mock_client):
        container = _container(status="running")
        mock_client.containers.get.return_value = container
        backend.stop_container(container.id)
        container.stop.assert_called_once_with(timeout=10)

    def test_stop_already_stopped(self, backend, mock_client):
        container = _container(status="exited")
        mock_client.containers.get.return_value = container
        backend.stop_container(container.id)
        container.stop.assert_not_called()

    def test_missing_container(self, backend, mock_client):
        mock_client.containers.get.side_effect = FakeNotFound("No such container")
        with pytest.raises(ContainerNotFoundError) as exc_info:
            backend.get_container_status("abc")
        assert exc_info.value.container_id == "abc"
        assert backend.inspect_container("abc") is False

    def test_remove(self, backend, mock_client):
        container = _container()
        mock_client.containers.get.return_value = container
        backend.remove_container(container.id)
        container.remove.assert_called_once_with(force=True)

    def test_remove_missing_is_noop(self, backend, mock_client):
        mock_client.containers.get.side_effect = FakeNotFound("No such container")
        backend.remove_container("abc")

    def test_stop_and_remove_missing(self, backend, mock_client):
        """A container that vanished counts as removed."""
        mock_client.containers.get.side_effect = FakeNotFound("No such container")
        backend.stop_and_remove_container("abc")

    def test_status(self, backend, mock_client):
        mock_client.containers.get.return_value = _container(status="running")
        assert backend.get_container_status("abc") == "running"


# =============================================================================
# IMAGE TESTS
# =============================================================================


class TestImages:
    """Tests for image lookup and pulling."""

    def test_image_exists(self, backend, mock_client):
        assert backend.image_exists("python:3.11-slim") is True
        mock_client.images.get.side_effect = FakeImageNotFound("missing")
        assert backend.image_exists("python:3.11-slim") is False

    def test_pull_splits_tag(self, backend, mock_client):
        assert backend.pull_image("registry:5000/team/img:1.2") is True
        mock_client.images.pull.assert_called_once_with("registry:5000/team/img", tag="1.2")

    def test_pull_failure(self, backend, mock_client):
        mock_client.images.pull.side_effect = FakeDockerException("denied")
        assert backend.pull_image("img:1") is False

    def test_ensure_image_pulls_missing(self, backend, mock_client):
        mock_client.images.get.side_effect = FakeImageNotFound("missing")
        backend.ensure_image_available("img:1")
        mock_client.images.pull.assert_called_once_with("img", tag="1")

    def test_ensure_image_raises_on_failed_pull(self, backend, mock_client):
        mock_client.images.get.side_effect = FakeImageNotFound("missing")
        mock_client.images.pull.side_effect = FakeDockerException("denied")
        with pytest.raises(ImagePullError) as exc_info:
            backend.ensure_image_available("img:1")
        assert exc_info.value.image == "img:1"

    @pytest.mark.parametrize(
        "image,expected",
        [
            ("python:3.11", ("python", "3.11")),
            ("python", ("python", "latest")),
            ("localhost:5000/img", ("localhost:5000/img", "latest")),
            ("localhost:5000/img:2", ("localhost:5000/img", "2")),
        ],
    )
    def test_split_image(self, image, expected):
        assert _split_image(image) == expected
