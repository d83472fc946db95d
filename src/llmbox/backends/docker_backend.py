# src/llmbox/backends/docker_backend.py
"""
Docker container backend using the docker-py SDK.

Containers publish their ports on host ports reserved by the manager, so
this backend declares ``uses_host_ports``. Host directories are bind
mounted as given in the volume bindings.

Supported runtime_config keys:
    mem_limit: Memory limit ("1g", "512m", ...)
    nano_cpus: CPU quota in units of 1e-9 CPUs
    cpu_limit: CPU quota in CPUs (converted to nano_cpus)
    shm_size: Size of /dev/shm
    enable_gpu: Request all GPUs through the nvidia device driver
    network: Network to attach the container to

Usage:
    >>> backend = DockerBackend()
    >>> backend.connect()
    >>> result = backend.create_container(
    ...     "sandbox-abc", "python:3.11-slim", ["80/tcp"], [], {}, {}, host_ports=[50001]
    ... )
    >>> backend.start_container(result.container_id)

Requirements:
    - docker-py package (pip install docker)
    - Docker daemon running and accessible
"""

import logging
import uuid
from typing import Any
from urllib.parse import urlparse

from ..exceptions import ContainerNotFoundError, SandboxConnectionError
from ..models import ContainerCreateResult, VolumeBinding
from .base import ContainerBackend

logger = logging.getLogger(__name__)

# Attempts made when the requested container name is already taken
NAME_CONFLICT_RETRIES = 3


def _split_image(image: str) -> tuple[str, str]:
    """Split "repo:tag" into (repo, tag), defaulting the tag to latest."""
    repository, _, tail = image.rpartition(":")
    if repository and "/" not in tail:
        return repository, tail
    return image, "latest"


class DockerBackend(ContainerBackend):
    """
    Backend driving a local or remote Docker daemon.

    Attributes:
        _docker_host: Optional remote daemon URL (e.g. tcp://10.0.0.5:2375)
        _host_ip: Address published ports are reachable at
        _stop_timeout: Seconds Docker waits before killing on stop
        _client: docker.DockerClient once connected
    """

    backend_type = "docker"
    uses_host_ports = True
    supports_volumes = True

    def __init__(
        self,
        docker_host: str | None = None,
        host_ip: str | None = None,
        stop_timeout: int = 10,
        labels: dict[str, str] | None = None,
    ):
        """
        Args:
            docker_host: Remote Docker daemon URL; local daemon when None
            host_ip: Address clients use to reach published ports. Defaults
                to the remote daemon's host, or "localhost"
            stop_timeout: Seconds to wait for a graceful stop
            labels: Labels added to every container
        """
        self._docker_host = docker_host
        self._host_ip = host_ip or self._default_host_ip(docker_host)
        self._stop_timeout = stop_timeout
        self._labels = dict(labels or {})
        self._docker: Any = None  # the docker module
        self._client: Any | None = None  # docker.DockerClient

    @staticmethod
    def _default_host_ip(docker_host: str | None) -> str:
        if docker_host:
            hostname = urlparse(docker_host).hostname
            if hostname:
                return hostname
        return "localhost"

    def connect(self) -> bool:
        """
        Connect to the Docker daemon.

        Raises:
            SandboxConnectionError: If the SDK is missing or the daemon is unreachable
        """
        try:
            import docker
        except ImportError:
            raise SandboxConnectionError(
                "docker package not installed. Install with: pip install docker",
                connection_type="docker",
            )

        try:
            if self._docker_host:
                client = docker.DockerClient(base_url=self._docker_host)
                logger.info(f"Connected to remote Docker: {self._docker_host}")
            else:
                client = docker.from_env()
                logger.debug("Connected to local Docker daemon")

            client.ping()
            version = client.version()
            logger.info(f"Docker version: {version.get('Version', 'unknown')}")

        except Exception as e:
            raise SandboxConnectionError(
                f"Failed to connect to Docker daemon: {e}",
                host=self._docker_host or "local",
                connection_type="docker",
            ) from e

        self._docker = docker
        self._client = client
        return True

    def is_connected(self) -> bool:
        return self._client is not None

    def _require_client(self):
        if self._client is None:
            raise SandboxConnectionError(
                "Docker backend is not connected", connection_type="docker"
            )
        return self._client

    def _get(self, container_id: str):
        client = self._require_client()
        try:
            return client.containers.get(container_id)
        except self._docker.errors.NotFound as e:
            raise ContainerNotFoundError(
                f"Docker container not found: {container_id}", container_id=container_id
            ) from e

    def _runtime_kwargs(self, runtime_config: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        for key, value in runtime_config.items():
            if value is None:
                continue
            if key in ("mem_limit", "shm_size", "network"):
                kwargs[key] = value
            elif key == "nano_cpus":
                kwargs["nano_cpus"] = int(value)
            elif key == "cpu_limit":
                kwargs["nano_cpus"] = int(float(value) * 1_000_000_000)
            elif key == "enable_gpu":
                if value:
                    kwargs["device_requests"] = [
                        self._docker.types.DeviceRequest(count=-1, capabilities=[["gpu"]])
                    ]
            else:
                logger.warning(f"Ignoring unsupported Docker runtime option '{key}'")
        return kwargs

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
        client = self._require_client()
        host_ports = list(host_ports or [])
        if host_ports and len(host_ports) != len(ports):
            raise ValueError(
                f"Got {len(host_ports)} host port(s) for {len(ports)} container port(s)"
            )

        port_bindings = dict(zip(ports, host_ports))
        volumes = {
            binding.host_path: {"bind": binding.container_path, "mode": binding.mode}
            for binding in volume_bindings
        }

        kwargs: dict[str, Any] = {
            "image": image,
            "detach": True,
            "environment": dict(environment),
            "labels": dict(self._labels),
        }
        if port_bindings:
            kwargs["ports"] = port_bindings
        if volumes:
            kwargs["volumes"] = volumes
        kwargs.update(self._runtime_kwargs(runtime_config))

        container_name = name
        for attempt in range(NAME_CONFLICT_RETRIES):
            try:
                container = client.containers.create(name=container_name, **kwargs)
                break
            except self._docker.errors.APIError as e:
                if getattr(e, "status_code", None) != 409 or attempt == NAME_CONFLICT_RETRIES - 1:
                    raise
                logger.warning(f"Container name '{container_name}' is taken, retrying")
                container_name = f"{name}-{uuid.uuid4().hex[:6]}"

        logger.info(
            f"Created Docker container {container.id[:12]} ({container_name}) "
            f"from {image}, ports {host_ports or 'none'}"
        )
        return ContainerCreateResult(
            container_id=container.id,
            ports=host_ports,
            ip=self._host_ip,
            protocol="http",
        )

    def start_container(self, container_id: str) -> None:
        self._get(container_id).start()
        logger.debug(f"Started Docker container {container_id[:12]}")

    def stop_container(self, container_id: str) -> None:
        container = self._get(container_id)
        if container.status not in ("running", "restarting", "paused"):
            logger.debug(f"Docker container {container_id[:12]} already {container.status}")
            return
        container.stop(timeout=self._stop_timeout)
        logger.debug(f"Stopped Docker container {container_id[:12]}")

    def remove_container(self, container_id: str) -> None:
        try:
            container = self._get(container_id)
        except ContainerNotFoundError:
            logger.debug(f"Docker container {container_id[:12]} already removed")
            return
        container.remove(force=True)
        logger.debug(f"Removed Docker container {container_id[:12]}")

    def get_container_status(self, container_id: str) -> str:
        return self._get(container_id).status

    def image_exists(self, image: str) -> bool:
        client = self._require_client()
        try:
            client.images.get(image)
            return True
        except self._docker.errors.ImageNotFound:
            return False

    def pull_image(self, image: str) -> bool:
        client = self._require_client()
        repository, tag = _split_image(image)
        logger.info(f"Pulling Docker image '{repository}:{tag}'...")
        try:
            client.images.pull(repository, tag=tag)
        except self._docker.errors.DockerException as e:
            logger.error(f"Failed to pull image '{image}': {e}")
            return False
        logger.info(f"Successfully pulled image '{image}'")
        return True

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.warning(f"Error closing Docker client: {e}")
            self._client = None

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({"docker_host": self._docker_host or "local", "host_ip": self._host_ip})
        return info
