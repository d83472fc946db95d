# src/llmbox/backends/base.py
"""
Abstract base class for container backends.

A backend drives one substrate (Docker daemon, Kubernetes cluster,
serverless session API). The manager only talks to this interface and
reads capability flags; it never branches on the concrete backend.

Failure semantics every backend follows:
    - operations on a container that does not exist raise
      ContainerNotFoundError (a soft miss for the manager)
    - connect() failures are reported by returning False or raising
      SandboxConnectionError
    - any other substrate error propagates unchanged; backends do not retry
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from ..exceptions import ContainerNotFoundError, ImagePullError
from ..models import ContainerCreateResult, VolumeBinding

logger = logging.getLogger(__name__)


class ContainerBackend(ABC):
    """
    Abstract container backend.

    Class attributes:
        backend_type: Name used in configuration ("docker", "kubernetes", ...)
        uses_host_ports: The manager must reserve host ports for each
            container port before create_container()
        supports_volumes: Host volume bindings are honoured
    """

    backend_type: str = "abstract"
    uses_host_ports: bool = False
    supports_volumes: bool = False

    @abstractmethod
    def connect(self) -> bool:
        """
        Connect to the substrate and verify it responds.

        Returns:
            True if the backend is ready to serve
        """

    @abstractmethod
    def is_connected(self) -> bool:
        """Return True after a successful connect()."""

    @abstractmethod
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
        """
        Create (but do not start) a container.

        Args:
            name: Container name
            image: Image reference
            ports: Container ports such as "80/tcp"
            volume_bindings: Host directories to mount
            environment: Environment variables
            runtime_config: Backend-specific resource settings
            host_ports: Host ports reserved for ``ports``, in order

        Returns:
            ContainerCreateResult describing how to reach the container
        """

    @abstractmethod
    def start_container(self, container_id: str) -> None:
        """Start a created or stopped container."""

    @abstractmethod
    def stop_container(self, container_id: str) -> None:
        """Stop a running container. Stopping a stopped container is a no-op."""

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        """Delete a container."""

    @abstractmethod
    def get_container_status(self, container_id: str) -> str:
        """
        Return the substrate's status string for a container.

        Raises:
            ContainerNotFoundError: If the container does not exist
        """

    @abstractmethod
    def image_exists(self, image: str) -> bool:
        """Return True if the image is available to the substrate."""

    @abstractmethod
    def pull_image(self, image: str) -> bool:
        """Pull an image. Returns True on success."""

    def inspect_container(self, container_id: str) -> bool:
        """Return True if the container exists."""
        try:
            self.get_container_status(container_id)
            return True
        except ContainerNotFoundError:
            return False

    def ensure_image_available(self, image: str) -> None:
        """
        Make sure an image is available, pulling it if needed.

        Raises:
            ImagePullError: If the image is missing and cannot be pulled
        """
        if self.image_exists(image):
            return

        logger.info(f"Image '{image}' not available, pulling")
        try:
            pulled = self.pull_image(image)
        except ImagePullError:
            raise
        except Exception as e:
            raise ImagePullError(f"Failed to pull image '{image}': {e}", image=image) from e

        if not pulled:
            raise ImagePullError(f"Failed to pull image '{image}'", image=image)

    def stop_and_remove_container(self, container_id: str) -> None:
        """Stop then remove a container. A missing container counts as removed."""
        try:
            self.stop_container(container_id)
        except ContainerNotFoundError:
            logger.debug(f"Container {container_id[:12]} already gone before stop")
            return
        self.remove_container(container_id)

    def close(self) -> None:
        """Release client resources."""

    def get_info(self) -> dict[str, Any]:
        return {
            "backend_type": self.backend_type,
            "connected": self.is_connected(),
            "uses_host_ports": self.uses_host_ports,
            "supports_volumes": self.supports_volumes,
        }
