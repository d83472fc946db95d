# src/llmbox/backends/session_backend.py
"""
Serverless session backend for cloud sandbox services.

Hosted sandbox services hand out "sessions" instead of containers. This
backend maps the container contract onto a small REST API:

    GET    /health                 -> service reachable
    POST   /sessions               -> create, returns {"session_id", "host", "ports", "protocol"}
    POST   /sessions/{id}/start    -> start
    POST   /sessions/{id}/stop     -> stop
    DELETE /sessions/{id}          -> remove
    GET    /sessions/{id}          -> {"status": "..."}

A 404 on any per-session call means the session is gone. Images are
managed by the service, and addressing comes from the create response,
so neither host ports nor local image pulls are involved.

Usage:
    >>> backend = SessionApiBackend("https://sandbox.example.com/v1", api_key="...")
    >>> backend.connect()
"""

import logging
from typing import Any

import httpx

from ..exceptions import ContainerNotFoundError, SandboxConnectionError
from ..models import ContainerCreateResult, VolumeBinding
from .base import ContainerBackend

logger = logging.getLogger(__name__)


class SessionApiBackend(ContainerBackend):
    """Backend for a hosted sandbox session API reached over HTTP."""

    backend_type = "session"
    uses_host_ports = False
    supports_volumes = False

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            endpoint: Base URL of the session API
            api_key: Bearer token sent with every request
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._endpoint = endpoint.rstrip("/")
        self._client = httpx.Client(
            base_url=self._endpoint, headers=headers, timeout=timeout, transport=transport
        )
        self._connected = False

    def connect(self) -> bool:
        try:
            response = self._client.get("/health")
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SandboxConnectionError(
                f"Session API unreachable: {e}",
                host=self._endpoint,
                connection_type="session_api",
            ) from e

        self._connected = True
        logger.info(f"Connected to session API at {self._endpoint}")
        return True

    def is_connected(self) -> bool:
        return self._connected

    def _request(
        self, method: str, path: str, container_id: str | None = None, **kwargs
    ) -> httpx.Response:
        response = self._client.request(method, path, **kwargs)
        if response.status_code == 404 and container_id is not None:
            raise ContainerNotFoundError(
                f"Session not found: {container_id}", container_id=container_id
            )
        response.raise_for_status()
        return response

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
        if volume_bindings:
            logger.debug(f"Session API ignores {len(volume_bindings)} host volume(s)")

        payload = {
            "name": name,
            "image": image,
            "ports": list(ports),
            "environment": dict(environment),
            "runtime_config": dict(runtime_config),
        }
        data = self._request("POST", "/sessions", json=payload).json()

        session_id = data["session_id"]
        logger.info(f"Created session {session_id} ({name}) from {image}")
        return ContainerCreateResult(
            container_id=session_id,
            ports=[int(p) for p in data.get("ports", [])],
            ip=data.get("host", ""),
            protocol=data.get("protocol", "https"),
        )

    def start_container(self, container_id: str) -> None:
        self._request("POST", f"/sessions/{container_id}/start", container_id)

    def stop_container(self, container_id: str) -> None:
        self._request("POST", f"/sessions/{container_id}/stop", container_id)

    def remove_container(self, container_id: str) -> None:
        try:
            self._request("DELETE", f"/sessions/{container_id}", container_id)
        except ContainerNotFoundError:
            logger.debug(f"Session {container_id} already deleted")
            return
        logger.debug(f"Deleted session {container_id}")

    def get_container_status(self, container_id: str) -> str:
        data = self._request("GET", f"/sessions/{container_id}", container_id).json()
        return str(data.get("status", "unknown")).lower()

    def image_exists(self, image: str) -> bool:
        return True

    def pull_image(self, image: str) -> bool:
        return True

    def close(self) -> None:
        self._client.close()
        self._connected = False

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info["endpoint"] = self._endpoint
        return info
