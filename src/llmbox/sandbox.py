# src/llmbox/sandbox.py
"""
Sandbox handle returned by SandboxManager.acquire().

The handle carries what a tool adapter needs to talk to the sandbox
server inside the container: address, ports, protocol and the bearer
token injected into the container at creation. Issuing commands is left
to the adapters; the handle only offers a health probe.

Usage:
    >>> with manager.acquire("alice", "chat-1", "base") as sandbox:
    ...     sandbox.wait_until_healthy(timeout=30)
    ...     response = httpx.post(sandbox.url("run_ipython_cell"), headers=sandbox.headers(), ...)
"""

import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from .models import ContainerRecord, SandboxKey

if TYPE_CHECKING:
    from .manager import SandboxManager

logger = logging.getLogger(__name__)

HEALTH_PATH = "healthz"


class Sandbox:
    """
    Client-side view of one acquired sandbox.

    Releasing the handle drops this caller's reference; the container
    keeps running while other handles still reference it.
    """

    def __init__(self, manager: "SandboxManager", key: SandboxKey, record: ContainerRecord):
        self._manager = manager
        self._key = key
        self._record = record
        self._released = False

    @property
    def sandbox_id(self) -> str:
        return self._record.container_id

    @property
    def key(self) -> SandboxKey:
        return self._key

    @property
    def record(self) -> ContainerRecord:
        return self._record

    @property
    def ip(self) -> str:
        return self._record.ip

    @property
    def ports(self) -> list[int]:
        return list(self._record.ports)

    @property
    def port(self) -> int | None:
        return self._record.ports[0] if self._record.ports else None

    @property
    def protocol(self) -> str:
        return self._record.protocol

    @property
    def runtime_token(self) -> str:
        return self._record.runtime_token

    @property
    def image(self) -> str:
        return self._record.image

    @property
    def address(self) -> str:
        if self.port is None:
            return self.ip
        return f"{self.ip}:{self.port}"

    @property
    def base_url(self) -> str:
        return self._record.base_url

    @property
    def released(self) -> bool:
        return self._released

    def url(self, path: str = "") -> str:
        """Absolute URL of a sandbox server endpoint."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def headers(self) -> dict[str, str]:
        """Headers authenticating against the sandbox server."""
        if not self._record.runtime_token:
            return {}
        return {"Authorization": f"Bearer {self._record.runtime_token}"}

    def check_health(self, timeout: float = 5.0, client: httpx.Client | None = None) -> bool:
        """
        Probe the sandbox server's health endpoint once.

        Args:
            timeout: Request timeout in seconds
            client: Optional httpx client to send the request with

        Returns:
            True if the server answered 200
        """
        try:
            if client is not None:
                response = client.get(self.url(HEALTH_PATH), headers=self.headers(), timeout=timeout)
            else:
                response = httpx.get(self.url(HEALTH_PATH), headers=self.headers(), timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check of {self.sandbox_id[:12]} failed: {e}")
            return False
        return response.status_code == 200

    def wait_until_healthy(
        self,
        timeout: float = 60.0,
        interval: float = 1.0,
        client: httpx.Client | None = None,
    ) -> bool:
        """Poll check_health() until it succeeds or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while True:
            if self.check_health(timeout=min(interval * 5, timeout), client=client):
                return True
            if time.monotonic() >= deadline:
                logger.warning(f"Sandbox {self.sandbox_id[:12]} not healthy after {timeout}s")
                return False
            time.sleep(interval)

    def release(self) -> bool:
        """
        Drop this handle's reference. Calling it twice is a no-op.

        Returns:
            True if the manager stopped or pooled the container
        """
        if self._released:
            return False
        self._released = True
        return self._manager.release(self.sandbox_id)

    def close(self) -> None:
        self.release()

    def get_info(self) -> dict[str, Any]:
        return {
            "sandbox_id": self.sandbox_id,
            "key": self._key.to_dict(),
            "ip": self.ip,
            "ports": self.ports,
            "protocol": self.protocol,
            "image": self.image,
            "base_url": self.base_url,
            "released": self._released,
        }

    def __enter__(self) -> "Sandbox":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Sandbox(id={self.sandbox_id[:12]!r}, key={str(self._key)!r}, url={self.base_url!r})"
