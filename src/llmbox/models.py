# src/llmbox/models.py
"""
Data models shared by the orchestration core.

This module defines the value types that flow between backends, the
registry, the pool and the manager:

    - SandboxKey: logical sandbox slot (user, session, sandbox type)
    - ContainerRecord: what the core knows about one physical container
    - PortRange: half-open [start, end) range handed to the port allocator
    - VolumeBinding: host directory mounted into a container
    - ContainerCreateResult: what a backend reports after creation
    - ImageSpec: explicit image/runtime request passed to acquire()
    - ContainerState: coarse lifecycle state derived from backend status strings

Records are plain dataclasses and serialize to JSON-compatible dicts so
the Redis-backed stores can persist them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import quote, unquote

# Path prefix under which the in-container sandbox server exposes its API
SANDBOX_API_PREFIX = "/fastapi"

# Backend status strings that count as a live container
LIVE_STATUSES = frozenset({"running", "created", "partiallyready", "pending", "starting"})

STOPPED_STATUSES = frozenset({"exited", "stopped", "paused", "dead", "restarting"})

REMOVED_STATUSES = frozenset({"not_found", "removed", "removing", "unknown"})


class ContainerState(Enum):
    """
    Coarse lifecycle state of a container.

    CREATED: Backend confirmed creation, not yet started
    RUNNING: Started and serving
    STOPPED: Stopped, may be restarted (pool reuse)
    REMOVED: Gone (terminal)
    """

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"

    @classmethod
    def from_status(cls, status: str | None) -> "ContainerState":
        """Map a backend status string onto a lifecycle state."""
        normalized = (status or "").strip().lower()
        if normalized == "created":
            return cls.CREATED
        if normalized in LIVE_STATUSES:
            return cls.RUNNING
        if normalized in STOPPED_STATUSES:
            return cls.STOPPED
        return cls.REMOVED


def is_live_status(status: str | None) -> bool:
    """Return True if a backend status string describes a usable container."""
    return (status or "").strip().lower() in LIVE_STATUSES


@dataclass(frozen=True)
class SandboxKey:
    """
    Identifies a logical sandbox slot.

    At most one live container is bound to a key at a time. Keys compare
    and hash by value.

    Attributes:
        user_id: Owner of the sandbox
        session_id: Conversation/session the sandbox belongs to
        sandbox_type: Sandbox type name (base, browser, filesystem, ...)
    """

    user_id: str
    session_id: str
    sandbox_type: str

    def __post_init__(self):
        for name in ("user_id", "session_id", "sandbox_type"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValueError(f"{name} must be a non-empty string")

    def __str__(self) -> str:
        return f"{self.user_id}:{self.session_id}:{self.sandbox_type}"

    def storage_key(self) -> str:
        """Stable string form safe to embed in shared-store keys."""
        return ":".join(
            quote(part, safe="") for part in (self.user_id, self.session_id, self.sandbox_type)
        )

    @classmethod
    def from_storage_key(cls, value: str) -> "SandboxKey":
        parts = value.split(":")
        if len(parts) != 3:
            raise ValueError(f"Malformed sandbox key: {value!r}")
        return cls(*(unquote(part) for part in parts))

    def to_dict(self) -> dict[str, str]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "sandbox_type": self.sandbox_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SandboxKey":
        return cls(
            user_id=data["user_id"],
            session_id=data["session_id"],
            sandbox_type=data["sandbox_type"],
        )


@dataclass(frozen=True)
class PortRange:
    """
    Half-open port range [start, end).

    Example:
        >>> r = PortRange(50000, 50010)
        >>> len(r)
        10
        >>> 50010 in r
        False
    """

    start: int
    end: int

    def __post_init__(self):
        if not 1 <= self.start < self.end <= 65536:
            raise ValueError(
                f"Invalid port range [{self.start}, {self.end}): "
                "start must be below end and both within 1-65536"
            )

    @property
    def size(self) -> int:
        return self.end - self.start

    def __len__(self) -> int:
        return self.size

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port < self.end

    def __iter__(self):
        return iter(range(self.start, self.end))

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass
class VolumeBinding:
    """Host directory mounted into a container."""

    host_path: str
    container_path: str
    mode: str = "rw"

    def __post_init__(self):
        if self.mode not in ("rw", "ro"):
            raise ValueError(f"Volume mode must be 'rw' or 'ro', got {self.mode!r}")


@dataclass
class ContainerCreateResult:
    """
    Result of ContainerBackend.create_container().

    Attributes:
        container_id: Backend identifier of the new container
        ports: Ports the container is reachable on (host or service ports)
        ip: Address the container is reachable at
        protocol: "http" or "https"
    """

    container_id: str
    ports: list[int] = field(default_factory=list)
    ip: str = "localhost"
    protocol: str = "http"


@dataclass
class ImageSpec:
    """
    Explicit image request for SandboxManager.acquire().

    Fields left empty fall back to the sandbox type defaults.
    """

    image: str | None = None
    environment: dict[str, str] = field(default_factory=dict)
    container_ports: list[str] = field(default_factory=list)
    runtime_config: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerRecord:
    """
    Everything the core knows about one physical container.

    A record only exists once a backend has confirmed creation. It is
    either bound to a SandboxKey in the registry or unbound in the pool.

    Attributes:
        container_id: Backend identifier (also the sandbox ID)
        container_name: Name given at creation
        ports: Ports the sandbox server is reachable on
        reserved_ports: Subset of ports reserved from the port allocator
        ip: Address the sandbox server is reachable at
        protocol: "http" or "https"
        image: Image the container runs
        sandbox_type: Sandbox type name the container was created for
        session_id: Random runtime session id used for naming and mounts
        runtime_token: Secret injected as SECRET_TOKEN, used as bearer token
        mount_dir: Host working directory mounted into the container
        storage_path: Storage location the mount is seeded from and synced back to
        labels: Free-form labels
        status: Last known backend status string
        created_at: Creation time (UTC)
    """

    container_id: str
    container_name: str = ""
    ports: list[int] = field(default_factory=list)
    reserved_ports: list[int] = field(default_factory=list)
    ip: str = "localhost"
    protocol: str = "http"
    image: str = ""
    sandbox_type: str = ""
    session_id: str = ""
    runtime_token: str = ""
    mount_dir: str | None = None
    storage_path: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    status: str = ContainerState.CREATED.value
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> ContainerState:
        return ContainerState.from_status(self.status)

    @property
    def base_url(self) -> str:
        if self.ports:
            return f"{self.protocol}://{self.ip}:{self.ports[0]}{SANDBOX_API_PREFIX}"
        return f"{self.protocol}://{self.ip}{SANDBOX_API_PREFIX}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "container_id": self.container_id,
            "container_name": self.container_name,
            "ports": list(self.ports),
            "reserved_ports": list(self.reserved_ports),
            "ip": self.ip,
            "protocol": self.protocol,
            "image": self.image,
            "sandbox_type": self.sandbox_type,
            "session_id": self.session_id,
            "runtime_token": self.runtime_token,
            "mount_dir": self.mount_dir,
            "storage_path": self.storage_path,
            "labels": dict(self.labels),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContainerRecord":
        created_at = data.get("created_at")
        return cls(
            container_id=data["container_id"],
            container_name=data.get("container_name", ""),
            ports=[int(p) for p in data.get("ports", [])],
            reserved_ports=[int(p) for p in data.get("reserved_ports", [])],
            ip=data.get("ip", "localhost"),
            protocol=data.get("protocol", "http"),
            image=data.get("image", ""),
            sandbox_type=data.get("sandbox_type", ""),
            session_id=data.get("session_id", ""),
            runtime_token=data.get("runtime_token", ""),
            mount_dir=data.get("mount_dir"),
            storage_path=data.get("storage_path"),
            labels=dict(data.get("labels") or {}),
            status=data.get("status", ContainerState.CREATED.value),
            created_at=(
                datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc)
            ),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, payload: str | bytes) -> "ContainerRecord":
        return cls.from_dict(json.loads(payload))
