# src/llmbox/exceptions.py
"""
Exceptions raised by the sandbox orchestration core.

Exception Hierarchy:
    SandboxError (base)
    ├── SandboxConnectionError - Backend or shared store unreachable
    ├── ImagePullError - Image missing locally and could not be pulled
    ├── PortExhaustedError - Port range cannot satisfy a request
    ├── ContainerNotFoundError - Backend has no such container (soft miss)
    ├── CreationFailedError - Container create/start failed and was rolled back
    ├── CleanupError - A container could not be torn down
    ├── SandboxNotFoundError - No sandbox registered under the given identity
    ├── SandboxNotStartedError - Manager used before start()
    └── ConfigError - Invalid configuration
"""

from typing import Any


class SandboxError(Exception):
    """
    Base exception for all sandbox orchestration errors.

    Attributes:
        message: Human-readable error description
        details: Optional dictionary with additional context
        sandbox_id: Container ID of the affected sandbox (if known)
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        sandbox_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.sandbox_id = sandbox_id

    def __str__(self) -> str:
        """Return formatted error message."""
        base_msg = self.message
        if self.sandbox_id:
            base_msg = f"[Sandbox {self.sandbox_id[:12]}] {base_msg}"
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_msg = f"{base_msg} ({detail_str})"
        return base_msg

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "sandbox_id": self.sandbox_id,
        }


class SandboxConnectionError(SandboxError):
    """
    Raised when a backend or the shared store cannot be reached.

    Raised by SandboxManager.start() when the backend refuses the
    connection; the manager will not serve requests afterwards.

    Attributes:
        host: The host that couldn't be reached
        port: The port used
        connection_type: Type of connection (docker, kubernetes, session_api, redis)
    """

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        connection_type: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.host = host
        self.port = port
        self.connection_type = connection_type

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update(
            {"host": self.host, "port": self.port, "connection_type": self.connection_type}
        )
        return result


class ImagePullError(SandboxError):
    """
    Raised when an image is not available and cannot be pulled.

    Recoverable: the caller may retry with another image.

    Attributes:
        image: The image that wasn't found
        registry: The registry that was searched
    """

    def __init__(
        self, message: str, image: str | None = None, registry: str | None = None, **kwargs
    ):
        super().__init__(message, **kwargs)
        self.image = image
        self.registry = registry

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update({"image": self.image, "registry": self.registry})
        return result


class PortExhaustedError(SandboxError):
    """
    Raised when the port range has fewer free ports than requested.

    Nothing is allocated when this is raised.

    Attributes:
        requested: Number of ports asked for
        available: Number of free ports at the time of the request
        port_range: The configured range as "start-end"
    """

    def __init__(
        self,
        message: str,
        requested: int | None = None,
        available: int | None = None,
        port_range: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.requested = requested
        self.available = available
        self.port_range = port_range

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update(
            {
                "requested": self.requested,
                "available": self.available,
                "port_range": self.port_range,
            }
        )
        return result


class ContainerNotFoundError(SandboxError):
    """
    Raised by a backend when the container does not exist.

    The manager treats this as a soft miss: stale registry entries are
    pruned and a new container is created, removals are considered done.

    Attributes:
        container_id: The ID or name that was looked up
    """

    def __init__(self, message: str, container_id: str | None = None, **kwargs):
        kwargs.setdefault("sandbox_id", container_id)
        super().__init__(message, **kwargs)
        self.container_id = container_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result["container_id"] = self.container_id
        return result


class CreationFailedError(SandboxError):
    """
    Raised when creating or starting a container fails.

    By the time this is raised the reserved ports have been released and
    any half-created container has been removed (best effort). The
    backend error is available as ``__cause__``.

    Example:
        >>> raise CreationFailedError(
        ...     "Failed to start container",
        ...     details={"image": "python:3.11-slim", "reason": "port already in use"}
        ... )
    """

    pass


class CleanupError(SandboxError):
    """
    Raised when a sandbox cannot be torn down.

    Non-fatal during a cleanup sweep: the sweep logs it and continues.

    Attributes:
        resources_leaked: List of resources that weren't cleaned
        partial_cleanup: Whether some cleanup succeeded
    """

    def __init__(
        self,
        message: str,
        resources_leaked: list | None = None,
        partial_cleanup: bool = False,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.resources_leaked = resources_leaked or []
        self.partial_cleanup = partial_cleanup

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result.update(
            {"resources_leaked": self.resources_leaked, "partial_cleanup": self.partial_cleanup}
        )
        return result


class SandboxNotFoundError(SandboxError):
    """Raised when no sandbox is registered under the given identity."""

    def __init__(self, message: str = "Sandbox not found", **kwargs):
        super().__init__(message, **kwargs)


class SandboxNotStartedError(SandboxError):
    """
    Raised when the manager is used before start() or after close().

    This is a programming error.
    """

    def __init__(self, message: str = "Sandbox manager not started", **kwargs):
        super().__init__(message, **kwargs)


class ConfigError(SandboxError):
    """
    Raised when configuration values are invalid.

    Attributes:
        key: The offending configuration key
    """

    def __init__(self, message: str, key: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception to dictionary."""
        result = super().to_dict()
        result["key"] = self.key
        return result
