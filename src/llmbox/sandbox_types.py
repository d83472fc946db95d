# src/llmbox/sandbox_types.py
"""
Sandbox type catalogue.

A sandbox type names a kind of environment (plain shell, filesystem
tools, headless browser, desktop) and carries the image and runtime
defaults used to create containers of that kind. Callers may override
any of those defaults per request with an ImageSpec.

Usage:
    >>> types = SandboxTypeRegistry.with_defaults()
    >>> spec = types.resolve("browser")
    >>> spec.image
    'llmbox/sandbox-browser:latest'
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ConfigError
from .models import ImageSpec

logger = logging.getLogger(__name__)

DEFAULT_CONTAINER_PORTS = ["80/tcp"]


@dataclass
class SandboxTypeConfig:
    """Image and runtime defaults for one sandbox type."""

    name: str
    image: str
    environment: dict[str, str] = field(default_factory=dict)
    container_ports: list[str] = field(default_factory=lambda: list(DEFAULT_CONTAINER_PORTS))
    runtime_config: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise ValueError("Sandbox type name must not be empty")
        if not self.image:
            raise ValueError(f"Sandbox type '{self.name}' has no image")

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> "SandboxTypeConfig":
        return cls(
            name=name,
            image=data.get("image", ""),
            environment=dict(data.get("environment", {})),
            container_ports=list(data.get("container_ports", DEFAULT_CONTAINER_PORTS)),
            runtime_config=dict(data.get("runtime_config", {})),
            description=data.get("description", ""),
        )


DEFAULT_SANDBOX_TYPES = [
    SandboxTypeConfig(
        name="base",
        image="llmbox/sandbox-base:latest",
        description="Shell and Python execution",
    ),
    SandboxTypeConfig(
        name="filesystem",
        image="llmbox/sandbox-filesystem:latest",
        description="File manipulation tools",
    ),
    SandboxTypeConfig(
        name="browser",
        image="llmbox/sandbox-browser:latest",
        runtime_config={"shm_size": "2g"},
        description="Headless browser automation",
    ),
    SandboxTypeConfig(
        name="gui",
        image="llmbox/sandbox-gui:latest",
        container_ports=["80/tcp", "5900/tcp"],
        runtime_config={"shm_size": "2g"},
        description="Desktop session reachable over VNC",
    ),
]


class SandboxTypeRegistry:
    """Name -> SandboxTypeConfig lookup."""

    def __init__(self, types: list[SandboxTypeConfig] | None = None):
        self._types: dict[str, SandboxTypeConfig] = {}
        for sandbox_type in types or []:
            self.register(sandbox_type)

    @classmethod
    def with_defaults(cls) -> "SandboxTypeRegistry":
        return cls(DEFAULT_SANDBOX_TYPES)

    def register(self, sandbox_type: SandboxTypeConfig) -> None:
        if sandbox_type.name in self._types:
            logger.debug(f"Overriding sandbox type '{sandbox_type.name}'")
        self._types[sandbox_type.name] = sandbox_type

    def get(self, name: str) -> SandboxTypeConfig:
        try:
            return self._types[name]
        except KeyError:
            raise ConfigError(
                f"Unknown sandbox type '{name}'",
                key=name,
                details={"known": ", ".join(sorted(self._types))},
            ) from None

    def image_for(self, name: str) -> str:
        return self.get(name).image

    def names(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def resolve(self, sandbox_type: str, image_spec: ImageSpec | None = None) -> ImageSpec:
        """
        Merge the type defaults with an explicit request.

        An unknown sandbox type is accepted when the request names an
        image itself.

        Raises:
            ConfigError: If the type is unknown and no image was given
        """
        image_spec = image_spec or ImageSpec()
        if sandbox_type in self._types:
            defaults = self._types[sandbox_type]
        elif image_spec.image:
            defaults = SandboxTypeConfig(name=sandbox_type, image=image_spec.image)
        else:
            defaults = self.get(sandbox_type)

        return ImageSpec(
            image=image_spec.image or defaults.image,
            environment={**defaults.environment, **image_spec.environment},
            container_ports=list(image_spec.container_ports or defaults.container_ports),
            runtime_config={**defaults.runtime_config, **image_spec.runtime_config},
            labels=dict(image_spec.labels),
        )
