# src/llmbox/__init__.py
"""
llmbox: sandbox orchestration core for agent tool execution.

This package provisions, tracks, reuses and tears down isolated execution
environments (containers or serverless sessions) that back tool calls
issued by an agent runtime.

Main Components:
    - SandboxManager: acquire/release/cleanup orchestration
    - ContainerBackend: Docker, Kubernetes and session API drivers
    - PortAllocator: exclusive host port reservations
    - SandboxRegistry: key -> container record (in-process or Redis)
    - SandboxPool: warm containers ready for checkout
    - Sandbox: handle returned to callers

Usage:
    >>> from llmbox import SandboxManager, load_manager_config
    >>>
    >>> with SandboxManager(load_manager_config()) as manager:
    ...     sandbox = manager.acquire("alice", "chat-1", "base")
    ...     sandbox.wait_until_healthy()
    ...     print(sandbox.base_url)
    ...     sandbox.release()
"""

# =============================================================================
# DATA MODELS
# =============================================================================

from .models import (
    ContainerCreateResult,
    ContainerRecord,
    ContainerState,
    ImageSpec,
    PortRange,
    SandboxKey,
    VolumeBinding,
)

# =============================================================================
# EXCEPTIONS
# =============================================================================

from .exceptions import (
    CleanupError,
    ConfigError,
    ContainerNotFoundError,
    CreationFailedError,
    ImagePullError,
    PortExhaustedError,
    SandboxConnectionError,
    SandboxError,
    SandboxNotFoundError,
    SandboxNotStartedError,
)

# =============================================================================
# BACKENDS
# =============================================================================

from .backends import (
    BACKEND_TYPES,
    ContainerBackend,
    DockerBackend,
    KubernetesBackend,
    SessionApiBackend,
    create_backend,
    register_backend,
)

# =============================================================================
# STORES
# =============================================================================

from .ports import LocalPortAllocator, PortAllocator, RedisPortAllocator
from .registry import LocalSandboxRegistry, RedisSandboxRegistry, SandboxRegistry
from .pool import LocalSandboxPool, RedisSandboxPool, SandboxPool
from .storage import LocalWorkspaceStorage, WorkspaceStorage

# =============================================================================
# ORCHESTRATION
# =============================================================================

from .sandbox_types import SandboxTypeConfig, SandboxTypeRegistry
from .sandbox import Sandbox
from .manager import SandboxManager, create_manager, register_shutdown_hook

# =============================================================================
# CONFIGURATION
# =============================================================================

from .config import ManagerConfig, generate_sample_config, load_manager_config
from .logging_config import configure_logging, log_display

__version__ = "0.1.0"

__all__ = [
    # Models
    "ContainerCreateResult",
    "ContainerRecord",
    "ContainerState",
    "ImageSpec",
    "PortRange",
    "SandboxKey",
    "VolumeBinding",
    # Exceptions
    "CleanupError",
    "ConfigError",
    "ContainerNotFoundError",
    "CreationFailedError",
    "ImagePullError",
    "PortExhaustedError",
    "SandboxConnectionError",
    "SandboxError",
    "SandboxNotFoundError",
    "SandboxNotStartedError",
    # Backends
    "BACKEND_TYPES",
    "ContainerBackend",
    "DockerBackend",
    "KubernetesBackend",
    "SessionApiBackend",
    "create_backend",
    "register_backend",
    # Stores
    "LocalPortAllocator",
    "PortAllocator",
    "RedisPortAllocator",
    "LocalSandboxRegistry",
    "RedisSandboxRegistry",
    "SandboxRegistry",
    "LocalSandboxPool",
    "RedisSandboxPool",
    "SandboxPool",
    "LocalWorkspaceStorage",
    "WorkspaceStorage",
    # Orchestration
    "SandboxTypeConfig",
    "SandboxTypeRegistry",
    "Sandbox",
    "SandboxManager",
    "create_manager",
    "register_shutdown_hook",
    # Configuration
    "ManagerConfig",
    "generate_sample_config",
    "load_manager_config",
    "configure_logging",
    "log_display",
]
