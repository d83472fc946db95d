# src/llmbox/config.py
"""
Configuration management for the sandbox manager.

Configuration Hierarchy:
    1. Default values (defined in this module)
    2. TOML config file (~/.llmbox/config.toml, or LLMBOX_CONFIG_PATH)
    3. Environment variables (LLMBOX_*)
    4. Runtime overrides (passed to functions)

Example TOML configuration:
    [llmbox]
    backend = "docker"  # docker, kubernetes, session
    container_prefix = "sandbox"
    port_range_start = 49152
    port_range_end = 59152

    [llmbox.docker]
    host = "tcp://10.0.0.5:2375"

    [llmbox.redis]
    enabled = true
    url = "redis://localhost:6379/0"

    [llmbox.pool]
    size = 4
    sandbox_types = ["base"]

    [llmbox.sandbox_types.python]
    image = "python:3.11-slim"
"""

import copy
import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from .backends.factory import BACKEND_TYPES
from .exceptions import ConfigError
from .models import PortRange

logger = logging.getLogger(__name__)

ENV_PREFIX = "LLMBOX_"

CONFIG_PATH_ENV = "LLMBOX_CONFIG_PATH"

# Default configuration values
DEFAULT_CONFIG = {
    "backend": "docker",
    "container_prefix": "sandbox",
    "default_sandbox_type": "base",
    "port_range_start": 49152,
    "port_range_end": 59152,
    "port_check_host": False,
    "docker": {
        "host": "",
        "host_ip": "",
        "stop_timeout": 10,
    },
    "kubernetes": {
        "namespace": "default",
        "service_type": "ClusterIP",
        "node_host": "",
        "kubeconfig_path": "",
        "image_pull_policy": "IfNotPresent",
        "load_balancer_timeout": 120.0,
    },
    "session": {
        "endpoint": "",
        "api_key": "",
        "timeout": 30.0,
    },
    "redis": {
        "enabled": False,
        "url": "redis://localhost:6379/0",
        "key_prefix": "llmbox:sandbox",
        "entry_ttl_seconds": 0,
        "socket_timeout": 5.0,
    },
    "pool": {
        "size": 0,
        "warm_on_start": False,
        "reuse_released": True,
        "sandbox_types": ["base"],
    },
    "volumes": {
        "mount_dir": "",
        "storage_path": "",
        "workdir": "/workspace",
        "readonly_mounts": {},
    },
    "lease": {
        "ttl_seconds": 300.0,
        "retry_interval": 0.05,
        "retry_max_interval": 1.0,
    },
    "cleanup": {
        "on_shutdown": True,
        "ttl_sweep_enabled": False,
        "interval_seconds": 5.0,
        "expiry_threshold_seconds": 10.0,
    },
    "logging": {},
    "sandbox_types": {},
}


@dataclass
class DockerSettings:
    """Docker backend configuration."""

    host: str | None = None
    host_ip: str | None = None
    stop_timeout: int = 10


@dataclass
class KubernetesSettings:
    """Kubernetes backend configuration."""

    namespace: str = "default"
    service_type: str = "ClusterIP"
    node_host: str | None = None
    kubeconfig_path: str | None = None
    image_pull_policy: str = "IfNotPresent"
    load_balancer_timeout: float = 120.0


@dataclass
class SessionSettings:
    """Serverless session API configuration."""

    endpoint: str | None = None
    api_key: str | None = None
    timeout: float = 30.0


@dataclass
class RedisSettings:
    """Shared store configuration."""

    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "llmbox:sandbox"
    entry_ttl_seconds: int | None = None
    socket_timeout: float = 5.0


@dataclass
class PoolSettings:
    """Warm pool configuration."""

    size: int = 0
    warm_on_start: bool = False
    reuse_released: bool = True
    sandbox_types: list[str] = field(default_factory=lambda: ["base"])


@dataclass
class VolumeSettings:
    """
    Host directories mounted into containers.

    When ``mount_dir`` is set, every container gets its own
    ``<mount_dir>/<session_id>`` directory mounted read-write at
    ``workdir``. When ``storage_path`` is also set, the directory is
    seeded from ``<storage_path>`` at creation and copied back when the
    sandbox is released or removed. ``readonly_mounts`` maps host paths
    to container paths.
    """

    mount_dir: str | None = None
    storage_path: str | None = None
    workdir: str = "/workspace"
    readonly_mounts: dict[str, str] = field(default_factory=dict)


@dataclass
class LeaseSettings:
    """Creation lease timing."""

    ttl_seconds: float = 300.0
    retry_interval: float = 0.05
    retry_max_interval: float = 1.0


@dataclass
class CleanupSettings:
    """Shutdown and expiry sweeps."""

    on_shutdown: bool = True
    ttl_sweep_enabled: bool = False
    interval_seconds: float = 5.0
    expiry_threshold_seconds: float = 10.0


@dataclass
class ManagerConfig:
    """
    Complete sandbox manager configuration.

    Holds the backend choice, the port range, shared store settings and
    the per-backend sections.
    """

    backend: str = "docker"
    container_prefix: str = "sandbox"
    default_sandbox_type: str = "base"
    port_range_start: int = 49152
    port_range_end: int = 59152
    port_check_host: bool = False
    docker: DockerSettings = field(default_factory=DockerSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    redis: RedisSettings = field(default_factory=RedisSettings)
    pool: PoolSettings = field(default_factory=PoolSettings)
    volumes: VolumeSettings = field(default_factory=VolumeSettings)
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    cleanup: CleanupSettings = field(default_factory=CleanupSettings)
    logging: dict[str, Any] = field(default_factory=dict)
    sandbox_types: dict[str, dict[str, Any]] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    @property
    def port_range(self) -> PortRange:
        return PortRange(self.port_range_start, self.port_range_end)

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.backend not in BACKEND_TYPES:
            raise ConfigError(
                f"Unknown backend '{self.backend}', expected one of {sorted(BACKEND_TYPES)}",
                key="backend",
            )
        try:
            PortRange(self.port_range_start, self.port_range_end)
        except ValueError as e:
            raise ConfigError(str(e), key="port_range_start") from e
        if not self.container_prefix:
            raise ConfigError("container_prefix must not be empty", key="container_prefix")
        if self.pool.size < 0:
            raise ConfigError("pool.size must not be negative", key="pool.size")
        if self.lease.ttl_seconds <= 0:
            raise ConfigError("lease.ttl_seconds must be positive", key="lease.ttl_seconds")
        if self.lease.retry_interval <= 0:
            raise ConfigError("lease.retry_interval must be positive", key="lease.retry_interval")
        if self.backend == "session" and not self.session.endpoint:
            raise ConfigError(
                "session.endpoint is required for the session backend", key="session.endpoint"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in override take precedence. Nested dictionaries are merged recursively.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Environment variables follow the pattern:
        LLMBOX_<KEY>=value
        LLMBOX_<SECTION>_<KEY>=value

    Examples:
        LLMBOX_BACKEND=kubernetes
        LLMBOX_PORT_RANGE_START=50000
        LLMBOX_REDIS_ENABLED=true
        LLMBOX_KUBERNETES_NAMESPACE=sandboxes
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_PATH_ENV:
            continue

        name = key[len(ENV_PREFIX) :].lower()

        # Top-level setting, possibly containing underscores itself
        if name in config and not isinstance(config[name], dict):
            config[name] = _parse_env_value(value)
            continue

        for section, section_values in config.items():
            if not isinstance(section_values, dict) or not name.startswith(f"{section}_"):
                continue
            nested_key = name[len(section) + 1 :]
            if nested_key in section_values:
                section_values[nested_key] = _parse_env_value(value)
                break

    return config


def _parse_env_value(value: str) -> Any:
    """
    Parse environment variable value to appropriate type.

    Returns:
        Parsed value (bool, int, float, list, or string)
    """
    # Boolean
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    # Integer
    try:
        return int(value)
    except ValueError:
        pass

    # Float
    try:
        return float(value)
    except ValueError:
        pass

    # List (comma-separated)
    if "," in value:
        return [v.strip() for v in value.split(",")]

    return value


def default_config_path() -> Path:
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".llmbox" / "config.toml"


def load_toml_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load the [llmbox] section from a TOML file.

    A missing file yields an empty dict; an unparsable one is logged and
    ignored.
    """
    if config_path is None:
        config_path = default_config_path()
    config_path = Path(config_path)

    if not config_path.exists():
        logger.debug(f"Config file not found: {config_path}")
        return {}

    try:
        with open(config_path, "rb") as f:
            full_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        return {}

    logger.debug(f"Loaded sandbox manager config from {config_path}")
    return full_config.get("llmbox", {})


def _none_if_empty(value: Any) -> Any:
    # TOML has no null; empty strings and zero TTLs mean "unset"
    if value == "" or value == 0:
        return None
    return value


def _build_section(cls, data: dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in [{section}]: {', '.join(sorted(unknown))}")
    return cls(**{k: v for k, v in data.items() if k in known})


def load_manager_config(
    config_path: Path | None = None, overrides: dict[str, Any] | None = None
) -> ManagerConfig:
    """
    Load complete sandbox manager configuration.

    Configuration is loaded and merged in order:
        1. Default values
        2. TOML config file
        3. Environment variables
        4. Runtime overrides

    Raises:
        ConfigError: If the merged configuration is invalid
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    toml_config = load_toml_config(config_path)
    if toml_config:
        config = _deep_merge(config, toml_config)

    config = _apply_env_overrides(config)

    if overrides:
        config = _deep_merge(config, overrides)

    docker = dict(config["docker"])
    for key in ("host", "host_ip"):
        docker[key] = _none_if_empty(docker.get(key))

    kubernetes = dict(config["kubernetes"])
    for key in ("node_host", "kubeconfig_path"):
        kubernetes[key] = _none_if_empty(kubernetes.get(key))

    session = dict(config["session"])
    for key in ("endpoint", "api_key"):
        session[key] = _none_if_empty(session.get(key))

    redis = dict(config["redis"])
    redis["entry_ttl_seconds"] = _none_if_empty(redis.get("entry_ttl_seconds"))

    volumes = dict(config["volumes"])
    volumes["mount_dir"] = _none_if_empty(volumes.get("mount_dir"))
    volumes["storage_path"] = _none_if_empty(volumes.get("storage_path"))

    pool = dict(config["pool"])
    if isinstance(pool.get("sandbox_types"), str):
        pool["sandbox_types"] = [pool["sandbox_types"]]

    try:
        return ManagerConfig(
            backend=config["backend"],
            container_prefix=config["container_prefix"],
            default_sandbox_type=config["default_sandbox_type"],
            port_range_start=int(config["port_range_start"]),
            port_range_end=int(config["port_range_end"]),
            port_check_host=bool(config["port_check_host"]),
            docker=_build_section(DockerSettings, docker, "docker"),
            kubernetes=_build_section(KubernetesSettings, kubernetes, "kubernetes"),
            session=_build_section(SessionSettings, session, "session"),
            redis=_build_section(RedisSettings, redis, "redis"),
            pool=_build_section(PoolSettings, pool, "pool"),
            volumes=_build_section(VolumeSettings, volumes, "volumes"),
            lease=_build_section(LeaseSettings, config["lease"], "lease"),
            cleanup=_build_section(CleanupSettings, config["cleanup"], "cleanup"),
            logging=dict(config["logging"]),
            sandbox_types=dict(config["sandbox_types"]),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid sandbox manager configuration: {e}") from e


def generate_sample_config() -> str:
    """
    Generate a sample TOML configuration file content.

    Returns:
        TOML configuration string
    """
    return """# llmbox sandbox manager configuration
# Place this in ~/.llmbox/config.toml or point LLMBOX_CONFIG_PATH at it

[llmbox]
# Container backend: "docker", "kubernetes" or "session"
backend = "docker"

# Prefix for container names
container_prefix = "sandbox"

# Sandbox type used when a caller does not name one
default_sandbox_type = "base"

# Host ports handed to containers, [start, end)
port_range_start = 49152
port_range_end = 59152

# Skip ports that some other process already bound on this host
port_check_host = false

[llmbox.docker]
# Remote Docker daemon (empty: local daemon)
# host = "tcp://docker-host:2375"
stop_timeout = 10

[llmbox.kubernetes]
namespace = "default"
# ClusterIP, NodePort or LoadBalancer
service_type = "ClusterIP"
# node_host = "10.0.0.10"
image_pull_policy = "IfNotPresent"
load_balancer_timeout = 120.0

[llmbox.session]
# endpoint = "https://sandbox.example.com/v1"
# api_key = ""
timeout = 30.0

[llmbox.redis]
# Share the registry, pool and port reservations between processes
enabled = false
url = "redis://localhost:6379/0"
key_prefix = "llmbox:sandbox"
# Expire idle registry entries after this many seconds (0: never)
entry_ttl_seconds = 0

[llmbox.pool]
# Number of pre-created containers kept per pooled sandbox type
size = 0
warm_on_start = false
# Return released containers to the pool when there is room
reuse_released = true
sandbox_types = ["base"]

[llmbox.volumes]
# Per-container working directories are created under this path
# mount_dir = "~/.llmbox/sessions"
# Workspace contents are copied from here into new mounts and back on release
# storage_path = "~/.llmbox/storage"
workdir = "/workspace"

[llmbox.volumes.readonly_mounts]
# "/host/data" = "/data"

[llmbox.lease]
ttl_seconds = 300.0
retry_interval = 0.05
retry_max_interval = 1.0

[llmbox.cleanup]
# Remove every sandbox when the manager closes
on_shutdown = true
# Periodically remove registry entries whose TTL is about to lapse
ttl_sweep_enabled = false
interval_seconds = 5.0
expiry_threshold_seconds = 10.0

[llmbox.logging]
console_enabled = false
file_enabled = false

# [llmbox.sandbox_types.python]
# image = "python:3.11-slim"
# container_ports = ["8000/tcp"]
# runtime_config = { mem_limit = "1g" }
"""


def write_sample_config(path: Path | None = None) -> Path:
    """
    Write a sample configuration file.

    Args:
        path: Path to write to (default: ~/.llmbox/config.toml.sample)

    Returns:
        Path where config was written
    """
    if path is None:
        path = Path.home() / ".llmbox" / "config.toml.sample"

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        f.write(generate_sample_config())

    logger.info(f"Wrote sample config to {path}")
    return path
