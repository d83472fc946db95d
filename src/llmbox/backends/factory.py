# src/llmbox/backends/factory.py
"""
Backend selection by name.

The manager never branches on the backend type: configuration names a
backend, and this table maps the name to its class. Third-party backends
can be added with register_backend().
"""

import logging

from .base import ContainerBackend
from .docker_backend import DockerBackend
from .kubernetes_backend import KubernetesBackend
from .session_backend import SessionApiBackend

logger = logging.getLogger(__name__)

BACKEND_TYPES: dict[str, type[ContainerBackend]] = {
    DockerBackend.backend_type: DockerBackend,
    KubernetesBackend.backend_type: KubernetesBackend,
    SessionApiBackend.backend_type: SessionApiBackend,
}


def register_backend(name: str, backend_cls: type[ContainerBackend]) -> None:
    """Make a backend class selectable through configuration."""
    if not issubclass(backend_cls, ContainerBackend):
        raise TypeError(f"{backend_cls!r} is not a ContainerBackend")
    BACKEND_TYPES[name] = backend_cls
    logger.debug(f"Registered backend '{name}' -> {backend_cls.__name__}")


def create_backend(config) -> ContainerBackend:
    """
    Build the backend named by ``config.backend`` from its config section.

    Args:
        config: ManagerConfig

    Returns:
        An unconnected backend instance
    """
    backend_cls = BACKEND_TYPES[config.backend]

    if backend_cls is DockerBackend:
        return DockerBackend(
            docker_host=config.docker.host,
            host_ip=config.docker.host_ip,
            stop_timeout=config.docker.stop_timeout,
            labels={"llmbox.managed": "true"},
        )
    if backend_cls is KubernetesBackend:
        return KubernetesBackend(
            namespace=config.kubernetes.namespace,
            service_type=config.kubernetes.service_type,
            node_host=config.kubernetes.node_host,
            kubeconfig_path=config.kubernetes.kubeconfig_path,
            image_pull_policy=config.kubernetes.image_pull_policy,
            load_balancer_timeout=config.kubernetes.load_balancer_timeout,
            labels={"llmbox.io/managed": "true"},
        )
    if backend_cls is SessionApiBackend:
        return SessionApiBackend(
            endpoint=config.session.endpoint,
            api_key=config.session.api_key,
            timeout=config.session.timeout,
        )

    # Registered third-party backends take the whole config
    return backend_cls(config)
