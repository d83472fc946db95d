# src/llmbox/backends/__init__.py
"""
Container backends.

    - ContainerBackend: abstract contract shared by every substrate
    - DockerBackend: local or remote Docker daemon
    - KubernetesBackend: Deployments and Services in one namespace
    - SessionApiBackend: hosted serverless session API
"""

from .base import ContainerBackend
from .docker_backend import DockerBackend
from .factory import BACKEND_TYPES, create_backend, register_backend
from .kubernetes_backend import KubernetesBackend
from .session_backend import SessionApiBackend

__all__ = [
    "BACKEND_TYPES",
    "ContainerBackend",
    "DockerBackend",
    "KubernetesBackend",
    "SessionApiBackend",
    "create_backend",
    "register_backend",
]
