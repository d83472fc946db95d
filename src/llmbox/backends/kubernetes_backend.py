# src/llmbox/backends/kubernetes_backend.py
"""
Kubernetes container backend using the official kubernetes client.

Each sandbox is a Deployment with one pod plus a Service exposing its
ports. The Deployment name doubles as the container ID.

    create_container -> Deployment (0 replicas) + Service "<name>-svc"
    start_container  -> scale to 1 replica
    stop_container   -> scale to 0 replicas
    remove_container -> delete Deployment and Service

Status strings:
    stopped         0 desired replicas
    running         all desired replicas ready
    partiallyready  some replicas ready
    pending         no replica ready yet

The cluster pulls images itself, so image_exists()/pull_image() always
succeed, and the Service provides addressing, so no host ports are needed.

Requirements:
    - kubernetes package (pip install kubernetes)
    - A kubeconfig or in-cluster service account
"""

import logging
import re
import time
from typing import Any

from ..exceptions import ContainerNotFoundError, SandboxConnectionError
from ..models import ContainerCreateResult, VolumeBinding
from .base import ContainerBackend

logger = logging.getLogger(__name__)

SELECTOR_LABEL = "llmbox.io/sandbox"

SERVICE_TYPES = ("ClusterIP", "NodePort", "LoadBalancer")

_NAME_INVALID = re.compile(r"[^a-z0-9-]")

SERVICE_SUFFIX = "-svc"

# DNS label limit minus the service suffix, so "<name>-svc" stays valid too
MAX_NAME_LENGTH = 63 - len(SERVICE_SUFFIX)


def sanitize_name(name: str) -> str:
    """
    Turn a container name into a name usable for both the Deployment and
    its Service: a DNS-1035 label starting with a letter, short enough to
    take the service suffix.
    """
    cleaned = _NAME_INVALID.sub("-", name.lower().replace("_", "-")).strip("-")
    if cleaned and not cleaned[0].isalpha():
        cleaned = f"sandbox-{cleaned}"
    return cleaned[:MAX_NAME_LENGTH].rstrip("-") or "sandbox"


def _parse_port(spec: str) -> tuple[int, str]:
    """Parse "80/tcp" into (80, "TCP")."""
    port, _, protocol = spec.partition("/")
    return int(port), (protocol or "tcp").upper()


def _memory_quantity(value: str) -> str:
    """Convert Docker-style memory sizes ("1g", "512m") to Kubernetes quantities."""
    value = str(value).strip()
    suffixes = {"k": "Ki", "m": "Mi", "g": "Gi", "t": "Ti"}
    if value and value[-1].lower() in suffixes and value[:-1].isdigit():
        return value[:-1] + suffixes[value[-1].lower()]
    return value


class KubernetesBackend(ContainerBackend):
    """
    Backend driving Deployments in one Kubernetes namespace.

    Attributes:
        _namespace: Namespace sandboxes are created in
        _service_type: ClusterIP, NodePort or LoadBalancer
        _node_host: Address NodePort services are reached at
        _kubeconfig_path: Explicit kubeconfig; in-cluster config is tried first when None
        _load_balancer_timeout: Seconds to wait for a LoadBalancer address
    """

    backend_type = "kubernetes"
    uses_host_ports = False
    supports_volumes = False

    def __init__(
        self,
        namespace: str = "default",
        service_type: str = "ClusterIP",
        node_host: str | None = None,
        kubeconfig_path: str | None = None,
        image_pull_policy: str = "IfNotPresent",
        load_balancer_timeout: float = 120.0,
        poll_interval: float = 2.0,
        labels: dict[str, str] | None = None,
    ):
        if service_type not in SERVICE_TYPES:
            raise ValueError(f"service_type must be one of {SERVICE_TYPES}, got {service_type!r}")
        self._namespace = namespace
        self._service_type = service_type
        self._node_host = node_host or "localhost"
        self._kubeconfig_path = kubeconfig_path
        self._image_pull_policy = image_pull_policy
        self._load_balancer_timeout = load_balancer_timeout
        self._poll_interval = poll_interval
        self._labels = dict(labels or {})

        self._models: Any = None  # kubernetes.client module
        self._api_exception: Any = None
        self._apps: Any = None  # AppsV1Api
        self._core: Any = None  # CoreV1Api

    def connect(self) -> bool:
        """
        Load cluster credentials and verify the namespace is reachable.

        Raises:
            SandboxConnectionError: If the client is missing or the cluster is unreachable
        """
        try:
            from kubernetes import client, config
            from kubernetes.client.rest import ApiException
            from kubernetes.config.config_exception import ConfigException
        except ImportError:
            raise SandboxConnectionError(
                "kubernetes package not installed. Install with: pip install kubernetes",
                connection_type="kubernetes",
            )

        try:
            if self._kubeconfig_path:
                config.load_kube_config(config_file=self._kubeconfig_path)
            else:
                try:
                    config.load_incluster_config()
                    logger.debug("Loaded in-cluster Kubernetes config")
                except ConfigException:
                    config.load_kube_config()
                    logger.debug("Loaded Kubernetes config from kubeconfig")

            apps = client.AppsV1Api()
            core = client.CoreV1Api()
            core.list_namespaced_pod(self._namespace, limit=1)
        except Exception as e:
            raise SandboxConnectionError(
                f"Failed to connect to Kubernetes: {e}",
                host=self._kubeconfig_path or "in-cluster",
                connection_type="kubernetes",
            ) from e

        self._models = client
        self._api_exception = ApiException
        self._apps = apps
        self._core = core
        logger.info(f"Connected to Kubernetes namespace '{self._namespace}'")
        return True

    def is_connected(self) -> bool:
        return self._apps is not None

    def _require_connected(self) -> None:
        if self._apps is None:
            raise SandboxConnectionError(
                "Kubernetes backend is not connected", connection_type="kubernetes"
            )

    def _is_not_found(self, error: Exception) -> bool:
        return isinstance(error, self._api_exception) and error.status == 404

    def _not_found(self, container_id: str) -> ContainerNotFoundError:
        return ContainerNotFoundError(
            f"Kubernetes deployment not found: {container_id}", container_id=container_id
        )

    def _resources(self, runtime_config: dict[str, Any]):
        limits: dict[str, str] = {}
        if runtime_config.get("mem_limit"):
            limits["memory"] = _memory_quantity(runtime_config["mem_limit"])
        if runtime_config.get("cpu_limit"):
            limits["cpu"] = str(runtime_config["cpu_limit"])
        elif runtime_config.get("nano_cpus"):
            limits["cpu"] = f"{int(runtime_config['nano_cpus']) // 1_000_000}m"
        if runtime_config.get("enable_gpu"):
            limits["nvidia.com/gpu"] = "1"
        if not limits:
            return None
        return self._models.V1ResourceRequirements(limits=limits, requests=dict(limits))

    def _build_deployment(self, name, image, ports, environment, runtime_config):
        m = self._models
        labels = {**self._labels, SELECTOR_LABEL: name}
        container = m.V1Container(
            name="sandbox",
            image=image,
            image_pull_policy=self._image_pull_policy,
            ports=[
                m.V1ContainerPort(container_port=port, protocol=protocol)
                for port, protocol in ports
            ],
            env=[m.V1EnvVar(name=k, value=str(v)) for k, v in environment.items()],
            resources=self._resources(runtime_config),
        )
        return m.V1Deployment(
            metadata=m.V1ObjectMeta(name=name, labels=labels),
            spec=m.V1DeploymentSpec(
                replicas=0,
                selector=m.V1LabelSelector(match_labels={SELECTOR_LABEL: name}),
                template=m.V1PodTemplateSpec(
                    metadata=m.V1ObjectMeta(labels=labels),
                    spec=m.V1PodSpec(containers=[container]),
                ),
            ),
        )

    def _build_service(self, name, ports):
        m = self._models
        return m.V1Service(
            metadata=m.V1ObjectMeta(name=f"{name}{SERVICE_SUFFIX}", labels={SELECTOR_LABEL: name}),
            spec=m.V1ServiceSpec(
                type=self._service_type,
                selector={SELECTOR_LABEL: name},
                ports=[
                    m.V1ServicePort(
                        name=f"port-{port}", port=port, target_port=port, protocol=protocol
                    )
                    for port, protocol in ports
                ],
            ),
        )

    def _service_address(self, name: str, service) -> tuple[str, list[int]]:
        service_ports = service.spec.ports or []
        if self._service_type == "NodePort":
            return self._node_host, [p.node_port for p in service_ports]
        if self._service_type == "ClusterIP":
            host = f"{name}{SERVICE_SUFFIX}.{self._namespace}.svc.cluster.local"
            return host, [p.port for p in service_ports]

        deadline = time.monotonic() + self._load_balancer_timeout
        while True:
            ingress = service.status.load_balancer.ingress if service.status.load_balancer else None
            if ingress:
                return ingress[0].ip or ingress[0].hostname, [p.port for p in service_ports]
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"LoadBalancer for {name}{SERVICE_SUFFIX} got no address within "
                    f"{self._load_balancer_timeout}s"
                )
            time.sleep(self._poll_interval)
            service = self._core.read_namespaced_service(f"{name}{SERVICE_SUFFIX}", self._namespace)

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
        self._require_connected()
        name = sanitize_name(name)
        parsed_ports = [_parse_port(p) for p in ports]
        if volume_bindings:
            logger.debug(f"Kubernetes backend ignores {len(volume_bindings)} host volume(s)")

        deployment = self._build_deployment(name, image, parsed_ports, environment, runtime_config)
        self._apps.create_namespaced_deployment(self._namespace, deployment)
        try:
            service = self._core.create_namespaced_service(
                self._namespace, self._build_service(name, parsed_ports)
            )
            ip, service_ports = self._service_address(name, service)
        except Exception:
            self.remove_container(name)
            raise

        logger.info(f"Created Kubernetes deployment {name} from {image} ({self._service_type})")
        return ContainerCreateResult(container_id=name, ports=service_ports, ip=ip)

    def _scale(self, container_id: str, replicas: int) -> None:
        self._require_connected()
        try:
            self._apps.patch_namespaced_deployment_scale(
                container_id, self._namespace, {"spec": {"replicas": replicas}}
            )
        except Exception as e:
            if self._is_not_found(e):
                raise self._not_found(container_id) from e
            raise

    def start_container(self, container_id: str) -> None:
        self._scale(container_id, 1)
        logger.debug(f"Scaled deployment {container_id} to 1 replica")

    def stop_container(self, container_id: str) -> None:
        self._scale(container_id, 0)
        logger.debug(f"Scaled deployment {container_id} to 0 replicas")

    def remove_container(self, container_id: str) -> None:
        self._require_connected()
        deletions = (
            (self._core.delete_namespaced_service, f"{container_id}{SERVICE_SUFFIX}"),
            (self._apps.delete_namespaced_deployment, container_id),
        )
        for delete, resource_name in deletions:
            try:
                delete(resource_name, self._namespace)
            except Exception as e:
                if not self._is_not_found(e):
                    raise
                logger.debug(f"{resource_name} already deleted")
        logger.debug(f"Removed deployment {container_id}")

    def get_container_status(self, container_id: str) -> str:
        self._require_connected()
        try:
            deployment = self._apps.read_namespaced_deployment(container_id, self._namespace)
        except Exception as e:
            if self._is_not_found(e):
                raise self._not_found(container_id) from e
            raise

        desired = deployment.spec.replicas or 0
        ready = (deployment.status.ready_replicas or 0) if deployment.status else 0
        if desired == 0:
            return "stopped"
        if ready >= desired:
            return "running"
        if ready > 0:
            return "partiallyready"
        return "pending"

    def image_exists(self, image: str) -> bool:
        return True

    def pull_image(self, image: str) -> bool:
        return True

    def close(self) -> None:
        if self._apps is not None:
            self._apps.api_client.close()
        self._apps = None
        self._core = None

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        info.update({"namespace": self._namespace, "service_type": self._service_type})
        return info
