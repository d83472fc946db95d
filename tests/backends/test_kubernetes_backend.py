# tests/backends/test_kubernetes_backend.py
"""
Unit tests for KubernetesBackend.

The kubernetes object models are used for real (they need no cluster);
the AppsV1Api/CoreV1Api clients are MagicMocks.
"""

from unittest.mock import MagicMock, patch

import pytest
from kubernetes import client as k8s
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from llmbox.backends.kubernetes_backend import (
    SELECTOR_LABEL,
    KubernetesBackend,
    _memory_quantity,
    sanitize_name,
)
from llmbox.exceptions import ContainerNotFoundError, SandboxConnectionError

# =============================================================================
# FIXTURES
# =============================================================================


def _connected(backend: KubernetesBackend) -> KubernetesBackend:
    backend._models = k8s
    backend._api_exception = ApiException
    backend._apps = MagicMock()
    backend._core = MagicMock()
    backend._core.create_namespaced_service.side_effect = lambda namespace, body: body
    return backend


@pytest.fixture
def backend():
    return _connected(
        KubernetesBackend(namespace="sandboxes", labels={"llmbox.io/managed": "true"})
    )


def _deployment(replicas, ready):
    return k8s.V1Deployment(
        spec=k8s.V1DeploymentSpec(
            replicas=replicas,
            selector=k8s.V1LabelSelector(match_labels={}),
            template=k8s.V1PodTemplateSpec(),
        ),
        status=k8s.V1DeploymentStatus(ready_replicas=ready),
    )


# =============================================================================
# HELPER TESTS
# =============================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("sandbox-abc", "sandbox-abc"),
            ("Sandbox_ABC", "sandbox-abc"),
            ("a.b/c", "a-b-c"),
            ("-x-", "x"),
            ("___", "sandbox"),
            ("42-abc", "sandbox-42-abc"),
        ],
    )
    def test_sanitize_name(self, name, expected):
        assert sanitize_name(name) == expected

    def test_sanitize_name_length(self):
        """The service name built from it stays within the 63 character DNS limit."""
        name = sanitize_name("a-very-long-container-prefix-" + "0123456789abcdef" * 3)
        assert len(name) == 59
        assert len(f"{name}-svc") <= 63
        assert name[0].isalpha()

    @pytest.mark.parametrize(
        "value,expected", [("1g", "1Gi"), ("512m", "512Mi"), ("2Gi", "2Gi"), ("1024", "1024")]
    )
    def test_memory_quantity(self, value, expected):
        assert _memory_quantity(value) == expected

    def test_invalid_service_type(self):
        with pytest.raises(ValueError):
            KubernetesBackend(service_type="Ingress")


# =============================================================================
# CONNECTION TESTS
# =============================================================================


class TestConnection:
    """Tests for loading cluster credentials."""

    def test_falls_back_to_kubeconfig(self):
        """Outside a cluster the default kubeconfig is loaded."""
        with patch(
            "kubernetes.config.load_incluster_config", side_effect=ConfigException("not in pod")
        ), patch("kubernetes.config.load_kube_config") as load_kube, patch(
            "kubernetes.client.AppsV1Api"
        ), patch(
            "kubernetes.client.CoreV1Api"
        ) as core_api:
            backend = KubernetesBackend(namespace="sandboxes")
            assert backend.connect() is True

        load_kube.assert_called_once_with()
        core_api.return_value.list_namespaced_pod.assert_called_once_with("sandboxes", limit=1)
        assert backend.is_connected()

    def test_explicit_kubeconfig(self):
        with patch("kubernetes.config.load_kube_config") as load_kube, patch(
            "kubernetes.client.AppsV1Api"
        ), patch("kubernetes.client.CoreV1Api"):
            KubernetesBackend(kubeconfig_path="/etc/kube/config").connect()
        load_kube.assert_called_once_with(config_file="/etc/kube/config")

    def test_unreachable_cluster(self):
        with patch("kubernetes.config.load_incluster_config"), patch(
            "kubernetes.client.AppsV1Api"
        ), patch("kubernetes.client.CoreV1Api") as core_api:
            core_api.return_value.list_namespaced_pod.side_effect = ApiException(status=403)
            backend = KubernetesBackend()
            with pytest.raises(SandboxConnectionError) as exc_info:
                backend.connect()
        assert exc_info.value.connection_type == "kubernetes"
        assert not backend.is_connected()

    def test_operations_require_connection(self):
        with pytest.raises(SandboxConnectionError):
            KubernetesBackend().get_container_status("sandbox-abc")


# =============================================================================
# CONTAINER LIFECYCLE TESTS
# =============================================================================


class TestCreateContainer:
    """Tests for deployment and service creation."""

    def test_creates_stopped_deployment_and_service(self, backend):
        result = backend.create_container(
            "Sandbox_ABC",
            "llmbox/sandbox-base:latest",
            ["80/tcp", "5900/tcp"],
            [],
            {"SECRET_TOKEN": "tok"},
            {"mem_limit": "1g", "cpu_limit": 2},
        )

        namespace, deployment = backend._apps.create_namespaced_deployment.call_args.args
        assert namespace == "sandboxes"
        assert deployment.metadata.name == "sandbox-abc"
        assert deployment.spec.replicas == 0
        assert deployment.metadata.labels == {
            "llmbox.io/managed": "true",
            SELECTOR_LABEL: "sandbox-abc",
        }
        container = deployment.spec.template.spec.containers[0]
        assert container.image == "llmbox/sandbox-base:latest"
        assert [p.container_port for p in container.ports] == [80, 5900]
        assert container.env[0].name == "SECRET_TOKEN"
        assert container.resources.limits == {"memory": "1Gi", "cpu": "2"}

        assert result.container_id == "sandbox-abc"
        assert result.ip == "sandbox-abc-svc.sandboxes.svc.cluster.local"
        assert result.ports == [80, 5900]

    def test_node_port_address(self):
        backend = _connected(KubernetesBackend(service_type="NodePort", node_host="10.0.0.10"))

        def assign_node_ports(namespace, body):
            for i, port in enumerate(body.spec.ports):
                port.node_port = 30080 + i
            return body

        backend._core.create_namespaced_service.side_effect = assign_node_ports
        result = backend.create_container("sandbox-abc", "img", ["80/tcp"], [], {}, {})
        assert (result.ip, result.ports) == ("10.0.0.10", [30080])

    def test_load_balancer_waits_for_ingress(self):
        backend = _connected(KubernetesBackend(service_type="LoadBalancer", poll_interval=0))
        pending = k8s.V1Service(
            spec=k8s.V1ServiceSpec(ports=[k8s.V1ServicePort(port=80)]),
            status=k8s.V1ServiceStatus(load_balancer=k8s.V1LoadBalancerStatus(ingress=None)),
        )
        ready = k8s.V1Service(
            spec=k8s.V1ServiceSpec(ports=[k8s.V1ServicePort(port=80)]),
            status=k8s.V1ServiceStatus(
                load_balancer=k8s.V1LoadBalancerStatus(
                    ingress=[k8s.V1LoadBalancerIngress(ip="34.1.2.3")]
                )
            ),
        )
        backend._core.create_namespaced_service.side_effect = None
        backend._core.create_namespaced_service.return_value = pending
        backend._core.read_namespaced_service.return_value = ready

        result = backend.create_container("sandbox-abc", "img", ["80/tcp"], [], {}, {})
        assert (result.ip, result.ports) == ("34.1.2.3", [80])

    def test_load_balancer_timeout_removes_deployment(self):
        backend = _connected(
            KubernetesBackend(service_type="LoadBalancer", load_balancer_timeout=0, poll_interval=0)
        )
        backend._core.create_namespaced_service.side_effect = None
        backend._core.create_namespaced_service.return_value = k8s.V1Service(
            spec=k8s.V1ServiceSpec(ports=[]), status=k8s.V1ServiceStatus()
        )
        with pytest.raises(TimeoutError):
            backend.create_container("sandbox-abc", "img", ["80/tcp"], [], {}, {})
        backend._apps.delete_namespaced_deployment.assert_called_once_with(
            "sandbox-abc", "default"
        )

    def test_service_failure_removes_deployment(self, backend):
        backend._core.create_namespaced_service.side_effect = ApiException(status=422)
        with pytest.raises(ApiException):
            backend.create_container("sandbox-abc", "img", ["80/tcp"], [], {}, {})
        backend._apps.delete_namespaced_deployment.assert_called_once_with(
            "sandbox-abc", "sandboxes"
        )


class TestContainerOperations:
    """Tests for scaling, removal and status."""

    def test_start_scales_up(self, backend):
        backend.start_container("sandbox-abc")
        backend._apps.patch_namespaced_deployment_scale.assert_called_once_with(
            "sandbox-abc", "sandboxes", {"spec": {"replicas": 1}}
        )

    def test_stop_scales_down(self, backend):
        backend.stop_container("sandbox-abc")
        backend._apps.patch_namespaced_deployment_scale.assert_called_once_with(
            "sandbox-abc", "sandboxes", {"spec": {"replicas": 0}}
        )

    def test_scale_missing(self, backend):
        backend._apps.patch_namespaced_deployment_scale.side_effect = ApiException(status=404)
        with pytest.raises(ContainerNotFoundError):
            backend.start_container("sandbox-abc")

    def test_scale_other_error(self, backend):
        backend._apps.patch_namespaced_deployment_scale.side_effect = ApiException(status=500)
        with pytest.raises(ApiException):
            backend.stop_container("sandbox-abc")

    def test_remove_ignores_missing(self, backend):
        backend._core.delete_namespaced_service.side_effect = ApiException(status=404)
        backend.remove_container("sandbox-abc")
        backend._apps.delete_namespaced_deployment.assert_called_once_with(
            "sandbox-abc", "sandboxes"
        )

    def test_remove_propagates_other_errors(self, backend):
        backend._apps.delete_namespaced_deployment.side_effect = ApiException(status=500)
        with pytest.raises(ApiException):
            backend.remove_container("sandbox-abc")

    @pytest.mark.parametrize(
        "replicas,ready,status",
        [
            (0, None, "stopped"),
            (1, 1, "running"),
            (2, 1, "partiallyready"),
            (1, None, "pending"),
        ],
    )
    def test_status(self, backend, replicas, ready, status):
        backend._apps.read_namespaced_deployment.return_value = _deployment(replicas, ready)
        assert backend.get_container_status("sandbox-abc") == status

    def test_status_missing(self, backend):
        backend._apps.read_namespaced_deployment.side_effect = ApiException(status=404)
        with pytest.raises(ContainerNotFoundError):
            backend.get_container_status("sandbox-abc")
        assert backend.inspect_container("sandbox-abc") is False

    def test_images_are_pulled_by_the_cluster(self, backend):
        assert backend.image_exists("anything") is True
        backend.ensure_image_available("anything")

    def test_close(self, backend):
        apps = backend._apps
        backend.close()
        apps.api_client.close.assert_called_once()
        assert not backend.is_connected()
