# tests/test_sandbox.py
"""
Tests for the Sandbox handle.

Health probes are answered by httpx.MockTransport; no server runs.
"""

from unittest.mock import MagicMock

import httpx
import pytest

from llmbox.models import ContainerRecord, SandboxKey
from llmbox.sandbox import Sandbox


@pytest.fixture
def record():
    return ContainerRecord(
        "0123456789abcdef",
        container_name="sandbox-x",
        ports=[50001, 50002],
        ip="127.0.0.1",
        image="llmbox/sandbox-base:latest",
        sandbox_type="base",
        runtime_token="tok123",
        status="running",
    )


@pytest.fixture
def fake_manager():
    manager = MagicMock()
    manager.release.return_value = True
    return manager


@pytest.fixture
def sandbox(fake_manager, record):
    return Sandbox(fake_manager, SandboxKey("alice", "s1", "base"), record)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestSandboxProperties:
    """Tests for the address accessors."""

    def test_addresses(self, sandbox):
        assert sandbox.sandbox_id == "0123456789abcdef"
        assert sandbox.port == 50001
        assert sandbox.ports == [50001, 50002]
        assert sandbox.address == "127.0.0.1:50001"
        assert sandbox.base_url == "http://127.0.0.1:50001/fastapi"

    def test_url_joins_paths(self, sandbox):
        assert sandbox.url("/run") == "http://127.0.0.1:50001/fastapi/run"
        assert sandbox.url("run") == "http://127.0.0.1:50001/fastapi/run"

    def test_headers_carry_token(self, sandbox):
        assert sandbox.headers() == {"Authorization": "Bearer tok123"}

    def test_headers_without_token(self, fake_manager):
        handle = Sandbox(fake_manager, SandboxKey("a", "b", "c"), ContainerRecord("x"))
        assert handle.headers() == {}
        assert handle.port is None
        assert handle.address == "localhost"

    def test_get_info(self, sandbox):
        info = sandbox.get_info()
        assert info["key"] == {"user_id": "alice", "session_id": "s1", "sandbox_type": "base"}
        assert info["released"] is False

    def test_repr(self, sandbox):
        assert "0123456789ab" in repr(sandbox)


class TestHealth:
    """Tests for health probing."""

    def test_healthy(self, sandbox):
        """A 200 from /healthz with the bearer token is healthy."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"status": "ok"})

        with _client(handler) as client:
            assert sandbox.check_health(client=client) is True
        assert seen == {"path": "/fastapi/healthz", "auth": "Bearer tok123"}

    def test_unhealthy_status(self, sandbox):
        with _client(lambda request: httpx.Response(503)) as client:
            assert sandbox.check_health(client=client) is False

    def test_connection_error(self, sandbox):
        """Transport errors count as unhealthy."""

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _client(handler) as client:
            assert sandbox.check_health(client=client) is False

    def test_wait_until_healthy(self, sandbox):
        """Polling stops at the first healthy answer."""
        answers = iter([503, 503, 200])
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(next(answers))

        with _client(handler) as client:
            assert sandbox.wait_until_healthy(timeout=5, interval=0.01, client=client) is True
        assert len(calls) == 3

    def test_wait_until_healthy_times_out(self, sandbox):
        with _client(lambda request: httpx.Response(500)) as client:
            assert sandbox.wait_until_healthy(timeout=0.05, interval=0.01, client=client) is False


class TestRelease:
    """Tests for releasing the handle."""

    def test_release_delegates_once(self, sandbox, fake_manager):
        """Only the first release reaches the manager."""
        assert sandbox.release() is True
        assert sandbox.release() is False
        fake_manager.release.assert_called_once_with("0123456789abcdef")
        assert sandbox.released

    def test_close_is_release(self, sandbox, fake_manager):
        sandbox.close()
        sandbox.close()
        fake_manager.release.assert_called_once()

    def test_context_manager_releases(self, sandbox, fake_manager):
        with sandbox:
            pass
        fake_manager.release.assert_called_once()
