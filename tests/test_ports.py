# tests/test_ports.py
"""
Tests for host port allocation.

Both allocators are exercised through the same scenarios; the Redis
allocator runs against fakeredis.
"""

import socket
import threading

import pytest

from llmbox.exceptions import PortExhaustedError
from llmbox.models import PortRange
from llmbox.ports import LocalPortAllocator, RedisPortAllocator, is_port_free_on_host


@pytest.fixture(params=["local", "redis"])
def allocator(request, redis_client):
    """Allocator over a ten-port range, in-process or Redis-backed."""
    port_range = PortRange(50000, 50010)
    if request.param == "local":
        return LocalPortAllocator(port_range)
    return RedisPortAllocator(redis_client, port_range, key_prefix="test")


class TestAcquireRelease:
    """Tests shared by both allocators."""

    def test_acquire_returns_distinct_ports_in_range(self, allocator):
        """Acquired ports are distinct and inside the range."""
        ports = allocator.acquire(3)
        assert len(set(ports)) == 3
        assert all(p in allocator.port_range for p in ports)
        assert allocator.allocated_count() == 3

    def test_release_makes_ports_available(self, allocator):
        """Released ports can be acquired again."""
        ports = allocator.acquire(10)
        allocator.release(ports[:2])
        assert allocator.available_count() == 2
        assert sorted(allocator.acquire(2)) == sorted(ports[:2])

    def test_release_is_idempotent(self, allocator):
        """Releasing a free port does nothing."""
        ports = allocator.acquire(1)
        allocator.release(ports)
        allocator.release(ports)
        allocator.release([50005])
        assert allocator.allocated_count() == 0

    def test_exhaustion_is_all_or_nothing(self, allocator):
        """A request that cannot be satisfied reserves nothing."""
        allocator.acquire(8)
        with pytest.raises(PortExhaustedError) as exc_info:
            allocator.acquire(3)
        assert exc_info.value.requested == 3
        assert exc_info.value.available == 2
        assert exc_info.value.port_range == "50000-50010"
        assert allocator.allocated_count() == 8

    def test_is_allocated(self, allocator):
        (port,) = allocator.acquire(1)
        assert allocator.is_allocated(port)
        allocator.release([port])
        assert not allocator.is_allocated(port)

    def test_clear(self, allocator):
        allocator.acquire(5)
        allocator.clear()
        assert allocator.allocated_count() == 0

    @pytest.mark.parametrize("count", [0, -1])
    def test_rejects_non_positive_count(self, allocator, count):
        with pytest.raises(ValueError):
            allocator.acquire(count)

    def test_concurrent_acquire_never_shares_ports(self, allocator):
        """Ten threads each take one port; all ports are distinct."""
        results = []
        errors = []
        lock = threading.Lock()

        def worker():
            try:
                ports = allocator.acquire(1)
                with lock:
                    results.extend(ports)
            except PortExhaustedError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 10
        assert len(set(results)) == 10
        assert len(errors) == 2


class TestRedisPortAllocator:
    """Redis-specific behaviour."""

    def test_two_processes_share_reservations(self, redis_client, second_redis_client):
        """Allocators on different clients see each other's ports."""
        port_range = PortRange(50000, 50004)
        first = RedisPortAllocator(redis_client, port_range, key_prefix="shared")
        second = RedisPortAllocator(second_redis_client, port_range, key_prefix="shared")

        a = first.acquire(2)
        b = second.acquire(2)
        assert not set(a) & set(b)
        with pytest.raises(PortExhaustedError):
            second.acquire(1)

    def test_failed_request_rolls_back(self, redis_client):
        """Keys written during a failed request are deleted."""
        allocator = RedisPortAllocator(redis_client, PortRange(50000, 50003), key_prefix="rb")
        redis_client.set("rb:ports:50001", "someone-else")

        with pytest.raises(PortExhaustedError):
            allocator.acquire(3)
        assert redis_client.keys("rb:ports:*") == ["rb:ports:50001"]

    def test_ports_outside_range_are_not_counted(self, redis_client):
        allocator = RedisPortAllocator(redis_client, PortRange(50000, 50003), key_prefix="cnt")
        redis_client.set("cnt:ports:60000", "other")
        allocator.acquire(1)
        assert allocator.allocated_count() == 1


class TestHostProbe:
    """Tests for the host bind check."""

    def test_bound_port_is_not_free(self):
        """A port held by a listening socket is reported busy."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]
            assert is_port_free_on_host(port) is False

    def test_check_host_skips_busy_ports(self):
        """With check_host the allocator skips ports bound by other programs."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            busy = sock.getsockname()[1]
            if busy + 1 > 65535:
                pytest.skip("Ephemeral port at the top of the range")
            allocator = LocalPortAllocator(PortRange(busy, busy + 2), check_host=True)
            ports = allocator.acquire(1)
            assert ports != [busy]
