# src/llmbox/ports.py
"""
Host port allocation for sandbox containers.

Backends that publish container ports on the host (Docker) need host
ports that no other sandbox is using. The allocator hands out exclusive
reservations from a bounded PortRange:

    - acquire(count) is all-or-nothing: either every requested port is
      reserved, or PortExhaustedError is raised and nothing is reserved
    - release(ports) returns ports to the free set; releasing a port that
      is already free is a no-op
    - two concurrent acquire() calls never receive the same port

Two implementations:
    LocalPortAllocator: in-process set guarded by a lock
    RedisPortAllocator: one Redis key per reserved port, shared by every
                        manager process pointing at the same Redis

Usage:
    >>> allocator = LocalPortAllocator(PortRange(50000, 50010))
    >>> ports = allocator.acquire(2)
    >>> allocator.release(ports)
"""

import logging
import socket
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable

from .exceptions import PortExhaustedError
from .models import PortRange

logger = logging.getLogger(__name__)

# Addresses probed when checking that a port is free on the host
_PROBE_ADDRESSES = ("0.0.0.0", "127.0.0.1")


def is_port_free_on_host(port: int) -> bool:
    """
    Check whether a TCP port can be bound on this host.

    Returns False as soon as any probed address refuses the bind.
    """
    for address in _PROBE_ADDRESSES:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((address, port))
            except OSError:
                return False
    return True


class PortAllocator(ABC):
    """Abstract allocator of exclusive ports from a fixed range."""

    def __init__(self, port_range: PortRange, check_host: bool = False):
        """
        Args:
            port_range: Range ports are handed out from
            check_host: Skip ports that cannot be bound on this host
        """
        self.port_range = port_range
        self.check_host = check_host

    @abstractmethod
    def acquire(self, count: int = 1) -> list[int]:
        """
        Reserve ``count`` ports.

        Raises:
            PortExhaustedError: If fewer than ``count`` ports are free
            ValueError: If count is not positive
        """

    @abstractmethod
    def release(self, ports: Iterable[int]) -> None:
        """Return ports to the free set. Already-free ports are ignored."""

    @abstractmethod
    def is_allocated(self, port: int) -> bool:
        """Return True if the port is currently reserved."""

    @abstractmethod
    def allocated_count(self) -> int:
        """Return the number of reserved ports."""

    @abstractmethod
    def clear(self) -> None:
        """Release every port."""

    def available_count(self) -> int:
        return self.port_range.size - self.allocated_count()

    def close(self) -> None:
        """Release client resources held by the allocator."""

    def _validate_count(self, count: int) -> None:
        if count < 1:
            raise ValueError(f"Port count must be positive, got {count}")

    def _probe(self, port: int) -> bool:
        if not self.check_host:
            return True
        if is_port_free_on_host(port):
            return True
        logger.debug(f"Port {port} is in use on the host, skipping")
        return False

    def _exhausted(self, count: int, available: int) -> PortExhaustedError:
        return PortExhaustedError(
            f"Cannot allocate {count} port(s) from range {self.port_range}",
            requested=count,
            available=available,
            port_range=str(self.port_range),
        )


class LocalPortAllocator(PortAllocator):
    """
    In-process port allocator.

    The whole scan-and-mark step runs under one lock, so allocation is
    linearizable across threads of a single process.
    """

    def __init__(self, port_range: PortRange, check_host: bool = False):
        super().__init__(port_range, check_host)
        self._allocated: set[int] = set()
        self._lock = threading.Lock()

    def acquire(self, count: int = 1) -> list[int]:
        self._validate_count(count)

        with self._lock:
            candidates: list[int] = []
            for port in self.port_range:
                if port in self._allocated or not self._probe(port):
                    continue
                candidates.append(port)
                if len(candidates) == count:
                    break

            if len(candidates) < count:
                raise self._exhausted(count, len(candidates))

            self._allocated.update(candidates)

        logger.debug(f"Allocated ports {candidates}")
        return candidates

    def release(self, ports: Iterable[int]) -> None:
        released = []
        with self._lock:
            for port in ports:
                if port in self._allocated:
                    self._allocated.discard(port)
                    released.append(port)
        if released:
            logger.debug(f"Released ports {released}")

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._allocated

    def allocated_count(self) -> int:
        with self._lock:
            return len(self._allocated)

    def clear(self) -> None:
        with self._lock:
            self._allocated.clear()


class RedisPortAllocator(PortAllocator):
    """
    Port allocator shared through Redis.

    Each reserved port is one key written with SET NX, so two processes
    can never both reserve the same port. A multi-port request that
    cannot be completed deletes the keys it wrote before failing.

    Key layout:
        <prefix>:ports:<port> -> owner token
    """

    def __init__(
        self,
        client,
        port_range: PortRange,
        key_prefix: str = "llmbox",
        check_host: bool = False,
    ):
        """
        Args:
            client: redis.Redis client
            port_range: Range ports are handed out from
            key_prefix: Namespace shared by cooperating managers
            check_host: Skip ports that cannot be bound on this host
        """
        super().__init__(port_range, check_host)
        self._client = client
        self._key_prefix = key_prefix
        self._owner = uuid.uuid4().hex

    def _port_key(self, port: int) -> str:
        return f"{self._key_prefix}:ports:{port}"

    def acquire(self, count: int = 1) -> list[int]:
        self._validate_count(count)

        reserved: list[int] = []
        for port in self.port_range:
            if len(reserved) == count:
                break
            if not self._probe(port):
                continue
            if self._client.set(self._port_key(port), self._owner, nx=True):
                reserved.append(port)

        if len(reserved) < count:
            self.release(reserved)
            raise self._exhausted(count, len(reserved))

        logger.debug(f"Allocated ports {reserved} in Redis")
        return reserved

    def release(self, ports: Iterable[int]) -> None:
        keys = [self._port_key(port) for port in ports]
        if keys:
            self._client.delete(*keys)
            logger.debug(f"Released {len(keys)} port key(s) in Redis")

    def is_allocated(self, port: int) -> bool:
        return bool(self._client.exists(self._port_key(port)))

    def _allocated_ports(self) -> list[int]:
        ports = []
        for key in self._client.scan_iter(match=self._port_key("*")):
            if isinstance(key, bytes):
                key = key.decode()
            try:
                port = int(key.rsplit(":", 1)[1])
            except ValueError:
                continue
            if port in self.port_range:
                ports.append(port)
        return ports

    def allocated_count(self) -> int:
        return len(self._allocated_ports())

    def clear(self) -> None:
        self.release(self._allocated_ports())
