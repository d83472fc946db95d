# src/llmbox/pool.py
"""
Warm pool of pre-created sandbox containers.

The pool is a FIFO of ContainerRecords that are not bound to any key.
The manager checks out the oldest entry instead of creating a container
when the entry matches the requested image, and returns released
containers to the pool when there is room.

Every operation is atomic: a dequeued entry is handed to exactly one
caller.

Two implementations:
    LocalSandboxPool: deque guarded by a lock
    RedisSandboxPool: Redis list (LPUSH in, RPOP out)
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable

from redis.exceptions import WatchError

from .models import ContainerRecord

logger = logging.getLogger(__name__)


class SandboxPool(ABC):
    """Abstract FIFO of unbound container records."""

    @abstractmethod
    def enqueue(self, record: ContainerRecord) -> None:
        """Append a record at the tail."""

    @abstractmethod
    def dequeue(self) -> ContainerRecord | None:
        """Remove and return the head record, or None when empty."""

    @abstractmethod
    def peek(self) -> ContainerRecord | None:
        """Return the head record without removing it."""

    @abstractmethod
    def pop_if(self, predicate: Callable[[ContainerRecord], bool]) -> ContainerRecord | None:
        """Remove and return the head record only if ``predicate`` accepts it."""

    @abstractmethod
    def size(self) -> int:
        """Return the number of pooled records."""

    @abstractmethod
    def clear(self) -> list[ContainerRecord]:
        """Remove every record and return them in FIFO order."""

    def close(self) -> None:
        """Release client resources held by the pool."""

    def __len__(self) -> int:
        return self.size()


class LocalSandboxPool(SandboxPool):
    """In-process pool backed by a deque."""

    def __init__(self):
        self._queue: deque[ContainerRecord] = deque()
        self._lock = threading.Lock()

    def enqueue(self, record: ContainerRecord) -> None:
        with self._lock:
            self._queue.append(record)
        logger.debug(f"Pooled container {record.container_id[:12]}")

    def dequeue(self) -> ContainerRecord | None:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def peek(self) -> ContainerRecord | None:
        with self._lock:
            return self._queue[0] if self._queue else None

    def pop_if(self, predicate: Callable[[ContainerRecord], bool]) -> ContainerRecord | None:
        with self._lock:
            if self._queue and predicate(self._queue[0]):
                return self._queue.popleft()
            return None

    def size(self) -> int:
        with self._lock:
            return len(self._queue)

    def clear(self) -> list[ContainerRecord]:
        with self._lock:
            drained = list(self._queue)
            self._queue.clear()
        return drained


class RedisSandboxPool(SandboxPool):
    """
    Pool shared through a Redis list.

    Records are pushed on the left and popped on the right, so the
    rightmost element is the head. pop_if() watches the list and retries
    when another process modified it between the check and the pop.

    Key layout:
        <prefix>:pool:<name> -> list of records as JSON
    """

    def __init__(self, client, key_prefix: str = "llmbox:sandbox", name: str = "default"):
        self._client = client
        self._list_key = f"{key_prefix}:pool:{name}"

    def enqueue(self, record: ContainerRecord) -> None:
        self._client.lpush(self._list_key, record.to_json())
        logger.debug(f"Pooled container {record.container_id[:12]} in Redis")

    def dequeue(self) -> ContainerRecord | None:
        payload = self._client.rpop(self._list_key)
        return ContainerRecord.from_json(payload) if payload is not None else None

    def peek(self) -> ContainerRecord | None:
        payload = self._client.lindex(self._list_key, -1)
        return ContainerRecord.from_json(payload) if payload is not None else None

    def pop_if(self, predicate: Callable[[ContainerRecord], bool]) -> ContainerRecord | None:
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(self._list_key)
                    payload = pipe.lindex(self._list_key, -1)
                    if payload is None:
                        pipe.reset()
                        return None
                    record = ContainerRecord.from_json(payload)
                    if not predicate(record):
                        pipe.reset()
                        return None
                    pipe.multi()
                    pipe.rpop(self._list_key)
                    pipe.execute()
                    return record
                except WatchError:
                    continue

    def size(self) -> int:
        return int(self._client.llen(self._list_key))

    def clear(self) -> list[ContainerRecord]:
        pipe = self._client.pipeline()
        pipe.lrange(self._list_key, 0, -1)
        pipe.delete(self._list_key)
        payloads, _ = pipe.execute()
        # LPUSH order: newest first
        return [ContainerRecord.from_json(p) for p in reversed(payloads)]

    def close(self) -> None:
        self._client.close()
