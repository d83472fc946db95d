# src/llmbox/registry.py
"""
Sandbox Registry: maps logical sandbox keys to live container records.

The registry is the manager's source of truth for which container is
bound to which (user, session, sandbox type) slot:
    - add() is an atomic create-if-absent; a caller that loses the race
      gets the winner's record back instead of registering its own
    - records can be looked up and removed by key or by container ID
    - per-container reference counts track how many callers hold a handle;
      acquire_reference() only counts while the key is still bound, and
      remove_if_unreferenced() only unbinds at zero
    - creation leases let exactly one caller build the container for a
      fresh key while the others wait for it to appear

Two implementations:
    LocalSandboxRegistry: dictionaries guarded by a re-entrant lock,
                          visible inside one process
    RedisSandboxRegistry: shared through Redis, so every process pointing
                          at the same Redis and prefix sees one mapping

Usage:
    >>> registry = LocalSandboxRegistry()
    >>> bound = registry.add(key, record)
    >>> registry.get(key).container_id == bound.container_id
    True
"""

import copy
import json
import logging
import threading
import time
from abc import ABC, abstractmethod

from redis.exceptions import WatchError

from .models import ContainerRecord, SandboxKey

logger = logging.getLogger(__name__)


class SandboxRegistry(ABC):
    """Abstract key -> container record store."""

    @abstractmethod
    def add(self, key: SandboxKey, record: ContainerRecord) -> ContainerRecord:
        """
        Bind a record to a key unless the key is already bound.

        Returns:
            The record bound to the key after the call: ``record`` if the
            key was free, otherwise the existing record.
        """

    @abstractmethod
    def get(self, key: SandboxKey) -> ContainerRecord | None:
        """Return the record bound to the key, or None."""

    @abstractmethod
    def get_by_container_id(self, container_id: str) -> ContainerRecord | None:
        """Return the record for a container ID, or None."""

    @abstractmethod
    def key_for(self, container_id: str) -> SandboxKey | None:
        """Return the key a container is bound to, or None."""

    @abstractmethod
    def remove_by_container_id(self, container_id: str) -> bool:
        """
        Delete a record and its key mapping.

        The key mapping is only deleted while it still points at this
        container, so a newer record bound to the same key survives.

        Returns:
            True if a record was deleted
        """

    @abstractmethod
    def update(self, record: ContainerRecord) -> bool:
        """Overwrite a registered record. Returns False if it is not registered."""

    @abstractmethod
    def get_all(self) -> dict[str, ContainerRecord]:
        """Return every registered record keyed by container ID."""

    @abstractmethod
    def increment_ref_count(self, container_id: str) -> int:
        """Increment and return the reference count of a container."""

    @abstractmethod
    def decrement_ref_count(self, container_id: str) -> int:
        """Decrement (never below zero) and return the reference count."""

    @abstractmethod
    def get_ref_count(self, container_id: str) -> int:
        """Return the reference count of a container."""

    @abstractmethod
    def acquire_reference(self, key: SandboxKey, container_id: str) -> bool:
        """
        Increment the reference count only while ``key`` is bound to
        ``container_id``.

        The check and the increment are one atomic step, so a caller can
        never take a reference on a container that a concurrent last
        release has just unbound.

        Returns:
            True if the reference was taken
        """

    @abstractmethod
    def remove_if_unreferenced(self, container_id: str) -> bool:
        """
        Delete a record only while its reference count is zero.

        Returns:
            True if this call deleted the record
        """

    @abstractmethod
    def acquire_creation_lease(self, key: SandboxKey, token: str, ttl_seconds: float) -> bool:
        """
        Claim the right to create the container for a key.

        A lease expires after ``ttl_seconds`` so a crashed holder cannot
        block the key forever. Re-acquiring with the same token refreshes
        it. A lease is not a registry entry.

        Returns:
            True if the caller now holds the lease
        """

    @abstractmethod
    def release_creation_lease(self, key: SandboxKey, token: str) -> None:
        """Drop a lease if it is still held with ``token``."""

    def remove(self, key: SandboxKey) -> bool:
        """Delete the record bound to a key. Returns True if one was deleted."""
        record = self.get(key)
        if record is None:
            return False
        return self.remove_by_container_id(record.container_id)

    def contains_key(self, key: SandboxKey) -> bool:
        return self.get(key) is not None

    def contains_container(self, container_id: str) -> bool:
        return self.get_by_container_id(container_id) is not None

    def get_ttl(self, container_id: str) -> float:
        """Seconds until the entry expires, or -1 if entries do not expire."""
        return -1

    def close(self) -> None:
        """Release client resources held by the registry."""

    def __len__(self) -> int:
        return len(self.get_all())


class LocalSandboxRegistry(SandboxRegistry):
    """
    In-process registry.

    All maps are guarded by one re-entrant lock. Records are copied on
    the way in and out so callers never share mutable state with the
    registry.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._key_to_id: dict[SandboxKey, str] = {}
        self._id_to_key: dict[str, SandboxKey] = {}
        self._records: dict[str, ContainerRecord] = {}
        self._ref_counts: dict[str, int] = {}
        self._leases: dict[SandboxKey, tuple[str, float]] = {}

    def add(self, key: SandboxKey, record: ContainerRecord) -> ContainerRecord:
        with self._lock:
            existing_id = self._key_to_id.get(key)
            if existing_id is not None and existing_id in self._records:
                logger.debug(f"Key {key} already bound to {existing_id[:12]}")
                return copy.deepcopy(self._records[existing_id])

            if record.container_id in self._id_to_key:
                raise ValueError(
                    f"Container {record.container_id} is already bound to "
                    f"{self._id_to_key[record.container_id]}"
                )

            self._key_to_id[key] = record.container_id
            self._id_to_key[record.container_id] = key
            self._records[record.container_id] = copy.deepcopy(record)
            self._ref_counts.setdefault(record.container_id, 0)

        logger.debug(f"Registered {record.container_id[:12]} for {key}")
        return copy.deepcopy(record)

    def get(self, key: SandboxKey) -> ContainerRecord | None:
        with self._lock:
            container_id = self._key_to_id.get(key)
            if container_id is None:
                return None
            record = self._records.get(container_id)
            return copy.deepcopy(record) if record is not None else None

    def get_by_container_id(self, container_id: str) -> ContainerRecord | None:
        with self._lock:
            record = self._records.get(container_id)
            return copy.deepcopy(record) if record is not None else None

    def key_for(self, container_id: str) -> SandboxKey | None:
        with self._lock:
            return self._id_to_key.get(container_id)

    def remove_by_container_id(self, container_id: str) -> bool:
        with self._lock:
            record = self._records.pop(container_id, None)
            key = self._id_to_key.pop(container_id, None)
            self._ref_counts.pop(container_id, None)
            if key is not None and self._key_to_id.get(key) == container_id:
                del self._key_to_id[key]

        if record is not None:
            logger.debug(f"Unregistered {container_id[:12]}")
        return record is not None

    def update(self, record: ContainerRecord) -> bool:
        with self._lock:
            if record.container_id not in self._records:
                return False
            self._records[record.container_id] = copy.deepcopy(record)
            return True

    def get_all(self) -> dict[str, ContainerRecord]:
        with self._lock:
            return {cid: copy.deepcopy(rec) for cid, rec in self._records.items()}

    def increment_ref_count(self, container_id: str) -> int:
        with self._lock:
            count = self._ref_counts.get(container_id, 0) + 1
            self._ref_counts[container_id] = count
            return count

    def decrement_ref_count(self, container_id: str) -> int:
        with self._lock:
            count = max(self._ref_counts.get(container_id, 0) - 1, 0)
            self._ref_counts[container_id] = count
            return count

    def get_ref_count(self, container_id: str) -> int:
        with self._lock:
            return self._ref_counts.get(container_id, 0)

    def acquire_reference(self, key: SandboxKey, container_id: str) -> bool:
        with self._lock:
            if self._key_to_id.get(key) != container_id or container_id not in self._records:
                return False
            self._ref_counts[container_id] = self._ref_counts.get(container_id, 0) + 1
            return True

    def remove_if_unreferenced(self, container_id: str) -> bool:
        with self._lock:
            if self._ref_counts.get(container_id, 0) > 0:
                return False
            return self.remove_by_container_id(container_id)

    def acquire_creation_lease(self, key: SandboxKey, token: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] != token and current[1] > now:
                return False
            self._leases[key] = (token, now + ttl_seconds)
            return True

    def release_creation_lease(self, key: SandboxKey, token: str) -> None:
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] == token:
                del self._leases[key]


def _text(value) -> str | None:
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisSandboxRegistry(SandboxRegistry):
    """
    Registry shared through Redis.

    Key layout (``<prefix>`` defaults to "llmbox:sandbox"):
        <prefix>:key_to_id:<user>:<session>:<type> -> container ID
        <prefix>:id_to_key:<container_id>          -> key as JSON
        <prefix>:id_to_model:<container_id>        -> record as JSON
        <prefix>:refs:<container_id>               -> reference count
        <prefix>:lease:<user>:<session>:<type>     -> lease token

    add() watches the key_to_id entry and writes all three mapping keys in
    one MULTI/EXEC transaction, so a key is either fully bound or not at
    all, and two processes racing on a fresh key cannot both win.

    When ``entry_ttl_seconds`` is set, entries expire unless accessed;
    reads refresh the expiry.
    """

    def __init__(
        self,
        client,
        key_prefix: str = "llmbox:sandbox",
        entry_ttl_seconds: int | None = None,
    ):
        """
        Args:
            client: redis.Redis client
            key_prefix: Namespace shared by cooperating managers
            entry_ttl_seconds: Optional expiry for registry entries
        """
        self._client = client
        self._prefix = key_prefix
        self._ttl = entry_ttl_seconds

    def _key_to_id(self, key: SandboxKey) -> str:
        return f"{self._prefix}:key_to_id:{key.storage_key()}"

    def _id_to_key(self, container_id: str) -> str:
        return f"{self._prefix}:id_to_key:{container_id}"

    def _id_to_model(self, container_id: str) -> str:
        return f"{self._prefix}:id_to_model:{container_id}"

    def _refs(self, container_id: str) -> str:
        return f"{self._prefix}:refs:{container_id}"

    def _lease(self, key: SandboxKey) -> str:
        return f"{self._prefix}:lease:{key.storage_key()}"

    def _touch(self, key: SandboxKey, container_id: str) -> None:
        if not self._ttl:
            return
        pipe = self._client.pipeline(transaction=False)
        pipe.expire(self._key_to_id(key), self._ttl)
        pipe.expire(self._id_to_key(container_id), self._ttl)
        pipe.expire(self._id_to_model(container_id), self._ttl)
        pipe.execute()

    def add(self, key: SandboxKey, record: ContainerRecord) -> ContainerRecord:
        mapping_key = self._key_to_id(key)

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(mapping_key)
                    existing_id = _text(pipe.get(mapping_key))
                    if existing_id is not None:
                        existing = self.get_by_container_id(existing_id)
                        if existing is not None:
                            pipe.reset()
                            logger.debug(f"Key {key} already bound to {existing_id[:12]}")
                            return existing
                        logger.warning(
                            f"Key {key} points at missing record {existing_id[:12]}, replacing"
                        )

                    pipe.multi()
                    pipe.set(mapping_key, record.container_id, ex=self._ttl)
                    pipe.set(
                        self._id_to_key(record.container_id),
                        json.dumps(key.to_dict()),
                        ex=self._ttl,
                    )
                    pipe.set(self._id_to_model(record.container_id), record.to_json(), ex=self._ttl)
                    pipe.set(self._refs(record.container_id), 0, nx=True)
                    pipe.execute()
                    break
                except WatchError:
                    logger.debug(f"Concurrent write on {key}, retrying registration")
                    continue

        logger.debug(f"Registered {record.container_id[:12]} for {key} in Redis")
        return record

    def get(self, key: SandboxKey) -> ContainerRecord | None:
        container_id = _text(self._client.get(self._key_to_id(key)))
        if container_id is None:
            return None
        record = self.get_by_container_id(container_id)
        if record is not None:
            self._touch(key, container_id)
        return record

    def get_by_container_id(self, container_id: str) -> ContainerRecord | None:
        payload = self._client.get(self._id_to_model(container_id))
        if payload is None:
            return None
        return ContainerRecord.from_json(payload)

    def key_for(self, container_id: str) -> SandboxKey | None:
        payload = self._client.get(self._id_to_key(container_id))
        if payload is None:
            return None
        return SandboxKey.from_dict(json.loads(payload))

    def remove_by_container_id(self, container_id: str) -> bool:
        return self._remove(container_id, only_unreferenced=False)

    def remove_if_unreferenced(self, container_id: str) -> bool:
        return self._remove(container_id, only_unreferenced=True)

    def _remove(self, container_id: str, only_unreferenced: bool) -> bool:
        key = self.key_for(container_id)
        model_key = self._id_to_model(container_id)
        refs_key = self._refs(container_id)

        with self._client.pipeline() as pipe:
            while True:
                try:
                    watched = [model_key, refs_key]
                    if key is not None:
                        watched.append(self._key_to_id(key))
                    pipe.watch(*watched)
                    existed = bool(pipe.exists(model_key))
                    if only_unreferenced and int(pipe.get(refs_key) or 0) > 0:
                        pipe.reset()
                        return False
                    bound_id = _text(pipe.get(self._key_to_id(key))) if key is not None else None

                    pipe.multi()
                    if bound_id == container_id:
                        pipe.delete(self._key_to_id(key))
                    pipe.delete(
                        self._id_to_key(container_id), model_key, refs_key
                    )
                    pipe.execute()
                    break
                except WatchError:
                    continue

        if existed:
            logger.debug(f"Unregistered {container_id[:12]} from Redis")
        return existed

    def update(self, record: ContainerRecord) -> bool:
        model_key = self._id_to_model(record.container_id)
        if self._ttl:
            written = self._client.set(model_key, record.to_json(), xx=True, ex=self._ttl)
        else:
            written = self._client.set(model_key, record.to_json(), xx=True)
        return bool(written)

    def get_all(self) -> dict[str, ContainerRecord]:
        records = {}
        pattern = self._id_to_model("*")
        for redis_key in self._client.scan_iter(match=pattern):
            payload = self._client.get(redis_key)
            if payload is None:
                continue
            record = ContainerRecord.from_json(payload)
            records[record.container_id] = record
        return records

    def increment_ref_count(self, container_id: str) -> int:
        return int(self._client.incr(self._refs(container_id)))

    def decrement_ref_count(self, container_id: str) -> int:
        count = int(self._client.decr(self._refs(container_id)))
        if count < 0:
            self._client.set(self._refs(container_id), 0)
            count = 0
        return count

    def get_ref_count(self, container_id: str) -> int:
        value = self._client.get(self._refs(container_id))
        return int(value) if value is not None else 0

    def acquire_reference(self, key: SandboxKey, container_id: str) -> bool:
        mapping_key = self._key_to_id(key)

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(mapping_key)
                    bound_id = _text(pipe.get(mapping_key))
                    if bound_id != container_id or not pipe.exists(
                        self._id_to_model(container_id)
                    ):
                        pipe.reset()
                        return False
                    pipe.multi()
                    pipe.incr(self._refs(container_id))
                    pipe.execute()
                    return True
                except WatchError:
                    continue

    def acquire_creation_lease(self, key: SandboxKey, token: str, ttl_seconds: float) -> bool:
        lease_key = self._lease(key)
        ttl_ms = max(int(ttl_seconds * 1000), 1)
        if self._client.set(lease_key, token, nx=True, px=ttl_ms):
            return True
        if _text(self._client.get(lease_key)) == token:
            self._client.pexpire(lease_key, ttl_ms)
            return True
        return False

    def release_creation_lease(self, key: SandboxKey, token: str) -> None:
        lease_key = self._lease(key)
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(lease_key)
                if _text(pipe.get(lease_key)) != token:
                    pipe.reset()
                    return
                pipe.multi()
                pipe.delete(lease_key)
                pipe.execute()
            except WatchError:
                # Someone else took the lease after ours expired
                pass

    def get_ttl(self, container_id: str) -> float:
        if not self._ttl:
            return -1
        return float(self._client.ttl(self._id_to_model(container_id)))

    def close(self) -> None:
        self._client.close()
