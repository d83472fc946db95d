# src/llmbox/manager.py
"""
Sandbox Manager: acquires, reuses, pools and tears down sandboxes.

The manager composes the building blocks of this package:
    - ContainerBackend: creates and drives containers on one substrate
    - PortAllocator: hands out host ports for backends that need them
    - SandboxRegistry: key -> live container record
    - SandboxPool: per sandbox type FIFO of warm, unbound containers
    - SandboxTypeRegistry: image and runtime defaults per sandbox type

Acquire flow:
    1. A live container already bound to the key is reused
    2. A stale binding (container stopped or gone) is pruned
    3. One caller per key wins a creation lease; the others wait for the
       winner's record to appear in the registry
    4. The winner checks out a matching pooled container, or creates one:
       ports, image, create, start. Only a confirmed container is registered
    5. The caller gets a Sandbox handle

Usage:
    >>> manager = SandboxManager(load_manager_config())
    >>> manager.start()
    >>> sandbox = manager.acquire("alice", "chat-1", "base")
    >>> sandbox.base_url
    'http://localhost:49152/fastapi'
    >>> sandbox.release()
    >>> manager.close()
"""

import atexit
import logging
import secrets
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .backends import ContainerBackend, create_backend
from .config import ManagerConfig, load_manager_config
from .exceptions import (
    CleanupError,
    ConfigError,
    ContainerNotFoundError,
    CreationFailedError,
    ImagePullError,
    PortExhaustedError,
    SandboxConnectionError,
    SandboxNotFoundError,
    SandboxNotStartedError,
)
from .logging_config import configure_logging, log_display
from .models import (
    ContainerRecord,
    ContainerState,
    ImageSpec,
    SandboxKey,
    VolumeBinding,
    is_live_status,
)
from .pool import LocalSandboxPool, RedisSandboxPool, SandboxPool
from .ports import LocalPortAllocator, PortAllocator, RedisPortAllocator
from .redis_client import create_redis_client
from .registry import LocalSandboxRegistry, RedisSandboxRegistry, SandboxRegistry
from .sandbox import Sandbox
from .sandbox_types import SandboxTypeConfig, SandboxTypeRegistry
from .storage import LocalWorkspaceStorage, WorkspaceStorage

logger = logging.getLogger(__name__)


class SandboxManager:
    """
    Orchestrates sandbox containers for (user, session, sandbox type) keys.

    Collaborators passed to the constructor are used as given; missing
    ones are built from the configuration (Redis-backed when
    ``config.redis.enabled``, in-process otherwise).

    All public methods are thread-safe. With the Redis-backed stores they
    are also safe across processes sharing the same Redis and key prefix.
    """

    def __init__(
        self,
        config: ManagerConfig | None = None,
        backend: ContainerBackend | None = None,
        registry: SandboxRegistry | None = None,
        pools: dict[str, SandboxPool] | None = None,
        port_allocator: PortAllocator | None = None,
        sandbox_types: SandboxTypeRegistry | None = None,
        redis_client=None,
        storage: WorkspaceStorage | None = None,
    ):
        """
        Args:
            config: Manager configuration (defaults when None)
            backend: Container backend; built from ``config.backend`` when None
            registry: Key -> record store
            pools: Warm pools by sandbox type; missing types get a new pool
            port_allocator: Host port allocator
            sandbox_types: Sandbox type catalogue
            redis_client: Shared redis.Redis client for the Redis-backed stores
            storage: Workspace storage mounts are seeded from and synced to

        Raises:
            SandboxConnectionError: If Redis is enabled but unreachable
            ConfigError: If configured sandbox types are invalid
        """
        self.config = config or ManagerConfig()

        needs_redis = self.config.redis.enabled and (
            registry is None or port_allocator is None or pools is None
        )
        if needs_redis and redis_client is None:
            redis_client = create_redis_client(
                self.config.redis.url, socket_timeout=self.config.redis.socket_timeout
            )
        self._redis = redis_client if self.config.redis.enabled else None

        self.backend = backend if backend is not None else create_backend(self.config)
        self.registry = registry if registry is not None else self._build_registry()
        self.port_allocator = (
            port_allocator if port_allocator is not None else self._build_port_allocator()
        )
        self.sandbox_types = (
            sandbox_types if sandbox_types is not None else self._build_sandbox_types()
        )

        self.storage = storage if storage is not None else LocalWorkspaceStorage()

        self._pools: dict[str, SandboxPool] = dict(pools or {})
        self._pools_lock = threading.Lock()

        self._state_lock = threading.Lock()
        self._started = False
        self._closed = False
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    def _build_registry(self) -> SandboxRegistry:
        if self._redis is not None:
            return RedisSandboxRegistry(
                self._redis,
                key_prefix=self.config.redis.key_prefix,
                entry_ttl_seconds=self.config.redis.entry_ttl_seconds,
            )
        return LocalSandboxRegistry()

    def _build_port_allocator(self) -> PortAllocator:
        if self._redis is not None:
            return RedisPortAllocator(
                self._redis,
                self.config.port_range,
                key_prefix=self.config.redis.key_prefix,
                check_host=self.config.port_check_host,
            )
        return LocalPortAllocator(self.config.port_range, check_host=self.config.port_check_host)

    def _build_sandbox_types(self) -> SandboxTypeRegistry:
        types = SandboxTypeRegistry.with_defaults()
        for name, data in self.config.sandbox_types.items():
            try:
                types.register(SandboxTypeConfig.from_dict(name, data))
            except ValueError as e:
                raise ConfigError(f"Invalid sandbox type '{name}': {e}", key=name) from e
        return types

    def _pool_for(self, sandbox_type: str) -> SandboxPool:
        with self._pools_lock:
            pool = self._pools.get(sandbox_type)
            if pool is None:
                if self._redis is not None:
                    pool = RedisSandboxPool(
                        self._redis, key_prefix=self.config.redis.key_prefix, name=sandbox_type
                    )
                else:
                    pool = LocalSandboxPool()
                self._pools[sandbox_type] = pool
            return pool

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_started(self) -> bool:
        return self._started

    def start(self) -> "SandboxManager":
        """
        Connect the backend, then warm the pool and start the expiry
        sweeper when configured.

        Raises:
            SandboxConnectionError: If the backend cannot be reached
        """
        with self._state_lock:
            if self._started:
                return self
            if self._closed:
                raise SandboxNotStartedError("Sandbox manager was closed")

            backend_type = self.backend.backend_type
            try:
                connected = self.backend.connect()
            except SandboxConnectionError:
                logger.error(f"Backend '{backend_type}' unreachable, manager not started")
                raise
            except Exception as e:
                raise SandboxConnectionError(
                    f"Failed to connect to backend '{backend_type}': {e}",
                    connection_type=backend_type,
                ) from e
            if not connected:
                raise SandboxConnectionError(
                    f"Backend '{backend_type}' refused the connection",
                    connection_type=backend_type,
                )
            self._started = True

        log_display(logger, logging.INFO, "Sandbox manager started with '%s' backend", backend_type)

        if self.config.pool.warm_on_start and self.config.pool.size > 0:
            self.warm_pool()
        if self.config.cleanup.ttl_sweep_enabled:
            self._start_sweeper()
        return self

    def close(self) -> None:
        """Stop the sweeper, remove all sandboxes (if configured) and release clients."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True

        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.config.cleanup.interval_seconds + 1)
            self._sweeper = None

        if self._started and self.config.cleanup.on_shutdown:
            self.cleanup_all_sandboxes()

        for closer in (
            self.backend.close,
            self.registry.close,
            self.port_allocator.close,
            *(pool.close for pool in self._pools.values()),
        ):
            try:
                closer()
            except Exception as e:
                logger.warning(f"Error while closing sandbox manager resources: {e}")

        self._started = False
        log_display(logger, logging.INFO, "Sandbox manager closed")

    def _ensure_started(self) -> None:
        if not self._started:
            raise SandboxNotStartedError()

    def __enter__(self) -> "SandboxManager":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    def acquire(
        self,
        user_id: str,
        session_id: str,
        sandbox_type: str | None = None,
        image_spec: ImageSpec | None = None,
        mount_dir: str | None = None,
        storage_path: str | None = None,
    ) -> Sandbox:
        """
        Return a handle to the sandbox bound to (user, session, type),
        creating it if needed.

        Concurrent calls for the same key create at most one container;
        every caller receives a handle to the same container.

        Args:
            user_id: Owner of the sandbox
            session_id: Session the sandbox belongs to
            sandbox_type: Sandbox type name (config default when None)
            image_spec: Optional overrides of the sandbox type defaults
            mount_dir: Host directory to mount as the working directory
                instead of a per-container one under ``volumes.mount_dir``
            storage_path: Storage location the working directory is seeded
                from and synced back to (``volumes.storage_path`` when None)

        Raises:
            PortExhaustedError: No host ports left
            ImagePullError: The image is missing and could not be pulled
            CreationFailedError: The backend failed to create or start the
                container, or the registry rejected it
        """
        self._ensure_started()
        sandbox_type = sandbox_type or self.config.default_sandbox_type
        key = SandboxKey(user_id, session_id, sandbox_type)
        spec = self.sandbox_types.resolve(sandbox_type, image_spec)
        storage_path = storage_path or self.config.volumes.storage_path

        token = uuid.uuid4().hex
        delay = self.config.lease.retry_interval
        while True:
            record = self._lookup_live(key)
            if record is not None:
                handle = self._bind_handle(key, record)
                if handle is not None:
                    logger.debug(f"Reusing sandbox {record.container_id[:12]} for {key}")
                    return handle
                # Released and unbound between lookup and bind; look again
                continue

            if self.registry.acquire_creation_lease(key, token, self.config.lease.ttl_seconds):
                try:
                    handle = self._create_for_key(key, spec, mount_dir, storage_path)
                finally:
                    self.registry.release_creation_lease(key, token)
                if handle is not None:
                    return handle
                continue

            time.sleep(delay)
            delay = min(delay * 2, self.config.lease.retry_max_interval)

    def _create_for_key(
        self,
        key: SandboxKey,
        spec: ImageSpec,
        mount_dir: str | None,
        storage_path: str | None,
    ) -> Sandbox | None:
        # Another caller may have registered between our lookup and the lease
        record = self._lookup_live(key)
        if record is not None:
            return self._bind_handle(key, record)

        record = None
        if mount_dir is None:
            record = self._checkout_from_pool(key.sandbox_type, spec, storage_path)
        if record is None:
            record = self._create_container(
                spec, key.sandbox_type, mount_dir=mount_dir, storage_path=storage_path
            )

        try:
            bound = self.registry.add(key, record)
        except Exception as e:
            logger.error(
                f"Failed to register sandbox {record.container_id[:12]} for {key}, "
                f"rolling back: {e}"
            )
            self._destroy_unregistered(record)
            raise CreationFailedError(
                f"Failed to register sandbox for {key}: {e}",
                details={"image": spec.image, "sandbox_type": key.sandbox_type},
                sandbox_id=record.container_id,
            ) from e

        if bound.container_id != record.container_id:
            logger.warning(
                f"{key} was bound to {bound.container_id[:12]} concurrently, "
                f"discarding {record.container_id[:12]}"
            )
            self._destroy_unregistered(record)
        else:
            logger.info(f"Bound sandbox {record.container_id[:12]} to {key}")
        return self._bind_handle(key, bound)

    def _bind_handle(self, key: SandboxKey, record: ContainerRecord) -> Sandbox | None:
        if not self.registry.acquire_reference(key, record.container_id):
            logger.debug(f"Sandbox {record.container_id[:12]} is no longer bound to {key}")
            return None
        return Sandbox(self, key, record)

    def _lookup_live(self, key: SandboxKey) -> ContainerRecord | None:
        """Return the record bound to ``key`` if its container is live, pruning it otherwise."""
        record = self.registry.get(key)
        if record is None:
            return None

        try:
            status = self.backend.get_container_status(record.container_id)
        except ContainerNotFoundError:
            status = "not_found"

        if is_live_status(status):
            if status != record.status:
                record.status = status
                self.registry.update(record)
            return record

        # Stopped containers are pruned too; a stopped sandbox is not restarted in place
        if self._unregister(record):
            logger.info(f"Pruned stale sandbox {record.container_id[:12]} for {key} ({status})")
            self._sync_to_storage(record)
            self._remove_quietly(record.container_id)
        return None

    def _pool_accepts(self, record: ContainerRecord, spec: ImageSpec, sandbox_type: str) -> bool:
        return record.image == spec.image and record.sandbox_type == sandbox_type

    def _checkout_from_pool(
        self, sandbox_type: str, spec: ImageSpec, storage_path: str | None = None
    ) -> ContainerRecord | None:
        pool = self._pool_for(sandbox_type)
        for _ in range(pool.size() + 1):
            record = pool.pop_if(lambda r: self._pool_accepts(r, spec, sandbox_type))
            if record is None:
                return None

            try:
                status = self.backend.get_container_status(record.container_id)
                if ContainerState.from_status(status) is not ContainerState.RUNNING:
                    self.backend.start_container(record.container_id)
                    status = self.backend.get_container_status(record.container_id)
            except ContainerNotFoundError:
                logger.warning(f"Pooled container {record.container_id[:12]} is gone, skipping")
                self.port_allocator.release(record.reserved_ports)
                continue
            except Exception as e:
                logger.warning(f"Discarding pooled container {record.container_id[:12]}: {e}")
                self._destroy_unregistered(record)
                continue

            if not is_live_status(status):
                logger.warning(
                    f"Pooled container {record.container_id[:12]} did not start ({status})"
                )
                self._destroy_unregistered(record)
                continue

            record.status = status
            if storage_path and record.mount_dir:
                self._seed_workspace(record.mount_dir, storage_path)
                record.storage_path = storage_path
            logger.debug(f"Checked out pooled container {record.container_id[:12]}")
            return record

        return None

    def _volume_bindings(
        self, session_id: str, mount_dir: str | None = None
    ) -> tuple[list[VolumeBinding], str | None]:
        volumes = self.config.volumes
        bindings: list[VolumeBinding] = []

        path = None
        if mount_dir:
            path = Path(mount_dir).expanduser().resolve()
        elif volumes.mount_dir:
            path = Path(volumes.mount_dir).expanduser().resolve() / session_id
        if path is not None:
            path.mkdir(parents=True, exist_ok=True)
            mount_dir = str(path)
            bindings.append(VolumeBinding(mount_dir, volumes.workdir, "rw"))

        for host_path, container_path in volumes.readonly_mounts.items():
            bindings.append(VolumeBinding(str(Path(host_path).expanduser()), container_path, "ro"))

        return bindings, mount_dir

    def _seed_workspace(self, mount_dir: str, storage_path: str) -> None:
        logger.info(f"Seeding {mount_dir} from storage {storage_path}")
        if not self.storage.download_folder(storage_path, mount_dir):
            logger.warning(f"Could not seed {mount_dir} from {storage_path}, starting empty")

    def _sync_to_storage(self, record: ContainerRecord) -> None:
        if not (record.mount_dir and record.storage_path):
            return
        logger.info(f"Syncing {record.mount_dir} back to storage {record.storage_path}")
        if not self.storage.upload_folder(record.mount_dir, record.storage_path):
            logger.warning(
                f"Could not sync workspace of {record.container_id[:12]} to {record.storage_path}"
            )

    def _create_container(
        self,
        spec: ImageSpec,
        sandbox_type: str,
        mount_dir: str | None = None,
        storage_path: str | None = None,
    ) -> ContainerRecord:
        """
        Create and start a container; nothing is registered here.

        On failure, reserved ports are released and a half-created
        container is removed before the error propagates.
        """
        session_id = uuid.uuid4().hex
        name = f"{self.config.container_prefix}-{session_id}".lower()
        runtime_token = secrets.token_hex(16)
        environment = {**spec.environment, "SECRET_TOKEN": runtime_token}

        bindings: list[VolumeBinding] = []
        if self.backend.supports_volumes:
            bindings, mount_dir = self._volume_bindings(session_id, mount_dir)
        else:
            mount_dir = None
        if mount_dir and storage_path:
            self._seed_workspace(mount_dir, storage_path)
        else:
            storage_path = None

        host_ports: list[int] = []
        if self.backend.uses_host_ports:
            host_ports = self.port_allocator.acquire(len(spec.container_ports))

        container_id = None
        try:
            self.backend.ensure_image_available(spec.image)
            result = self.backend.create_container(
                name,
                spec.image,
                spec.container_ports,
                bindings,
                environment,
                spec.runtime_config,
                host_ports=host_ports or None,
            )
            container_id = result.container_id
            self.backend.start_container(container_id)
        except ImagePullError:
            self.port_allocator.release(host_ports)
            raise
        except Exception as e:
            self.port_allocator.release(host_ports)
            if container_id is not None:
                self._remove_quietly(container_id)
            raise CreationFailedError(
                f"Failed to create sandbox from '{spec.image}': {e}",
                details={"image": spec.image, "sandbox_type": sandbox_type},
                sandbox_id=container_id,
            ) from e

        logger.info(f"Created sandbox {container_id[:12]} ({sandbox_type}, {spec.image})")
        return ContainerRecord(
            container_id=container_id,
            container_name=name,
            ports=list(result.ports),
            reserved_ports=host_ports,
            ip=result.ip,
            protocol=result.protocol,
            image=spec.image,
            sandbox_type=sandbox_type,
            session_id=session_id,
            runtime_token=runtime_token,
            mount_dir=mount_dir,
            storage_path=storage_path,
            labels=dict(spec.labels),
            status=ContainerState.RUNNING.value,
        )

    # ------------------------------------------------------------------
    # Release and teardown
    # ------------------------------------------------------------------

    def release(self, sandbox_id: str) -> bool:
        """
        Drop one reference to a sandbox.

        While other references remain the container keeps running. The
        last release unbinds the sandbox, then stops the container and
        returns it to the pool when there is room, or removes it and syncs
        its workspace to storage. Sandboxes with a storage path or a
        caller-chosen mount are never pooled. A caller that re-acquires the key
        before the unbind keeps the container running.

        Returns:
            True if the container was pooled or removed
        """
        self._ensure_started()
        record = self.registry.get_by_container_id(sandbox_id)
        if record is None:
            logger.warning(f"Release of unknown sandbox {sandbox_id[:12]}")
            return False

        remaining = self.registry.decrement_ref_count(sandbox_id)
        if remaining > 0:
            logger.debug(f"Sandbox {sandbox_id[:12]} still has {remaining} reference(s)")
            return False

        if not self.registry.remove_if_unreferenced(sandbox_id):
            logger.debug(f"Sandbox {sandbox_id[:12]} was re-acquired or removed concurrently")
            return False

        if self._should_pool(record):
            try:
                self.backend.stop_container(sandbox_id)
            except ContainerNotFoundError:
                self.port_allocator.release(record.reserved_ports)
                return True
            except Exception as e:
                logger.warning(f"Could not stop {sandbox_id[:12]} for pooling, removing: {e}")
            else:
                record.status = ContainerState.STOPPED.value
                self._pool_for(record.sandbox_type).enqueue(record)
                logger.info(f"Returned sandbox {sandbox_id[:12]} to the pool")
                return True

        try:
            self.backend.stop_and_remove_container(sandbox_id)
        finally:
            self.port_allocator.release(record.reserved_ports)
            self._sync_to_storage(record)
        logger.info(f"Stopped and removed sandbox {sandbox_id[:12]}")
        return True

    def _should_pool(self, record: ContainerRecord) -> bool:
        pool_config = self.config.pool
        if not pool_config.reuse_released or pool_config.size <= 0:
            return False
        if record.sandbox_type not in self.sandbox_types:
            return False
        if record.image != self.sandbox_types.image_for(record.sandbox_type):
            return False
        # Workspaces tied to a caller must not follow the container to another key
        if record.storage_path or not self._owns_mount(record):
            return False
        return self._pool_for(record.sandbox_type).size() < pool_config.size

    def _owns_mount(self, record: ContainerRecord) -> bool:
        """True if the record has no mount or one created under ``volumes.mount_dir``."""
        if not record.mount_dir:
            return True
        if not self.config.volumes.mount_dir:
            return False
        root = Path(self.config.volumes.mount_dir).expanduser().resolve()
        return Path(record.mount_dir).parent == root

    def _unregister(self, record: ContainerRecord) -> bool:
        # Ports are released only by whoever actually removed the entry
        if self.registry.remove_by_container_id(record.container_id):
            self.port_allocator.release(record.reserved_ports)
            return True
        return False

    def _remove_quietly(self, container_id: str) -> None:
        try:
            self.backend.remove_container(container_id)
        except ContainerNotFoundError:
            pass
        except Exception as e:
            logger.warning(f"Failed to remove container {container_id[:12]}: {e}")

    def _destroy_unregistered(self, record: ContainerRecord) -> bool:
        """Tear down a container that is not in the registry (pooled or discarded)."""
        try:
            self.backend.stop_and_remove_container(record.container_id)
            return True
        except Exception as e:
            error = CleanupError(
                f"Failed to remove container: {e}",
                resources_leaked=[record.container_id],
                sandbox_id=record.container_id,
            )
            logger.error(str(error))
            return False
        finally:
            self.port_allocator.release(record.reserved_ports)

    def _require_record(self, sandbox_id: str) -> ContainerRecord:
        record = self.registry.get_by_container_id(sandbox_id)
        if record is None:
            raise SandboxNotFoundError(sandbox_id=sandbox_id)
        return record

    def start_sandbox(self, sandbox_id: str) -> None:
        """Start a registered sandbox's container."""
        self._ensure_started()
        record = self._require_record(sandbox_id)
        self.backend.start_container(sandbox_id)
        record.status = ContainerState.RUNNING.value
        self.registry.update(record)

    def stop_sandbox(self, sandbox_id: str) -> None:
        """
        Stop a registered sandbox's container.

        A stopped sandbox is pruned, not restarted, by the next acquire of
        its key; use start_sandbox() to resume it in place.
        """
        self._ensure_started()
        record = self._require_record(sandbox_id)
        self.backend.stop_container(sandbox_id)
        record.status = ContainerState.STOPPED.value
        self.registry.update(record)

    def remove_sandbox(self, sandbox_id: str) -> bool:
        """Remove a sandbox's container and forget it."""
        self._ensure_started()
        record = self.registry.get_by_container_id(sandbox_id)
        if record is None:
            return False
        try:
            self.backend.remove_container(sandbox_id)
        except ContainerNotFoundError:
            pass
        finally:
            if self._unregister(record):
                self._sync_to_storage(record)
        return True

    def stop_and_remove_sandbox(self, sandbox_id: str) -> bool:
        """
        Stop and remove a sandbox, release its ports and forget it.

        The registry entry is removed even if the backend call fails; the
        backend error is re-raised afterwards.

        Returns:
            False if the sandbox is not registered
        """
        record = self.registry.get_by_container_id(sandbox_id)
        if record is None:
            logger.warning(f"Sandbox {sandbox_id[:12]} not registered, nothing to remove")
            return False
        try:
            self.backend.stop_and_remove_container(sandbox_id)
        finally:
            if self._unregister(record):
                self._sync_to_storage(record)
        logger.info(f"Stopped and removed sandbox {sandbox_id[:12]}")
        return True

    def cleanup_all_sandboxes(self) -> dict[str, bool]:
        """
        Remove every pooled and registered sandbox.

        Failures are logged per container and do not stop the sweep. The
        registry is empty afterwards.

        Returns:
            container ID -> whether its container was removed cleanly
        """
        results: dict[str, bool] = {}

        pool_types = set(self.config.pool.sandbox_types)
        with self._pools_lock:
            pool_types.update(self._pools)
        for sandbox_type in sorted(pool_types):
            for record in self._pool_for(sandbox_type).clear():
                results[record.container_id] = self._destroy_unregistered(record)

        for container_id in list(self.registry.get_all()):
            try:
                self.stop_and_remove_sandbox(container_id)
                results[container_id] = True
            except Exception as e:
                error = CleanupError(
                    f"Failed to clean up sandbox: {e}",
                    resources_leaked=[container_id],
                    sandbox_id=container_id,
                )
                logger.error(str(error))
                results[container_id] = False

        failed = sum(1 for ok in results.values() if not ok)
        logger.info(f"Cleaned up {len(results) - failed} sandbox(es), {failed} failure(s)")
        return results

    def cleanup_expired_sandboxes(self) -> list[str]:
        """
        Remove registered sandboxes whose registry entry is about to expire.

        Only meaningful with an expiring registry (Redis with
        ``entry_ttl_seconds``).

        Returns:
            IDs of the removed sandboxes
        """
        threshold = self.config.cleanup.expiry_threshold_seconds
        removed = []
        for container_id in list(self.registry.get_all()):
            ttl = self.registry.get_ttl(container_id)
            if not 0 <= ttl <= threshold:
                continue
            logger.info(f"Sandbox {container_id[:12]} expires in {ttl:.0f}s, removing")
            try:
                if self.stop_and_remove_sandbox(container_id):
                    removed.append(container_id)
            except Exception as e:
                logger.error(f"Failed to remove expiring sandbox {container_id[:12]}: {e}")
        return removed

    def _start_sweeper(self) -> None:
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="llmbox-expiry-sweeper", daemon=True
        )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        interval = self.config.cleanup.interval_seconds
        while not self._stop_event.wait(interval):
            try:
                self.cleanup_expired_sandboxes()
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    def warm_pool(self, sandbox_type: str | None = None, count: int | None = None) -> int:
        """
        Create containers until the pool of each pooled type holds ``count``
        (default ``pool.size``) entries.

        Creation errors are logged and stop warming that type.

        Returns:
            Number of containers created
        """
        self._ensure_started()
        target = self.config.pool.size if count is None else count
        types = [sandbox_type] if sandbox_type else list(self.config.pool.sandbox_types)

        created = 0
        for name in types:
            pool = self._pool_for(name)
            spec = self.sandbox_types.resolve(name)
            while pool.size() < target:
                try:
                    record = self._create_container(spec, name)
                except (CreationFailedError, ImagePullError, PortExhaustedError) as e:
                    logger.error(f"Stopped warming '{name}' pool: {e}")
                    break
                pool.enqueue(record)
                created += 1
            logger.info(f"Pool '{name}' holds {pool.size()} container(s)")
        return created

    def pool_sizes(self) -> dict[str, int]:
        with self._pools_lock:
            pools = dict(self._pools)
        return {name: pool.size() for name, pool in pools.items()}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_sandbox(
        self, user_id: str, session_id: str, sandbox_type: str | None = None
    ) -> ContainerRecord | None:
        """Return the record bound to a key without checking the backend."""
        key = SandboxKey(user_id, session_id, sandbox_type or self.config.default_sandbox_type)
        return self.registry.get(key)

    def get_sandbox_status(self, sandbox_id: str) -> str:
        """Backend status of a registered sandbox, or "not_found"."""
        if not self.registry.contains_container(sandbox_id):
            return "not_found"
        try:
            return self.backend.get_container_status(sandbox_id)
        except ContainerNotFoundError:
            return "not_found"

    def get_all_sandboxes(self) -> dict[str, ContainerRecord]:
        return self.registry.get_all()

    def get_info(self, identity: str) -> dict[str, Any]:
        """
        Describe a registered sandbox.

        Args:
            identity: Container ID, container name or runtime session id

        Raises:
            SandboxNotFoundError: If nothing matches
        """
        record = self.registry.get_by_container_id(identity)
        if record is None:
            for candidate in self.registry.get_all().values():
                if identity in (candidate.container_name, candidate.session_id):
                    record = candidate
                    break
        if record is None:
            raise SandboxNotFoundError(f"No sandbox matches '{identity}'")

        key = self.registry.key_for(record.container_id)
        info = record.to_dict()
        info.update(
            {
                "key": key.to_dict() if key is not None else None,
                "ref_count": self.registry.get_ref_count(record.container_id),
                "base_url": record.base_url,
            }
        )
        return info

    def get_stats(self) -> dict[str, Any]:
        return {
            "backend": self.backend.get_info(),
            "sandboxes": len(self.registry.get_all()),
            "pools": self.pool_sizes(),
            "ports_allocated": self.port_allocator.allocated_count(),
            "ports_available": self.port_allocator.available_count(),
        }


def register_shutdown_hook(manager: SandboxManager) -> Callable[[], None]:
    """
    Close ``manager`` when the interpreter exits.

    Returns:
        The registered callable, for atexit.unregister()
    """

    def _shutdown() -> None:
        try:
            manager.close()
        except Exception as e:
            logger.error(f"Error during sandbox manager shutdown: {e}")

    atexit.register(_shutdown)
    return _shutdown


def create_manager(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
    setup_logging: bool = False,
    start: bool = True,
    shutdown_hook: bool = False,
) -> SandboxManager:
    """
    Build a manager from the layered configuration.

    Args:
        config_path: TOML file (default: ~/.llmbox/config.toml)
        overrides: Runtime overrides merged last
        setup_logging: Install handlers from the [llmbox.logging] section
        start: Connect the backend before returning
        shutdown_hook: Close the manager at interpreter exit
    """
    config = load_manager_config(config_path, overrides)
    if setup_logging:
        configure_logging(config.logging)

    manager = SandboxManager(config)
    if start:
        manager.start()
    if shutdown_hook:
        register_shutdown_hook(manager)
    return manager
