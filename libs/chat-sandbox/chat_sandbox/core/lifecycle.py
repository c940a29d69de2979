"""Per-tenant orchestration of sandbox lifecycle operations.

The engine components below this layer are lock-free. This service holds one
``asyncio.Lock`` per sandbox key so a snapshot never races a restore or a
teardown on the same sandbox.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

import structlog

from chat_sandbox.config.core import CoreConfig
from chat_sandbox.models import (
    CreateSnapshotRequest,
    DeleteSnapshotRequest,
    DispatchRequest,
    EnsureRunningRequest,
    FactoryResetRequest,
    LifecycleRequest,
    ListSnapshotsRequest,
    PreviewSnapshotRequest,
    ResetRequest,
    RestartRequest,
    RestoreSnapshotRequest,
)
from chat_sandbox.storage import create_object_store
from chat_sandbox.storage.base import ObjectBody, StoredObject

from .background import BackgroundTasks
from .cache import EndpointCache
from .health import require_healthy
from .preview import PreviewEntry, list_entries_async, read_entry_async
from .restore import RestoreEngine, RestoreResult
from .sandbox import DaytonaProvider, SandboxHandle, SandboxProvider
from .snapshots import SnapshotResult, SnapshotStore
from .supervisor import DeliveryResult, EnsureRunningResult, ProcessSupervisor, StartupConfig
from .tenancy import Tenant

logger = structlog.get_logger(__name__)


@dataclass
class TeardownResult:
    """Outcome of restart, reset and factory reset.

    A failed pre-teardown snapshot is reported in ``snapshot_error`` and does
    not stop the teardown.
    """

    snapshot_key: str | None = None
    snapshot_error: str | None = None
    # Only set by factory reset, which brings the sandbox back up
    ready: bool | None = None
    pid: int | None = None
    restored_from: str | None = None
    startup_error: str | None = None


class SandboxLifecycle:
    def __init__(
        self,
        provider: SandboxProvider,
        store: SnapshotStore,
        config: CoreConfig | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.config = config or CoreConfig()
        self.provider = provider
        self.store = store
        self.restore_engine = RestoreEngine(store, self.config.snapshot, self.config.health)
        self.supervisor = ProcessSupervisor(self.config.server, self.config.provider, self.restore_engine)
        self.background = background or BackgroundTasks()
        self.endpoints: EndpointCache[str] = EndpointCache(self.config.cache.endpoint_ttl_seconds)
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(cls, config: CoreConfig) -> "SandboxLifecycle":
        """Daytona compute plus the configured object store."""
        store = SnapshotStore(create_object_store(config.storage), config.snapshot)
        return cls(DaytonaProvider(config.daytona), store, config)

    async def _sandbox(self, tenant: Tenant) -> SandboxHandle:
        return await self.provider.get(tenant.sandbox_key)

    # Snapshots

    async def create_snapshot(self, tenant: Tenant, reason: str = "manual") -> SnapshotResult:
        async with self._locks[tenant.sandbox_key]:
            return await self._create_snapshot(tenant, reason)

    async def _create_snapshot(self, tenant: Tenant, reason: str) -> SnapshotResult:
        sandbox = await self._sandbox(tenant)
        await require_healthy(sandbox, self.config.health)
        return await self.store.create(sandbox, tenant, reason=reason)

    async def list_snapshots(self, tenant: Tenant) -> list[StoredObject]:
        return await self.store.list(tenant)

    async def get_latest_snapshot(self, tenant: Tenant) -> StoredObject | None:
        return await self.store.get_latest(tenant)

    async def get_snapshot(self, tenant: Tenant, key: str) -> ObjectBody | None:
        return await self.store.get(tenant, key)

    async def delete_snapshots(self, tenant: Tenant, selector: str) -> list[str]:
        return await self.store.delete(tenant, selector)

    async def restore_snapshot(
        self,
        tenant: Tenant,
        snapshot_key: str | None = None,
        mark_as_latest: bool = False,
    ) -> RestoreResult | None:
        """Restore ``snapshot_key``, or the latest snapshot when it is None."""
        async with self._locks[tenant.sandbox_key]:
            if snapshot_key is None:
                latest = await self.store.get_latest(tenant)
                if latest is None:
                    return None
                snapshot_key = latest.key
            sandbox = await self._sandbox(tenant)
            try:
                return await self.restore_engine.restore(sandbox, tenant, snapshot_key, mark_as_latest)
            finally:
                # A failed extraction may already have cleared the directories
                self.endpoints.invalidate(tenant.sandbox_key)

    async def preview_snapshot(self, tenant: Tenant, snapshot_key: str, path: str = "/") -> list[PreviewEntry] | None:
        snapshot = await self.store.get(tenant, snapshot_key)
        if snapshot is None:
            return None
        return await list_entries_async(snapshot.data, path)

    async def read_snapshot_file(self, tenant: Tenant, snapshot_key: str, path: str) -> bytes | None:
        snapshot = await self.store.get(tenant, snapshot_key)
        if snapshot is None:
            return None
        return await read_entry_async(snapshot.data, path)

    def snapshot_on_idle(self, tenant: Tenant) -> asyncio.Task[Any]:
        """Snapshot in the background; failures are logged, never raised."""
        return self.background.spawn(f"idle-snapshot:{tenant.sandbox_key}", self.create_snapshot(tenant, "idle"))

    # Agent server

    async def ensure_running(self, tenant: Tenant, env: dict[str, str] | None = None) -> EnsureRunningResult:
        async with self._locks[tenant.sandbox_key]:
            return await self._ensure_running(tenant, env)

    async def _ensure_running(self, tenant: Tenant, env: dict[str, str] | None = None) -> EnsureRunningResult:
        sandbox = await self._sandbox(tenant)
        await require_healthy(sandbox, self.config.health)
        result = await self.supervisor.ensure_running(sandbox, StartupConfig(tenant=tenant, env=env or {}))
        if not result.already_running:
            self.endpoints.invalidate(tenant.sandbox_key)
        return result

    async def dispatch(self, tenant: Tenant, payload: dict[str, Any]) -> DeliveryResult:
        """Hand one unit of work to the tenant's agent server."""
        await self.ensure_running(tenant)
        sandbox = await self._sandbox(tenant)
        env = await self.supervisor.startup_env(sandbox, StartupConfig(tenant=tenant))
        return await self.supervisor.deliver(sandbox, payload, env)

    async def endpoint_url(self, tenant: Tenant, port: int | None = None) -> str:
        """Externally reachable URL for the agent server, cached per sandbox."""
        key = tenant.sandbox_key
        cached = self.endpoints.get(key)
        if cached is not None:
            return cached
        sandbox = await self._sandbox(tenant)
        url = await sandbox.endpoint_url(port or self.config.server.port)
        self.endpoints.set(key, url)
        return url

    # Teardown

    async def _teardown(self, tenant: Tenant, reason: str) -> TeardownResult:
        result = TeardownResult()
        try:
            snapshot = await self._create_snapshot(tenant, reason)
            result.snapshot_key = snapshot.key
        except Exception as e:
            logger.warning("Pre-teardown snapshot failed, continuing", chat_id=tenant.chat_id, reason=reason, error=str(e))
            result.snapshot_error = str(e)

        await self.provider.destroy(tenant.sandbox_key)
        self.endpoints.invalidate(tenant.sandbox_key)
        logger.info("Sandbox destroyed", chat_id=tenant.chat_id, reason=reason, snapshot_key=result.snapshot_key)
        return result

    async def restart(self, tenant: Tenant) -> TeardownResult:
        """Snapshot and destroy; the next message restores from that snapshot."""
        async with self._locks[tenant.sandbox_key]:
            return await self._teardown(tenant, "pre-restart")

    async def reset(self, tenant: Tenant) -> TeardownResult:
        async with self._locks[tenant.sandbox_key]:
            return await self._teardown(tenant, "pre-reset")

    async def factory_reset(self, tenant: Tenant) -> TeardownResult:
        """Snapshot, destroy, then bring a fresh sandbox straight back up."""
        async with self._locks[tenant.sandbox_key]:
            result = await self._teardown(tenant, "pre-factory-reset")
            try:
                started = await self._ensure_running(tenant)
                result.ready = True
                result.pid = started.pid
                result.restored_from = started.restored_from
            except Exception as e:
                logger.error("Auto-wake after factory reset failed", chat_id=tenant.chat_id, error=str(e))
                result.ready = False
                result.startup_error = str(e)
            return result

    # Request routing

    async def handle(self, request: LifecycleRequest) -> Any:
        """Run the operation a validated request names."""
        tenant = request.tenant
        match request:
            case CreateSnapshotRequest():
                return await self.create_snapshot(tenant, request.reason)
            case ListSnapshotsRequest():
                return await self.list_snapshots(tenant)
            case DeleteSnapshotRequest():
                return await self.delete_snapshots(tenant, request.selector)
            case RestoreSnapshotRequest():
                return await self.restore_snapshot(tenant, request.snapshot_key, request.mark_as_latest)
            case PreviewSnapshotRequest(file=True):
                return await self.read_snapshot_file(tenant, request.snapshot_key, request.path)
            case PreviewSnapshotRequest():
                return await self.preview_snapshot(tenant, request.snapshot_key, request.path)
            case EnsureRunningRequest():
                return await self.ensure_running(tenant)
            case DispatchRequest():
                return await self.dispatch(tenant, request.payload)
            case RestartRequest():
                return await self.restart(tenant)
            case ResetRequest():
                return await self.reset(tenant)
            case FactoryResetRequest():
                return await self.factory_reset(tenant)
        raise ValueError(f"Unhandled request type: {type(request).__name__}")
