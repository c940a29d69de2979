"""Sandbox lifecycle engine: health gate, snapshots, restore and process supervision."""

from .archive import ArchivePackager, PackageResult
from .background import BackgroundTasks
from .cache import EndpointCache
from .errors import (
    ArchiveError,
    RestoreError,
    RestoreStep,
    SandboxError,
    SandboxTransientError,
    SandboxUnavailableError,
    ServerStartupError,
    SnapshotAccessDeniedError,
    TenantKeyError,
    TransferError,
)
from .health import ensure_healthy, require_healthy
from .local import LocalProvider, LocalSandbox
from .restore import RestoreEngine, RestoreResult
from .sandbox import DaytonaProvider, DaytonaSandbox, ExecResult, SandboxHandle, SandboxProcess, SandboxProvider
from .snapshots import DELETE_ALL, SnapshotResult, SnapshotStore
from .supervisor import DeliveryResult, EnsureRunningResult, ProcessSupervisor, StartupConfig, build_startup_env
from .tenancy import SnapshotClock, Tenant, sandbox_key, snapshot_key, snapshot_prefix

__all__ = [
    "DELETE_ALL",
    "ArchiveError",
    "ArchivePackager",
    "BackgroundTasks",
    "DaytonaProvider",
    "DaytonaSandbox",
    "DeliveryResult",
    "EndpointCache",
    "EnsureRunningResult",
    "ExecResult",
    "LocalProvider",
    "LocalSandbox",
    "PackageResult",
    "ProcessSupervisor",
    "RestoreEngine",
    "RestoreError",
    "RestoreResult",
    "RestoreStep",
    "SandboxError",
    "SandboxHandle",
    "SandboxProcess",
    "SandboxProvider",
    "SandboxTransientError",
    "SandboxUnavailableError",
    "ServerStartupError",
    "SnapshotAccessDeniedError",
    "SnapshotClock",
    "SnapshotResult",
    "SnapshotStore",
    "StartupConfig",
    "Tenant",
    "TenantKeyError",
    "TransferError",
    "build_startup_env",
    "ensure_healthy",
    "require_healthy",
    "sandbox_key",
    "snapshot_key",
    "snapshot_prefix",
]
