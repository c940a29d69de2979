"""Snapshot restore engine.

One restore walks ``validating -> fetching -> health-checking -> writing ->
extracting -> (publishing-latest) -> done``. A failure at any step ends in
the ``failed`` state and names the step that was running.
"""

import shlex
from dataclasses import dataclass, field

import structlog

from chat_sandbox.config.core import HealthSettings, SnapshotSettings
from chat_sandbox.storage.base import ObjectBody

from .archive import exclude_flags, remove_path
from .errors import RestoreError, RestoreStep, SandboxUnavailableError, SnapshotAccessDeniedError
from .health import require_healthy
from .sandbox import SandboxHandle
from .snapshots import META_COPIED_FROM, META_RESTORED_FROM, SnapshotStore, recorded_directories
from .tenancy import Tenant
from .transfer import Strategy, write_bytes

logger = structlog.get_logger(__name__)

MARK_LATEST_REASON = "restore-mark-latest"


@dataclass
class RestoreResult:
    restored_from: str
    size: int
    strategy: Strategy
    directories: list[str] = field(default_factory=list)
    new_snapshot_key: str | None = None
    mark_as_latest_error: str | None = None


def _path_tests(patterns: list[str]) -> list[str]:
    tests = ["("]
    for i, pattern in enumerate(patterns):
        if i:
            tests.append("-o")
        tests.extend(["-path", pattern])
    tests.append(")")
    return tests


def clear_command(directories: list[str], excludes: list[str] | None = None) -> str:
    """Remove every entry, dotfiles included, under each directory.

    Paths matching ``excludes`` survive. Patterns match the way tar's
    unanchored ``--exclude`` does, against any trailing run of path
    components, so the clear keeps exactly what extraction will skip.
    Directories leading to a kept path are emptied instead of removed.
    """
    patterns = [p.strip("/") for p in excludes or [] if p.strip("/")]
    keep = [f"*/{p}" for p in patterns]
    parents = []
    for pattern in patterns:
        components = pattern.split("/")
        for depth in range(1, len(components)):
            parent = "*/" + "/".join(components[:depth])
            if parent not in keep and parent not in parents:
                parents.append(parent)

    expression = []
    if keep:
        expression += _path_tests(keep) + ["-prune", "-o"]
    if parents:
        expression += _path_tests(parents) + ["-o"]
    expression += ["-prune", "-exec", "rm", "-rf", "{}", "+"]

    clears = []
    for directory in directories:
        base = directory.rstrip("/") or "/"
        tokens = ["find", base, "-mindepth", "1", *expression]
        clears.append(" ".join(shlex.quote(t) for t in tokens) + " 2>/dev/null")
    return "; ".join(clears)


class RestoreEngine:
    """Rebuilds a sandbox's watched directories from a stored snapshot.

    The engine never recreates the sandbox; that would discard the files it
    just wrote. Callers invalidate cached endpoints afterwards.
    """

    def __init__(
        self,
        store: SnapshotStore,
        settings: SnapshotSettings | None = None,
        health: HealthSettings | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or store.settings
        self.health = health or HealthSettings()

    def extract_command(self, directories: list[str]) -> str:
        """Clear, extract and drop the temp archive as one chained shell step."""
        tmp = shlex.quote(self.settings.tmp_path)
        extract = f"cd {shlex.quote(self.settings.extract_root)} && tar -xzf {tmp}"
        if self.settings.restore_excludes:
            extract += " " + exclude_flags(self.settings.restore_excludes)
        extract += f" && rm -f {tmp}"
        clear = clear_command(directories, self.settings.restore_excludes)
        return f"{clear}; {extract}" if clear else extract

    async def restore(
        self,
        sandbox: SandboxHandle,
        tenant: Tenant,
        snapshot_key: str,
        mark_as_latest: bool = False,
    ) -> RestoreResult | None:
        """Restore ``snapshot_key`` into ``sandbox``.

        Returns:
            The restore result, or None when ``snapshot_key`` does not exist.

        Raises:
            SnapshotAccessDeniedError: If the key is outside the tenant prefix.
            SandboxUnavailableError: If the sandbox never passed the health gate.
            RestoreError: For any other failure, carrying the failed step.
        """
        step = RestoreStep.VALIDATING
        log = logger.bind(sandbox_key=sandbox.key, snapshot_key=snapshot_key)
        try:
            log.info("Restore step", step=step.value)
            self.store.validate_access(tenant, snapshot_key)

            step = RestoreStep.FETCHING
            log.info("Restore step", step=step.value)
            snapshot = await self.store.object_store.get(snapshot_key)
            if snapshot is None:
                log.info("Snapshot not found")
                return None

            step = RestoreStep.HEALTH_CHECKING
            log.info("Restore step", step=step.value, size=snapshot.size)
            await require_healthy(sandbox, self.health)

            return await self._apply(sandbox, tenant, snapshot, mark_as_latest, log)
        except (SnapshotAccessDeniedError, SandboxUnavailableError) as e:
            log.warning("Restore failed", step=step.value, error=str(e))
            raise
        except RestoreError as e:
            log.error("Restore failed", step=e.step.value, error=e.diagnostic)
            raise
        except Exception as e:
            log.error("Restore failed", step=step.value, error=str(e))
            raise RestoreError(step, str(e)) from e

    async def _apply(
        self,
        sandbox: SandboxHandle,
        tenant: Tenant,
        snapshot: ObjectBody,
        mark_as_latest: bool,
        log: structlog.typing.FilteringBoundLogger,
    ) -> RestoreResult:
        step = RestoreStep.WRITING
        log.info("Restore step", step=step.value)
        try:
            strategy = await write_bytes(sandbox, self.settings.tmp_path, snapshot.data, self.settings)
        except Exception as e:
            await remove_path(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)
            raise RestoreError(step, str(e)) from e

        step = RestoreStep.EXTRACTING
        directories = recorded_directories(snapshot.info.metadata) or list(self.settings.directories)
        log.info("Restore step", step=step.value, directories=directories)
        result = await sandbox.exec(self.extract_command(directories), timeout=self.settings.tar_timeout)
        if not result.success:
            # Watched directories may already be cleared at this point
            await remove_path(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)
            raise RestoreError(step, result.diagnostic or f"tar exited with code {result.exit_code}")

        await self._log_restored_contents(sandbox, directories, log)
        restored = RestoreResult(
            restored_from=snapshot.key,
            size=snapshot.size,
            strategy=strategy,
            directories=directories,
        )

        if mark_as_latest:
            step = RestoreStep.PUBLISHING_LATEST
            log.info("Restore step", step=step.value)
            try:
                restored.new_snapshot_key = await self.store.publish(
                    tenant,
                    snapshot.data,
                    reason=MARK_LATEST_REASON,
                    directories=directories,
                    extra_metadata={
                        META_RESTORED_FROM: snapshot.key,
                        META_COPIED_FROM: snapshot.info.uploaded_at.isoformat(),
                    },
                )
            except Exception as e:
                log.warning("Failed to mark restored snapshot as latest", error=str(e))
                restored.mark_as_latest_error = str(e)

        log.info("Restore step", step=RestoreStep.DONE.value, new_snapshot_key=restored.new_snapshot_key)
        return restored

    async def _log_restored_contents(
        self,
        sandbox: SandboxHandle,
        directories: list[str],
        log: structlog.typing.FilteringBoundLogger,
    ) -> None:
        for directory in directories:
            try:
                listing = await sandbox.exec(
                    f"ls -la {shlex.quote(directory)} 2>&1 | head -20",
                    timeout=self.settings.quick_timeout,
                )
                log.debug("Restored directory", directory=directory, listing=listing.stdout.strip())
            except Exception as e:
                log.warning("Could not list restored directory", directory=directory, error=str(e))

    async def restore_latest(self, sandbox: SandboxHandle, tenant: Tenant) -> RestoreResult | None:
        """Restore the tenant's newest snapshot; None if the tenant has none."""
        latest = await self.store.get_latest(tenant)
        if latest is None:
            return None
        return await self.restore(sandbox, tenant, latest.key)
