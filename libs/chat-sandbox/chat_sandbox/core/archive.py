"""Archive packager: one compressed tarball of a sandbox's mutable directories."""

import shlex
from dataclasses import dataclass, field

import structlog

from chat_sandbox.config.core import SnapshotSettings

from .errors import ArchiveError, TransferError
from .sandbox import SandboxHandle

logger = structlog.get_logger(__name__)

NO_CONTENT = "no-content"


@dataclass
class PackageResult:
    """Outcome of packaging.

    ``success=False`` with ``reason="no-content"`` means every candidate
    directory was absent or empty; callers treat it as a no-op.
    """

    success: bool
    path: str | None = None
    size: int = 0
    directories: list[str] = field(default_factory=list)
    reason: str | None = None

    @property
    def no_content(self) -> bool:
        return not self.success and self.reason == NO_CONTENT


def exclude_flags(patterns: list[str]) -> str:
    return " ".join(f"--exclude={shlex.quote(p)}" for p in patterns)


async def file_size(sandbox: SandboxHandle, path: str, timeout: float = 5.0) -> int:
    """Return the size in bytes of ``path`` inside the sandbox.

    Raises:
        TransferError: If the file cannot be stat'ed.
    """
    result = await sandbox.exec(f"stat -c %s {shlex.quote(path)}", timeout=timeout)
    size_text = result.stdout.strip()
    if not result.success or not size_text.isdigit():
        raise TransferError(f"Failed to get file size of {path}: {result.diagnostic}")
    return int(size_text)


async def remove_path(sandbox: SandboxHandle, *paths: str, timeout: float = 5.0) -> None:
    """Best-effort ``rm -f``; failures are logged and swallowed."""
    if not paths:
        return
    try:
        await sandbox.exec("rm -f " + " ".join(shlex.quote(p) for p in paths), timeout=timeout)
    except Exception as e:
        logger.warning("Failed to remove temp files", sandbox_key=sandbox.key, paths=list(paths), error=str(e))


class ArchivePackager:
    """Builds the snapshot archive inside the sandbox at ``settings.tmp_path``."""

    def __init__(self, settings: SnapshotSettings) -> None:
        self.settings = settings

    async def find_snapshot_dirs(self, sandbox: SandboxHandle, directories: list[str] | None = None) -> list[str]:
        """Return the candidate directories that exist and are non-empty, in order."""
        qualifying = []
        for directory in directories or self.settings.directories:
            quoted = shlex.quote(directory)
            result = await sandbox.exec(f"test -d {quoted} && ls -A {quoted}", timeout=self.settings.quick_timeout)
            if result.exit_code == 0 and result.stdout.strip():
                qualifying.append(directory)
        return qualifying

    def build_command(self, directories: list[str]) -> str:
        parts = ["tar", "-czf", shlex.quote(self.settings.tmp_path)]
        if self.settings.create_excludes:
            parts.append(exclude_flags(self.settings.create_excludes))
        parts.extend(shlex.quote(d) for d in directories)
        return " ".join(parts)

    async def package(self, sandbox: SandboxHandle, directories: list[str] | None = None) -> PackageResult:
        """Archive every qualifying directory in a single tar invocation.

        Returns:
            ``PackageResult`` with the archive path and size, or a no-content
            result when nothing qualified.

        Raises:
            ArchiveError: If tar exits non-zero. The partial archive is removed.
            TransferError: If the finished archive cannot be sized.
        """
        dirs_to_backup = await self.find_snapshot_dirs(sandbox, directories)
        if not dirs_to_backup:
            logger.info("No content to snapshot", sandbox_key=sandbox.key)
            return PackageResult(success=False, reason=NO_CONTENT)

        command = self.build_command(dirs_to_backup)
        logger.info("Creating snapshot archive", sandbox_key=sandbox.key, directories=dirs_to_backup)
        result = await sandbox.exec(command, timeout=self.settings.tar_timeout)
        if result.exit_code != 0:
            await remove_path(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)
            raise ArchiveError("tar failed", result.diagnostic)

        try:
            size = await file_size(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)
        except TransferError:
            await remove_path(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)
            raise

        logger.info("Snapshot archive ready", sandbox_key=sandbox.key, size=size)
        return PackageResult(success=True, path=self.settings.tmp_path, size=size, directories=dirs_to_backup)
