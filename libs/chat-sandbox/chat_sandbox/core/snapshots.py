"""Snapshot store: tenant-scoped, timestamp-ordered archives in object storage."""

from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from chat_sandbox.config.core import SnapshotSettings
from chat_sandbox.storage.base import ObjectBody, ObjectStore, StoredObject

from .archive import ArchivePackager, PackageResult, remove_path
from .errors import TransferError
from .sandbox import SandboxHandle
from .tenancy import SnapshotClock, Tenant
from .transfer import choose_strategy, iter_file_chunks, read_bytes

logger = structlog.get_logger(__name__)

DELETE_ALL = "all"

# Object metadata keys. Lower-case and hyphenated because S3 folds user
# metadata keys to lower case.
META_CHAT_ID = "chat-id"
META_SENDER_ID = "sender-id"
META_IS_GROUP = "is-group"
META_CREATED_AT = "created-at"
META_REASON = "reason"
META_SIZE = "size-bytes"
META_DIRECTORIES = "directories"
META_RESTORED_FROM = "restored-from"
META_COPIED_FROM = "copied-from-timestamp"


@dataclass
class SnapshotResult:
    """Outcome of :meth:`SnapshotStore.create`.

    ``success=False`` only for the no-content case; upload failures raise.
    """

    success: bool
    key: str | None = None
    size: int = 0
    directories: list[str] = field(default_factory=list)
    streaming: bool = False
    parts: int = 1
    reason: str | None = None

    @classmethod
    def from_package(cls, package: PackageResult) -> "SnapshotResult":
        return cls(success=False, reason=package.reason)


def build_metadata(
    tenant: Tenant,
    reason: str,
    size: int,
    directories: list[str],
    created_at: datetime | None = None,
) -> dict[str, str]:
    return {
        META_CHAT_ID: tenant.chat_id,
        META_SENDER_ID: tenant.sender_id or "",
        META_IS_GROUP: "true" if tenant.is_group else "false",
        META_CREATED_AT: (created_at or datetime.now(tz=UTC)).isoformat(),
        META_REASON: reason,
        META_SIZE: str(size),
        META_DIRECTORIES: ",".join(directories),
    }


def recorded_directories(metadata: dict[str, str]) -> list[str]:
    """Directories an archive was built from, as recorded in its metadata."""
    return [d for d in metadata.get(META_DIRECTORIES, "").split(",") if d]


class SnapshotStore:
    """Creates, lists, fetches and deletes one tenant's snapshots.

    Every key is derived from :class:`Tenant`; reads of caller-supplied keys
    are checked against the caller's prefix first.
    """

    def __init__(
        self,
        object_store: ObjectStore,
        settings: SnapshotSettings | None = None,
        clock: SnapshotClock | None = None,
    ) -> None:
        self.object_store = object_store
        self.settings = settings or SnapshotSettings()
        self.clock = clock or SnapshotClock()
        self.packager = ArchivePackager(self.settings)

    def validate_access(self, tenant: Tenant, key: str) -> None:
        tenant.require_access(key)

    async def create(
        self,
        sandbox: SandboxHandle,
        tenant: Tenant,
        reason: str = "manual",
        directories: list[str] | None = None,
    ) -> SnapshotResult:
        """Package the sandbox's watched directories and upload the archive.

        Archives at or above ``streaming_threshold`` go up as a multipart
        upload; smaller ones in a single put. The on-instance archive is
        removed afterwards whether the upload succeeded or not.

        Returns:
            The new key and size, or a no-content result.

        Raises:
            ArchiveError: If packaging failed.
            TransferError: If reading or uploading the archive failed.
        """
        package = await self.packager.package(sandbox, directories)
        if not package.success:
            return SnapshotResult.from_package(package)

        key = tenant.new_snapshot_key(self.clock.now())
        metadata = build_metadata(tenant, reason, package.size, package.directories)
        streaming = choose_strategy(package.size, self.settings) == "chunked"
        logger.info(
            "Uploading snapshot",
            sandbox_key=sandbox.key,
            snapshot_key=key,
            size=package.size,
            streaming=streaming,
            reason=reason,
        )

        try:
            if streaming:
                parts = await self._upload_streaming(sandbox, key, package.path or self.settings.tmp_path, metadata)
            else:
                data = await read_bytes(sandbox, package.path or self.settings.tmp_path)
                await self._put(key, data, metadata)
                parts = 1
        finally:
            await remove_path(sandbox, self.settings.tmp_path, timeout=self.settings.quick_timeout)

        logger.info("Snapshot created", snapshot_key=key, size=package.size, parts=parts)
        return SnapshotResult(
            success=True,
            key=key,
            size=package.size,
            directories=package.directories,
            streaming=streaming,
            parts=parts,
        )

    async def _put(self, key: str, data: bytes, metadata: dict[str, str]) -> StoredObject:
        try:
            return await self.object_store.put(key, data, metadata)
        except Exception as e:
            raise TransferError(f"Failed to upload {key}: {e}") from e

    async def _upload_streaming(self, sandbox: SandboxHandle, key: str, path: str, metadata: dict[str, str]) -> int:
        try:
            upload = await self.object_store.create_multipart_upload(key, metadata)
        except Exception as e:
            raise TransferError(f"Failed to start multipart upload of {key}: {e}") from e

        part_number = 0
        try:
            async with aclosing(iter_file_chunks(sandbox, path, self.settings)) as chunks:
                async for chunk in chunks:
                    part_number += 1
                    await upload.upload_part(part_number, chunk)
                    logger.debug("Uploaded snapshot part", snapshot_key=key, part=part_number, size=len(chunk))
            await upload.complete()
        except Exception as e:
            try:
                await upload.abort()
            except Exception as abort_error:
                logger.warning("Failed to abort multipart upload", snapshot_key=key, error=str(abort_error))
            if isinstance(e, TransferError):
                raise
            raise TransferError(f"Multipart upload of {key} failed at part {part_number}: {e}") from e
        return part_number

    async def publish(
        self,
        tenant: Tenant,
        data: bytes,
        reason: str,
        directories: list[str],
        extra_metadata: dict[str, str] | None = None,
    ) -> str:
        """Store existing archive bytes under a fresh key for ``tenant``."""
        key = tenant.new_snapshot_key(self.clock.now())
        metadata = build_metadata(tenant, reason, len(data), directories)
        metadata.update(extra_metadata or {})
        await self._put(key, data, metadata)
        logger.info("Snapshot published", snapshot_key=key, size=len(data), reason=reason)
        return key

    async def get_latest(self, tenant: Tenant) -> StoredObject | None:
        """Return the newest snapshot for ``tenant``, or None if there is none.

        Keys embed a zero-padded timestamp, so the greatest key is the newest.
        """
        objects = await self.object_store.list(tenant.prefix)
        if not objects:
            logger.info("No snapshots found", prefix=tenant.prefix)
            return None
        return max(objects, key=lambda o: o.key)

    async def list(self, tenant: Tenant) -> list[StoredObject]:
        """All snapshots for ``tenant``, newest upload first."""
        objects = await self.object_store.list(tenant.prefix)
        return sorted(objects, key=lambda o: o.uploaded_at, reverse=True)

    async def get(self, tenant: Tenant, key: str) -> ObjectBody | None:
        """Fetch ``key`` after checking it belongs to ``tenant``.

        Raises:
            SnapshotAccessDeniedError: If ``key`` is outside the tenant prefix.
        """
        self.validate_access(tenant, key)
        return await self.object_store.get(key)

    async def delete(self, tenant: Tenant, selector: str) -> list[str]:
        """Delete one snapshot, or every snapshot of ``tenant`` for ``"all"``.

        Returns:
            The keys that were deleted.

        Raises:
            SnapshotAccessDeniedError: If a single key is outside the tenant prefix.
        """
        if selector == DELETE_ALL:
            keys = [o.key for o in await self.object_store.list(tenant.prefix)]
        else:
            self.validate_access(tenant, selector)
            keys = [selector]

        for key in keys:
            await self.object_store.delete(key)
        logger.info("Deleted snapshots", prefix=tenant.prefix, count=len(keys))
        return keys
