"""Directory-backed object store with JSON metadata sidecars."""

from __future__ import annotations

import json
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from .base import MultipartUpload, ObjectBody, ObjectStore, StoredObject

META_SUFFIX = ".meta.json"
_STAGING_DIR = ".multipart"


class _FilesystemMultipartUpload(MultipartUpload):
    def __init__(self, store: "FilesystemObjectStore", key: str, metadata: dict[str, str]) -> None:
        self.key = key
        self._store = store
        self._metadata = metadata
        self._staging = store.root / _STAGING_DIR / uuid.uuid4().hex
        self._parts: set[int] = set()

    async def upload_part(self, part_number: int, data: bytes) -> None:
        await aiofiles.os.makedirs(self._staging, exist_ok=True)
        async with aiofiles.open(self._staging / f"{part_number:06d}", "wb") as f:
            await f.write(data)
        self._parts.add(part_number)

    async def complete(self) -> StoredObject:
        target = self._store._path(self.key)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        size = 0
        async with aiofiles.open(target, "wb") as out:
            for part_number in sorted(self._parts):
                async with aiofiles.open(self._staging / f"{part_number:06d}", "rb") as part:
                    data = await part.read()
                await out.write(data)
                size += len(data)
        info = await self._store._write_meta(self.key, size, self._metadata)
        await self.abort()
        return info

    async def abort(self) -> None:
        shutil.rmtree(self._staging, ignore_errors=True)
        self._parts.clear()


class FilesystemObjectStore(ObjectStore):
    """Stores each object at ``root/<key>`` with metadata in ``root/<key>.meta.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if not key or key.startswith("/") or any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"Invalid object key: {key!r}")
        if key.endswith(META_SUFFIX) or parts[0] == _STAGING_DIR:
            raise ValueError(f"Reserved object key: {key!r}")
        return self.root.joinpath(*parts)

    def _meta_path(self, key: str) -> Path:
        path = self._path(key)
        return path.with_name(path.name + META_SUFFIX)

    async def _write_meta(self, key: str, size: int, metadata: dict[str, str]) -> StoredObject:
        info = StoredObject(key=key, size=size, uploaded_at=datetime.now(tz=UTC), metadata=dict(metadata))
        record = {"size": size, "uploaded_at": info.uploaded_at.isoformat(), "metadata": info.metadata}
        async with aiofiles.open(self._meta_path(key), "w") as f:
            await f.write(json.dumps(record))
        return info

    async def _read_meta(self, key: str) -> StoredObject:
        meta_path = self._meta_path(key)
        if await aiofiles.os.path.exists(meta_path):
            async with aiofiles.open(meta_path) as f:
                record = json.loads(await f.read())
            return StoredObject(
                key=key,
                size=record["size"],
                uploaded_at=datetime.fromisoformat(record["uploaded_at"]),
                metadata=record.get("metadata", {}),
            )
        stat = await aiofiles.os.stat(self._path(key))
        return StoredObject(key=key, size=stat.st_size, uploaded_at=datetime.fromtimestamp(stat.st_mtime, tz=UTC))

    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> StoredObject:
        target = self._path(key)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(data)
        return await self._write_meta(key, len(data), metadata or {})

    async def get(self, key: str) -> ObjectBody | None:
        target = self._path(key)
        if not await aiofiles.os.path.isfile(target):
            return None
        async with aiofiles.open(target, "rb") as f:
            data = await f.read()
        return ObjectBody(info=await self._read_meta(key), data=data)

    async def list(self, prefix: str) -> list[StoredObject]:
        if not self.root.is_dir():
            return []
        objects = []
        for path in sorted(self.root.rglob("*")):
            relative = path.relative_to(self.root)
            if not path.is_file() or path.name.endswith(META_SUFFIX) or relative.parts[0] == _STAGING_DIR:
                continue
            key = relative.as_posix()
            if key.startswith(prefix):
                objects.append(await self._read_meta(key))
        return objects

    async def delete(self, key: str) -> None:
        for path in (self._path(key), self._meta_path(key)):
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)

    async def create_multipart_upload(self, key: str, metadata: dict[str, str] | None = None) -> MultipartUpload:
        self._path(key)
        return _FilesystemMultipartUpload(self, key, dict(metadata or {}))
