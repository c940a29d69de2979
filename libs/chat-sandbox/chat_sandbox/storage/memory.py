"""In-process object store."""

from __future__ import annotations

from datetime import UTC, datetime

from .base import MultipartUpload, ObjectBody, ObjectStore, StoredObject


class _MemoryMultipartUpload(MultipartUpload):
    def __init__(self, store: "MemoryObjectStore", key: str, metadata: dict[str, str]) -> None:
        self.key = key
        self._store = store
        self._metadata = metadata
        self._parts: dict[int, bytes] = {}
        self._aborted = False

    async def upload_part(self, part_number: int, data: bytes) -> None:
        if self._aborted:
            raise RuntimeError(f"Multipart upload for {self.key} was aborted")
        self._parts[part_number] = bytes(data)

    async def complete(self) -> StoredObject:
        data = b"".join(self._parts[n] for n in sorted(self._parts))
        return await self._store.put(self.key, data, self._metadata)

    async def abort(self) -> None:
        self._aborted = True
        self._parts.clear()


class MemoryObjectStore(ObjectStore):
    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, StoredObject]] = {}

    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> StoredObject:
        info = StoredObject(key=key, size=len(data), uploaded_at=datetime.now(tz=UTC), metadata=dict(metadata or {}))
        self._objects[key] = (bytes(data), info)
        return info

    async def get(self, key: str) -> ObjectBody | None:
        entry = self._objects.get(key)
        if entry is None:
            return None
        data, info = entry
        return ObjectBody(info=info, data=data)

    async def list(self, prefix: str) -> list[StoredObject]:
        return [info for key, (_, info) in self._objects.items() if key.startswith(prefix)]

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)

    async def create_multipart_upload(self, key: str, metadata: dict[str, str] | None = None) -> MultipartUpload:
        return _MemoryMultipartUpload(self, key, dict(metadata or {}))
