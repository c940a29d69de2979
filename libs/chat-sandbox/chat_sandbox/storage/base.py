"""Object storage contract used for snapshot archives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class StoredObject:
    """Listing entry for one stored object."""

    key: str
    size: int
    uploaded_at: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ObjectBody:
    """A fetched object: its listing info plus the full payload."""

    info: StoredObject
    data: bytes

    @property
    def key(self) -> str:
        return self.info.key

    @property
    def size(self) -> int:
        return len(self.data)


class MultipartUpload(ABC):
    """An in-progress upload assembled from ordered parts."""

    key: str

    @abstractmethod
    async def upload_part(self, part_number: int, data: bytes) -> None:
        """Upload part ``part_number`` (1-based)."""

    @abstractmethod
    async def complete(self) -> StoredObject:
        """Assemble the uploaded parts in part-number order."""

    @abstractmethod
    async def abort(self) -> None:
        """Discard every uploaded part."""


class ObjectStore(ABC):
    """Key/value blob store with prefix listing.

    Keys are opaque to the store; the snapshot layer owns their layout.
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, metadata: dict[str, str] | None = None) -> StoredObject: ...

    @abstractmethod
    async def get(self, key: str) -> ObjectBody | None:
        """Return the object, or None if ``key`` does not exist."""

    @abstractmethod
    async def list(self, prefix: str) -> list[StoredObject]: ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete ``key``; deleting a missing key is not an error."""

    @abstractmethod
    async def create_multipart_upload(self, key: str, metadata: dict[str, str] | None = None) -> MultipartUpload: ...
