"""Browse a snapshot archive without restoring it."""

import asyncio
import io
import posixpath
import tarfile
from dataclasses import dataclass

from .errors import ArchiveError


@dataclass
class PreviewEntry:
    name: str
    path: str
    is_dir: bool
    size: int


def _normalize(path: str) -> str:
    """Archive member form of ``path``: no leading slash, no trailing slash."""
    cleaned = posixpath.normpath("/" + path.strip()).lstrip("/")
    return "" if cleaned == "." else cleaned


def _member_name(member: tarfile.TarInfo) -> str:
    name = member.name.removeprefix("./")
    return name.lstrip("/").rstrip("/")


def _open(data: bytes) -> tarfile.TarFile:
    try:
        return tarfile.open(fileobj=io.BytesIO(data), mode="r:gz")
    except (tarfile.TarError, OSError) as e:
        raise ArchiveError("Snapshot archive is unreadable", str(e)) from e


def list_entries(data: bytes, path: str = "/") -> list[PreviewEntry]:
    """Immediate children of ``path`` inside the archive.

    Directories come first, then files, each group sorted by name. Parent
    directories that tar did not record as members are still listed.
    """
    base = _normalize(path)
    children: dict[str, PreviewEntry] = {}
    with _open(data) as archive:
        for member in archive.getmembers():
            name = _member_name(member)
            if base:
                if not name.startswith(base + "/"):
                    continue
                remainder = name[len(base) + 1 :]
            else:
                remainder = name
            if not remainder:
                continue
            head, _, rest = remainder.partition("/")
            child_path = f"{base}/{head}" if base else head
            if rest:
                children.setdefault(head, PreviewEntry(head, "/" + child_path, True, 0))
            else:
                children[head] = PreviewEntry(head, "/" + child_path, member.isdir(), member.size)
    return sorted(children.values(), key=lambda e: (not e.is_dir, e.name))


def read_entry(data: bytes, path: str) -> bytes | None:
    """Contents of the regular file at ``path``, or None if there is none."""
    target = _normalize(path)
    with _open(data) as archive:
        for member in archive.getmembers():
            if _member_name(member) == target and member.isfile():
                extracted = archive.extractfile(member)
                return extracted.read() if extracted else None
    return None


async def list_entries_async(data: bytes, path: str = "/") -> list[PreviewEntry]:
    return await asyncio.to_thread(list_entries, data, path)


async def read_entry_async(data: bytes, path: str) -> bytes | None:
    return await asyncio.to_thread(read_entry, data, path)
