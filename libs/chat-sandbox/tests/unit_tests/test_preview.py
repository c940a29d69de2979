"""Tests for snapshot archive preview."""

import io
import tarfile

import pytest

from chat_sandbox.core.errors import ArchiveError
from chat_sandbox.core.preview import list_entries, list_entries_async, read_entry, read_entry_async


def _archive(files: dict[str, bytes], dirs: tuple[str, ...] = ()) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            archive.addfile(info)
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def archive() -> bytes:
    return _archive(
        {
            "workspace/zeta.txt": b"z",
            "workspace/alpha.txt": b"alpha",
            "workspace/src/main.py": b"print(1)",
            "home/claude/.bashrc": b"alias x=y",
        },
        dirs=("workspace", "workspace/src"),
    )


def test_root_listing(archive):
    entries = list_entries(archive, "/")

    assert [(e.name, e.is_dir) for e in entries] == [("home", True), ("workspace", True)]


def test_directories_first_then_alphabetical(archive):
    entries = list_entries(archive, "/workspace")

    assert [e.name for e in entries] == ["src", "alpha.txt", "zeta.txt"]
    assert entries[0].path == "/workspace/src"
    assert entries[1].size == 5


def test_implicit_parent_directories_are_listed(archive):
    assert [e.name for e in list_entries(archive, "/home")] == ["claude"]
    assert [e.name for e in list_entries(archive, "home/claude/")] == [".bashrc"]


def test_read_entry(archive):
    assert read_entry(archive, "/workspace/src/main.py") == b"print(1)"
    assert read_entry(archive, "/workspace/missing.txt") is None
    assert read_entry(archive, "/workspace/src") is None


def test_unreadable_archive():
    with pytest.raises(ArchiveError):
        list_entries(b"not an archive")


async def test_async_wrappers(archive):
    assert [e.name for e in await list_entries_async(archive, "/workspace/src")] == ["main.py"]
    assert await read_entry_async(archive, "home/claude/.bashrc") == b"alias x=y"
