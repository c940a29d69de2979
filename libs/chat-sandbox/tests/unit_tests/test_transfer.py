"""Tests for moving bytes into and out of a sandbox."""

import os

from chat_sandbox.config.core import MIB, SnapshotSettings
from chat_sandbox.core.transfer import choose_strategy, iter_file_chunks, read_bytes, write_bytes


def test_strategy_switches_exactly_at_threshold():
    settings = SnapshotSettings()

    assert settings.streaming_threshold == 25 * MIB
    assert choose_strategy(settings.streaming_threshold - 1, settings) == "buffered"
    assert choose_strategy(settings.streaming_threshold, settings) == "chunked"
    assert choose_strategy(settings.streaming_threshold + 1, settings) == "chunked"


async def test_buffered_write(local_sandbox, snapshot_settings, watched_root):
    data = os.urandom(4096) + b"\x00\x00"
    target = str(watched_root / "staging" / "out.bin")

    strategy = await write_bytes(local_sandbox, target, data, snapshot_settings)

    assert strategy == "buffered"
    assert (watched_root / "staging" / "out.bin").read_bytes() == data


async def test_chunked_write_reassembles_in_order(local_sandbox, snapshot_settings, watched_root):
    settings = snapshot_settings.model_copy(update={"streaming_threshold": 1000, "chunk_size": 999})
    data = os.urandom(5000)
    target = watched_root / "staging" / "out.bin"
    target.write_bytes(b"stale contents that must be overwritten")

    strategy = await write_bytes(local_sandbox, str(target), data, settings)

    assert strategy == "chunked"
    assert target.read_bytes() == data
    assert not (watched_root / "staging" / "out.bin.part").exists()


async def test_read_bytes(local_sandbox, watched_root):
    data = os.urandom(1234)
    (watched_root / "staging" / "in.bin").write_bytes(data)

    assert await read_bytes(local_sandbox, str(watched_root / "staging" / "in.bin")) == data


async def test_iter_file_chunks_splits_and_cleans_up(local_sandbox, snapshot_settings, watched_root):
    settings = snapshot_settings.model_copy(update={"chunk_size": 1024})
    data = os.urandom(3 * 1024 + 10)
    source = watched_root / "staging" / "big.bin"
    source.write_bytes(data)

    chunks = [chunk async for chunk in iter_file_chunks(local_sandbox, str(source), settings)]

    assert [len(c) for c in chunks] == [1024, 1024, 1024, 10]
    assert b"".join(chunks) == data
    assert not list((watched_root / "staging").glob("chunk_*"))
