"""Move archive bytes into and out of a sandbox with a size-appropriate strategy.

Small payloads travel in one base64 call. Payloads at or above the streaming
threshold are split into chunk files so no single call carries more than
``chunk_size`` bytes.
"""

import shlex
from collections.abc import AsyncIterator
from typing import Literal

import structlog

from chat_sandbox.config.core import SnapshotSettings

from . import codec
from .archive import remove_path
from .errors import TransferError
from .sandbox import SandboxHandle

logger = structlog.get_logger(__name__)

Strategy = Literal["buffered", "chunked"]


def choose_strategy(size: int, settings: SnapshotSettings) -> Strategy:
    """Buffered strictly below the threshold, chunked at or above it."""
    return "chunked" if size >= settings.streaming_threshold else "buffered"


async def write_bytes(
    sandbox: SandboxHandle,
    path: str,
    data: bytes,
    settings: SnapshotSettings,
    strategy: Strategy | None = None,
) -> Strategy:
    """Write ``data`` to ``path`` inside the sandbox, overwriting it.

    Returns:
        The strategy that was used.

    Raises:
        TransferError: If any write or append fails. Chunk files are removed
            on a best-effort basis; ``path`` may be left truncated.
    """
    strategy = strategy or choose_strategy(len(data), settings)
    logger.info("Writing bytes into sandbox", sandbox_key=sandbox.key, path=path, size=len(data), strategy=strategy)
    if strategy == "buffered":
        try:
            await sandbox.write_file(path, codec.encode(data), encoding="base64")
        except Exception as e:
            raise TransferError(f"Failed to write {path}: {e}") from e
        return strategy

    await _write_chunked(sandbox, path, data, settings)
    return strategy


async def _write_chunked(sandbox: SandboxHandle, path: str, data: bytes, settings: SnapshotSettings) -> None:
    quoted = shlex.quote(path)
    truncate = await sandbox.exec(f": > {quoted}", timeout=settings.quick_timeout)
    if not truncate.success:
        raise TransferError(f"Failed to prepare {path}: {truncate.diagnostic}")

    chunk_path = f"{path}.part"
    parts = 0
    try:
        for parts, chunk in enumerate(codec.split_bytes(data, settings.chunk_size), start=1):
            await sandbox.write_file(chunk_path, codec.encode(chunk), encoding="base64")
            append = await sandbox.exec(
                f"cat {shlex.quote(chunk_path)} >> {quoted} && rm -f {shlex.quote(chunk_path)}",
                timeout=settings.tar_timeout,
            )
            if not append.success:
                raise TransferError(f"Failed to append chunk {parts} to {path}: {append.diagnostic}")
    except TransferError:
        await remove_path(sandbox, chunk_path, timeout=settings.quick_timeout)
        raise
    except Exception as e:
        await remove_path(sandbox, chunk_path, timeout=settings.quick_timeout)
        raise TransferError(f"Failed to write chunk {parts} of {path}: {e}") from e

    logger.debug("Chunked write complete", sandbox_key=sandbox.key, path=path, chunks=parts)


async def read_bytes(sandbox: SandboxHandle, path: str) -> bytes:
    """Read ``path`` from the sandbox in one base64 call."""
    try:
        encoded = await sandbox.read_file(path, encoding="base64")
        return codec.decode(encoded)
    except Exception as e:
        raise TransferError(f"Failed to read {path}: {e}") from e


async def iter_file_chunks(sandbox: SandboxHandle, path: str, settings: SnapshotSettings) -> AsyncIterator[bytes]:
    """Yield ``path`` in order as chunks of at most ``settings.chunk_size`` bytes.

    The file is split inside the sandbox with ``split -b``; chunk files are
    removed when iteration ends, whether it finished or not.
    """
    prefix = settings.chunk_prefix
    chunk_glob = f"{shlex.quote(prefix)}*"
    try:
        await sandbox.exec(f"rm -f {chunk_glob}", timeout=settings.quick_timeout)
        split = await sandbox.exec(
            f"split -b {settings.chunk_size} -d -a 5 {shlex.quote(path)} {shlex.quote(prefix)}",
            timeout=settings.split_timeout,
        )
        if not split.success:
            raise TransferError(f"Failed to split {path}: {split.diagnostic}")

        listing = await sandbox.exec(f"ls -1 {chunk_glob}", timeout=settings.quick_timeout)
        chunk_files = sorted(line.strip() for line in listing.stdout.splitlines() if line.strip())
        if not listing.success or not chunk_files:
            raise TransferError(f"No chunks produced for {path}: {listing.diagnostic}")

        logger.debug("Reading archive in chunks", sandbox_key=sandbox.key, path=path, chunks=len(chunk_files))
        for chunk_file in chunk_files:
            yield await read_bytes(sandbox, chunk_file)
    finally:
        try:
            await sandbox.exec(f"rm -f {chunk_glob}", timeout=settings.quick_timeout)
        except Exception as e:
            logger.warning("Failed to remove chunk files", sandbox_key=sandbox.key, prefix=prefix, error=str(e))
