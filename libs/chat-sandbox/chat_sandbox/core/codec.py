"""Chunked base64 codec for moving binary payloads through size-limited calls.

Sandbox file APIs accept text payloads and choke on very large single
arguments, so both directions walk the input in bounded chunks and join the
pieces instead of handing the whole payload to one call.
"""

import base64
import binascii
from collections.abc import Iterator

# Largest multiple of 3 that fits in 32 KiB, so encoded chunks never need padding
# except at the very end and can be concatenated directly.
ENCODE_CHUNK_SIZE = 32 * 1024 // 3 * 3
# Multiple of 4, so every decode chunk is a whole number of base64 quanta.
DECODE_CHUNK_SIZE = 32 * 1024


def iter_encoded_chunks(data: bytes, chunk_size: int = ENCODE_CHUNK_SIZE) -> Iterator[str]:
    """Yield base64 text for ``data`` one bounded chunk at a time."""
    if chunk_size <= 0 or chunk_size % 3:
        raise ValueError(f"encode chunk size must be a positive multiple of 3, got {chunk_size}")
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield base64.b64encode(view[start : start + chunk_size]).decode("ascii")


def encode(data: bytes, chunk_size: int = ENCODE_CHUNK_SIZE) -> str:
    """Encode bytes to base64 text without a single call over the full payload."""
    return "".join(iter_encoded_chunks(data, chunk_size))


def decode(encoded: str, chunk_size: int = DECODE_CHUNK_SIZE) -> bytes:
    """Decode base64 text produced by :func:`encode` (or any standard encoder).

    Whitespace such as line breaks from ``base64`` CLI output is ignored.

    Raises:
        ValueError: If the input is not valid base64.
    """
    if chunk_size <= 0 or chunk_size % 4:
        raise ValueError(f"decode chunk size must be a positive multiple of 4, got {chunk_size}")
    compact = "".join(encoded.split())
    if len(compact) % 4:
        raise ValueError("base64 input length is not a multiple of 4")
    out = bytearray()
    try:
        for start in range(0, len(compact), chunk_size):
            out += base64.b64decode(compact[start : start + chunk_size], validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 input: {e}") from e
    return bytes(out)


def split_bytes(data: bytes, chunk_size: int) -> Iterator[bytes]:
    """Yield consecutive slices of ``data`` no longer than ``chunk_size``."""
    if chunk_size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(data), chunk_size):
        yield data[start : start + chunk_size]
