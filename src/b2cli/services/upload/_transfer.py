"""
Transfer helpers for upload service.

Part planning, incremental hashing of byte ranges and streaming request
bodies that re-hash exactly what is sent.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
from pathlib import Path
from typing import AsyncIterator, Callable

from b2cli.exceptions import UploadError, UploadFailure
from b2cli.models.api import PartRange, UploadTarget
from b2cli.services.upload._config import (
    DEFAULT_CHUNK_SIZE,
    MAX_FILE_NAME_BYTES,
    MAX_PART_COUNT,
)


def validate_file_name(name: str) -> None:
    """
    Raise ValueError if ``name`` is not a valid remote file name.
    """
    encoded = name.encode("utf-8")
    if not encoded:
        raise ValueError("file name too short (0 utf-8 bytes)")
    if len(encoded) > MAX_FILE_NAME_BYTES:
        raise ValueError(f"file name too long (more than {MAX_FILE_NAME_BYTES} utf-8 bytes)")
    if name.startswith("/"):
        raise ValueError("file names must not start with '/'")
    if name.endswith("/"):
        raise ValueError("file names must not end with '/'")
    if "\\" in name:
        raise ValueError("file names must not contain '\\'")
    if "//" in name:
        raise ValueError("file names must not contain '//'")
    if chr(127) in name or any(ord(c) < 32 for c in name):
        raise ValueError("file names must not contain control characters")


def plan_parts(size: int, part_size: int, minimum_part_size: int = 1) -> list[PartRange]:
    """
    Split ``size`` bytes into contiguous parts numbered from 1.

    Every part is ``part_size`` bytes except the last, which holds the
    remainder. The part size is raised when needed to respect the minimum part
    size and the server's part-count limit.
    """
    if size <= 0:
        raise ValueError("cannot split an empty file into parts")
    part_size = max(part_size, minimum_part_size, 1)
    if math.ceil(size / part_size) > MAX_PART_COUNT:
        part_size = math.ceil(size / MAX_PART_COUNT)

    parts = []
    offset = 0
    number = 1
    while offset < size:
        length = min(part_size, size - offset)
        parts.append(PartRange(part_number=number, offset=offset, length=length))
        offset += length
        number += 1
    return parts


def forced_part_size(size: int, minimum_part_size: int) -> int:
    """Part size for a file that fits in one part but must use the parts API."""
    return max(math.ceil(size / 2), minimum_part_size)


def hash_file_range(
    path: Path,
    offset: int = 0,
    length: int | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> str:
    """Hex SHA1 of ``length`` bytes at ``offset``, read incrementally."""
    sha1 = hashlib.sha1()
    with open(path, "rb") as f:
        f.seek(offset)
        remaining = length
        while remaining is None or remaining > 0:
            read_size = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = f.read(read_size)
            if not chunk:
                break
            sha1.update(chunk)
            if remaining is not None:
                remaining -= len(chunk)
    if remaining:
        raise OSError(f"{path} is shorter than expected ({remaining} bytes missing)")
    return sha1.hexdigest()


async def file_range_body(
    path: Path,
    offset: int,
    length: int,
    expected_sha1: str,
    file_name: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_chunk: Callable[[int], None] | None = None,
    part_number: int | None = None,
) -> AsyncIterator[bytes]:
    """
    Stream a byte range as a request body.

    Reads run in a worker thread. The bytes are hashed as they are sent; if
    the file changed since the hash was announced, the request is aborted
    with UploadError(LOCAL_READ).
    """
    sha1 = hashlib.sha1()
    remaining = length
    with open(path, "rb") as f:
        f.seek(offset)
        while remaining > 0:
            chunk = await asyncio.to_thread(f.read, min(chunk_size, remaining))
            if not chunk:
                raise UploadError(
                    UploadFailure.LOCAL_READ,
                    file_name,
                    detail="file shrank while uploading",
                    part_number=part_number,
                )
            sha1.update(chunk)
            remaining -= len(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
            yield chunk

    if sha1.hexdigest() != expected_sha1:
        raise UploadError(
            UploadFailure.LOCAL_READ,
            file_name,
            detail="file changed while uploading",
            part_number=part_number,
        )


class ProgressTracker:
    """Aggregate byte progress across parts; failed attempts are rewound."""

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None] | None = None,
    ) -> None:
        self.total = total
        self.transferred = 0
        self._callback = callback

    def advance(self, n: int) -> None:
        self.transferred += n
        if self._callback is not None:
            self._callback(self.transferred, self.total)

    def rewind(self, n: int) -> None:
        if n:
            self.transferred = max(0, self.transferred - n)
            if self._callback is not None:
                self._callback(self.transferred, self.total)


class UploadTargetPool:
    """
    Idle upload URLs for one bucket or large file.

    A target is checked out for one request at a time, returned after a
    success and dropped after a failure.
    """

    def __init__(self) -> None:
        self._idle: list[UploadTarget] = []

    def take(self) -> UploadTarget | None:
        return self._idle.pop() if self._idle else None

    def give_back(self, target: UploadTarget) -> None:
        self._idle.append(target)

    def __len__(self) -> int:
        return len(self._idle)
