"""
Asynchronous upload service.

Small files go up in a single request. Files larger than the part size use
the large-file protocol: start, upload parts in parallel, finish. A large
file that cannot be finished is cancelled so no unfinished upload is left
behind.
"""

from __future__ import annotations

import asyncio
import mimetypes
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import quote

from b2cli.exceptions import (
    RetryExhaustedError,
    TransportError,
    UploadError,
    UploadFailure,
)
from b2cli.logging import get_logger
from b2cli.models.api import (
    FileVersion,
    PartRange,
    UploadedPart,
    UploadSession,
    UploadTarget,
)
from b2cli.services.base import BaseService
from b2cli.services.upload._config import (
    AUTO_CONTENT_TYPE,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_UPLOAD_THREADS,
    MIN_PART_COUNT,
)
from b2cli.services.upload._models import UploadResult, UploadStats
from b2cli.services.upload._transfer import (
    ProgressTracker,
    UploadTargetPool,
    file_range_body,
    forced_part_size,
    hash_file_range,
    plan_parts,
    validate_file_name,
)
from b2cli.transport.http import parse_reply, read_json
from b2cli.transport.retry import RetryPolicy

if TYPE_CHECKING:
    from b2cli.transport.http import AsyncTransport

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]


class UploadService(BaseService):
    """
    Upload engine.

    Example:
        >>> result = await client.upload.upload_file(
        ...     Path("./backup.tar"), bucket_id, "backups/backup.tar"
        ... )
        >>> print(result)
    """

    def __init__(
        self,
        transport: AsyncTransport,
        *,
        retry: RetryPolicy | None = None,
        threads: int = DEFAULT_UPLOAD_THREADS,
        part_size: int | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(transport)
        self._retry = retry or RetryPolicy()
        self._threads = threads
        self._part_size = part_size
        self._chunk_size = chunk_size

    def configure(
        self,
        threads: int | None = None,
        part_size: int | None = None,
        chunk_size: int | None = None,
    ) -> None:
        """
        Configure upload settings.

        Args:
            threads: Parallel part uploads for large files.
            part_size: Part size override (bytes); defaults to the server's
                recommended part size.
            chunk_size: Read/hash chunk size (bytes).
        """
        if threads is not None:
            self._threads = threads
        if part_size is not None:
            self._part_size = part_size
        if chunk_size is not None:
            self._chunk_size = chunk_size

    async def upload_file(
        self,
        local_path: Path,
        bucket_id: str,
        dest_name: str | None = None,
        *,
        content_type: str | None = None,
        force_parts: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """
        Upload one local file.

        Args:
            local_path: File to upload.
            bucket_id: Destination bucket id.
            dest_name: Remote file name (defaults to the local file name).
            content_type: MIME type; guessed from the name when omitted.
            force_parts: Use the large-file protocol regardless of size.
            on_progress: Callback(transferred, total).

        Returns:
            UploadResult with the new file version.

        Raises:
            UploadError: Local read failure, a failed part or a spent retry budget.
        """
        local_path = Path(local_path)
        name = dest_name or local_path.name
        try:
            validate_file_name(name)
        except ValueError as e:
            raise UploadError(UploadFailure.LOCAL_READ, name, detail=str(e)) from e

        try:
            if not local_path.is_file():
                raise OSError(f"{local_path} is not a file")
            size = local_path.stat().st_size
        except OSError as e:
            raise UploadError(
                UploadFailure.LOCAL_READ, name, detail=str(e), cause=e
            ) from e

        content_type = content_type or guess_content_type(name)
        session = await self._transport.session()
        part_size = self._part_size or session.recommended_part_size
        minimum = session.absolute_minimum_part_size

        stats = UploadStats()
        progress = ProgressTracker(size, on_progress)
        started = time.perf_counter()

        use_parts = size > part_size
        if force_parts and not use_parts:
            part_size = forced_part_size(size, minimum)
            use_parts = size > part_size
            if not use_parts:
                logger.warning(
                    f"{name} is too small for the parts API ({size:,} bytes); "
                    "uploading in a single request"
                )

        if use_parts:
            logger.debug(f"Uploading {name} as parts of {part_size:,} bytes")
            file, sha1 = await self._upload_large(
                local_path, bucket_id, name, size, content_type, part_size, minimum,
                progress, stats,
            )
        else:
            file, sha1 = await self._upload_small(
                local_path, bucket_id, name, size, content_type, progress, stats
            )

        stats.bytes_sent = size
        return UploadResult(
            file=file,
            local_path=local_path,
            bucket_id=bucket_id,
            size=size,
            sha1=sha1,
            stats=stats,
            elapsed_seconds=time.perf_counter() - started,
        )

    async def upload_directory(
        self,
        local_dir: Path,
        bucket_id: str,
        dest_prefix: str | None = None,
        *,
        content_type: str | None = None,
        force_parts: bool = False,
        on_file: Callable[[Path, str], None] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[UploadResult]:
        """
        Upload every regular file below ``local_dir``.

        Remote names are ``<dest_prefix or directory name>/<relative path>``.
        Files are uploaded one after another; the first error stops the walk.
        """
        local_dir = Path(local_dir)
        if not local_dir.is_dir():
            raise UploadError(
                UploadFailure.LOCAL_READ, str(local_dir), detail="not a directory"
            )
        prefix = (dest_prefix or local_dir.resolve().name).strip("/")

        results = []
        for path in sorted(iter_files(local_dir)):
            relative = path.relative_to(local_dir).as_posix()
            name = f"{prefix}/{relative}" if prefix else relative
            if on_file is not None:
                on_file(path, name)
            results.append(
                await self.upload_file(
                    path,
                    bucket_id,
                    name,
                    content_type=content_type,
                    force_parts=force_parts,
                    on_progress=on_progress,
                )
            )
        return results

    # =========================================================================
    # Single request
    # =========================================================================

    async def _upload_small(
        self,
        path: Path,
        bucket_id: str,
        name: str,
        size: int,
        content_type: str,
        progress: ProgressTracker,
        stats: UploadStats,
    ) -> tuple[FileVersion, str]:
        sha1 = await self._hash(path, name, 0, size)
        targets = UploadTargetPool()

        async def attempt() -> dict[str, Any]:
            target = targets.take() or await self._get_upload_url(bucket_id)
            sent = 0

            def on_chunk(n: int) -> None:
                nonlocal sent
                sent += n
                progress.advance(n)

            headers = {
                "Authorization": target.authorization_token,
                "X-Bz-File-Name": quote(name, safe="/"),
                "Content-Type": content_type,
                "Content-Length": str(size),
                "X-Bz-Content-Sha1": sha1,
            }
            body = file_range_body(
                path, 0, size, sha1, name, self._chunk_size, on_chunk=on_chunk
            )
            try:
                response = await self._transport.send(
                    "POST", target.upload_url, headers=headers, content=body, authorize=False
                )
            except BaseException:
                progress.rewind(sent)
                raise
            finally:
                await body.aclose()
            targets.give_back(target)
            return read_json(response, "b2_upload_file")

        try:
            data = await self._retry.run(
                attempt,
                description=f"upload of {name}",
                on_retry=lambda *_: _count_retry(stats),
            )
        except RetryExhaustedError as e:
            raise _exhausted(name, e) from e
        return parse_reply(FileVersion, data, "b2_upload_file"), sha1

    async def _get_upload_url(self, bucket_id: str) -> UploadTarget:
        data = await self._transport.call("b2_get_upload_url", json={"bucketId": bucket_id})
        return parse_reply(UploadTarget, data, "b2_get_upload_url")

    # =========================================================================
    # Large file
    # =========================================================================

    async def _upload_large(
        self,
        path: Path,
        bucket_id: str,
        name: str,
        size: int,
        content_type: str,
        part_size: int,
        minimum_part_size: int,
        progress: ProgressTracker,
        stats: UploadStats,
    ) -> tuple[FileVersion, str]:
        parts = plan_parts(size, part_size, minimum_part_size)
        if len(parts) < MIN_PART_COUNT:
            raise UploadError(
                UploadFailure.LOCAL_READ, name, detail="not enough data to upload by parts"
            )
        stats.parts_count = len(parts)

        # whole-file hash lets downloads verify large files too
        sha1 = await self._hash(path, name, 0, size)

        try:
            start = await self._retry.run(
                lambda: self._transport.call(
                    "b2_start_large_file",
                    json={
                        "bucketId": bucket_id,
                        "fileName": name,
                        "contentType": content_type,
                        "fileInfo": {"large_file_sha1": sha1},
                    },
                ),
                description=f"start of {name}",
            )
        except RetryExhaustedError as e:
            raise _exhausted(name, e) from e
        started_file = parse_reply(FileVersion, start, "b2_start_large_file")
        if started_file.file_id is None:
            raise TransportError("b2_start_large_file returned no fileId")
        upload = UploadSession(file_id=started_file.file_id, part_size=parts[0].length)
        logger.debug(f"Started large file {upload.file_id} ({len(parts)} parts)")

        try:
            upload.parts = await self._upload_parts(upload, path, name, parts, progress, stats)
            data = await self._retry.run(
                lambda: self._transport.call(
                    "b2_finish_large_file",
                    json={"fileId": upload.file_id, "partSha1Array": upload.part_sha1_array},
                ),
                description=f"finish of {name}",
            )
        except RetryExhaustedError as e:
            await self._cancel_large_file(upload.file_id)
            raise _exhausted(name, e) from e
        except (Exception, asyncio.CancelledError):
            await self._cancel_large_file(upload.file_id)
            raise
        return parse_reply(FileVersion, data, "b2_finish_large_file"), sha1

    async def _upload_parts(
        self,
        upload: UploadSession,
        path: Path,
        name: str,
        parts: list[PartRange],
        progress: ProgressTracker,
        stats: UploadStats,
    ) -> list[UploadedPart]:
        semaphore = asyncio.Semaphore(self._threads)
        targets = UploadTargetPool()

        async def worker(part: PartRange) -> UploadedPart:
            async with semaphore:
                return await self._upload_part(
                    upload.file_id, path, name, part, targets, progress, stats
                )

        tasks = [asyncio.create_task(worker(part)) for part in parts]
        uploaded: dict[int, UploadedPart] = {}
        try:
            for next_done in asyncio.as_completed(tasks):
                part = await next_done
                uploaded[part.part_number] = part
                logger.debug(f"Part {part.part_number}/{len(parts)} of {name} done")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return [uploaded[number] for number in sorted(uploaded)]

    async def _upload_part(
        self,
        file_id: str,
        path: Path,
        name: str,
        part: PartRange,
        targets: UploadTargetPool,
        progress: ProgressTracker,
        stats: UploadStats,
    ) -> UploadedPart:
        sha1 = await self._hash(path, name, part.offset, part.length, part.part_number)

        async def attempt() -> UploadedPart:
            target = targets.take() or await self._get_upload_part_url(file_id)
            sent = 0

            def on_chunk(n: int) -> None:
                nonlocal sent
                sent += n
                progress.advance(n)

            headers = {
                "Authorization": target.authorization_token,
                "X-Bz-Part-Number": str(part.part_number),
                "Content-Length": str(part.length),
                "X-Bz-Content-Sha1": sha1,
            }
            body = file_range_body(
                path,
                part.offset,
                part.length,
                sha1,
                name,
                self._chunk_size,
                on_chunk=on_chunk,
                part_number=part.part_number,
            )
            try:
                response = await self._transport.send(
                    "POST", target.upload_url, headers=headers, content=body, authorize=False
                )
            except BaseException:
                progress.rewind(sent)
                raise
            finally:
                await body.aclose()
            targets.give_back(target)
            return parse_reply(UploadedPart, read_json(response, "b2_upload_part"), "b2_upload_part")

        try:
            result = await self._retry.run(
                attempt,
                description=f"part {part.part_number} of {name}",
                on_retry=lambda *_: _count_retry(stats),
            )
        except RetryExhaustedError as e:
            raise _exhausted(name, e, part.part_number) from e
        except TransportError as e:
            raise UploadError(
                UploadFailure.PART_FAILED,
                name,
                detail=str(e),
                part_number=part.part_number,
                cause=e,
            ) from e

        if result.sha1 != sha1:
            raise UploadError(
                UploadFailure.PART_FAILED,
                name,
                detail=f"server stored SHA1 {result.sha1}, sent {sha1}",
                part_number=part.part_number,
            )
        return result

    async def _get_upload_part_url(self, file_id: str) -> UploadTarget:
        data = await self._transport.call("b2_get_upload_part_url", json={"fileId": file_id})
        return parse_reply(UploadTarget, data, "b2_get_upload_part_url")

    async def _cancel_large_file(self, file_id: str) -> None:
        """Best-effort cancel; failures are logged and never replace the original error."""
        try:
            await self._transport.call("b2_cancel_large_file", json={"fileId": file_id})
            logger.info(f"Cancelled unfinished large file {file_id}")
        except Exception as e:
            logger.warning(f"Could not cancel large file {file_id}: {e}")

    async def _hash(
        self,
        path: Path,
        name: str,
        offset: int,
        length: int,
        part_number: int | None = None,
    ) -> str:
        try:
            return await asyncio.to_thread(
                hash_file_range, path, offset, length, self._chunk_size
            )
        except OSError as e:
            raise UploadError(
                UploadFailure.LOCAL_READ,
                name,
                detail=str(e),
                part_number=part_number,
                cause=e,
            ) from e


def guess_content_type(name: str) -> str:
    """MIME type from the file name, or let the server decide."""
    guessed, _ = mimetypes.guess_type(name)
    return guessed or AUTO_CONTENT_TYPE


def iter_files(root: Path):
    """Regular files below ``root``, following the layout on disk."""
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.is_file():
                yield path


def _count_retry(stats: UploadStats) -> None:
    stats.retries_count += 1


def _exhausted(
    name: str, error: RetryExhaustedError, part_number: int | None = None
) -> UploadError:
    return UploadError(
        UploadFailure.EXHAUSTED,
        name,
        detail=str(error.last_error),
        part_number=part_number,
        attempts=error.attempts,
        cause=error,
    )
