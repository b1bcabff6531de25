"""
Asynchronous download service.

Streams a remote file into a caller-provided sink while hashing it, and
verifies length and SHA1 against the server's headers once the stream ends.
A stream interrupted by a transient error resumes with a byte-range request.
"""

from __future__ import annotations

import hashlib
import re
import time
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Callable
from urllib.parse import quote

import httpx

from b2cli.exceptions import (
    DownloadError,
    DownloadFailure,
    NotFoundError,
    RetryExhaustedError,
)
from b2cli.logging import get_logger
from b2cli.services.base import BaseService
from b2cli.services.download._config import (
    DEFAULT_CHUNK_SIZE,
    FILE_ID_HEADER,
    LARGE_FILE_SHA1_HEADER,
    NO_SHA1,
    SHA1_HEADER,
    UNVERIFIED_PREFIX,
)
from b2cli.services.download._models import DownloadMetrics, DownloadResult
from b2cli.transport.http import API_VERSION, UrlSpec, classify_exception
from b2cli.transport.retry import RetryPolicy

if TYPE_CHECKING:
    from b2cli.transport.http import AsyncTransport

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int], None]

_CONTENT_RANGE = re.compile(r"bytes (\d+)-(\d+)/(\d+|\*)")


def expected_sha1(headers: httpx.Headers) -> str | None:
    """SHA1 the server vouches for, or None when it has none (large files)."""
    value = headers.get(SHA1_HEADER)
    if value and value != NO_SHA1:
        if value.startswith(UNVERIFIED_PREFIX):
            value = value[len(UNVERIFIED_PREFIX):]
        return value.lower()
    large = headers.get(LARGE_FILE_SHA1_HEADER)
    return large.lower() if large else None


def _is_seekable(sink: IO[bytes]) -> bool:
    seekable = getattr(sink, "seekable", None)
    try:
        return bool(seekable and seekable())
    except (OSError, ValueError):
        return False


class _StreamState:
    """Progress of one download across attempts."""

    def __init__(self, start: int) -> None:
        self.start = start
        self.written = 0
        self.sha1 = hashlib.sha1()
        self.expected_length: int | None = None
        self.expected_sha1: str | None = None
        self.file_id: str | None = None
        self.content_type: str | None = None

    def reset(self) -> None:
        self.written = 0
        self.sha1 = hashlib.sha1()
        self.expected_length = None
        self.expected_sha1 = None
        self.file_id = None
        self.content_type = None


class DownloadService(BaseService):
    """
    Download engine.

    Example:
        >>> with open("report.pdf", "wb") as sink:
        ...     result = await client.download.download_by_name(
        ...         "my-bucket", "reports/report.pdf", sink
        ...     )
        >>> print(result)  # Shows metrics summary
    """

    def __init__(
        self,
        transport: AsyncTransport,
        *,
        retry: RetryPolicy | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(transport)
        self._retry = retry or RetryPolicy()
        self._chunk_size = chunk_size

    def configure(self, chunk_size: int | None = None) -> None:
        """
        Configure download settings.

        Args:
            chunk_size: Chunk size for streaming into the sink (bytes).
        """
        if chunk_size is not None:
            self._chunk_size = chunk_size

    async def download_by_name(
        self,
        bucket_name: str,
        file_name: str,
        sink: IO[bytes],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadResult:
        """
        Download the latest version of a file into ``sink``.

        Args:
            bucket_name: Bucket holding the file.
            file_name: Remote file name.
            sink: Binary writable object; resumable restarts need it seekable.
            on_progress: Callback(transferred, total).

        Raises:
            DownloadError: Not found, local write failure, corrupt content,
                or a spent retry budget.
        """
        def url(session: Any) -> str:
            return (
                f"{session.download_url}/file/{quote(bucket_name, safe='')}/"
                f"{quote(file_name, safe='/')}"
            )

        return await self._download(url, None, bucket_name, file_name, sink, on_progress)

    async def download_by_id(
        self,
        file_id: str,
        sink: IO[bytes],
        *,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadResult:
        """Download a specific file version into ``sink``."""

        def url(session: Any) -> str:
            return f"{session.download_url}/b2api/{API_VERSION}/b2_download_file_by_id"

        return await self._download(
            url, {"fileId": file_id}, "", file_id, sink, on_progress
        )

    async def download_to_path(
        self,
        bucket_name: str,
        file_name: str,
        local_path: Path,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> DownloadResult:
        """
        Download into a local file, created or truncated.

        A corrupt download is left on disk; the caller decides whether to keep it.
        The empty file is removed again when the remote file does not exist.
        """
        local_path = Path(local_path)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            sink = open(local_path, "wb")
        except OSError as e:
            raise DownloadError(
                DownloadFailure.LOCAL_WRITE, file_name, detail=str(e), cause=e
            ) from e

        try:
            with sink:
                result = await self.download_by_name(
                    bucket_name, file_name, sink, on_progress=on_progress
                )
        except DownloadError as e:
            if e.reason is DownloadFailure.NOT_FOUND:
                local_path.unlink(missing_ok=True)
            raise
        result.local_path = local_path
        return result

    async def _download(
        self,
        url: UrlSpec,
        params: dict[str, str] | None,
        bucket: str,
        file_name: str,
        sink: IO[bytes],
        on_progress: ProgressCallback | None,
    ) -> DownloadResult:
        metrics = DownloadMetrics()
        started = time.perf_counter()
        seekable = _is_seekable(sink)
        state = _StreamState(start=sink.tell() if seekable else 0)

        async def attempt() -> None:
            headers = {}
            resuming = state.written > 0
            if resuming:
                headers["Range"] = f"bytes={state.written}-"
            try:
                async with self._transport.stream(
                    "GET", url, params=params, headers=headers
                ) as response:
                    if resuming:
                        self._continue(state, response, sink, seekable, file_name, metrics)
                    else:
                        self._begin(state, response)
                    # unchunked: every received byte reaches the sink before a reset
                    async for data in response.aiter_raw():
                        for offset in range(0, len(data), self._chunk_size):
                            chunk = data[offset:offset + self._chunk_size]
                            self._write(state, sink, chunk, file_name)
                            metrics.chunks_count += 1
                            if on_progress is not None:
                                on_progress(state.written, state.expected_length or 0)
            except httpx.HTTPError as e:
                raise classify_exception(e) from e

        try:
            await self._retry.run(
                attempt,
                description=f"download of {file_name}",
                on_retry=lambda *_: _count_retry(metrics),
            )
        except RetryExhaustedError as e:
            raise DownloadError(
                DownloadFailure.EXHAUSTED,
                file_name,
                detail=f"gave up after {e.attempts} attempts: {e.last_error}",
                cause=e,
            ) from e
        except NotFoundError as e:
            raise DownloadError(
                DownloadFailure.NOT_FOUND, file_name, detail=e.message, cause=e
            ) from e

        metrics.total_time = time.perf_counter() - started
        metrics.remote_size = state.expected_length or 0
        metrics.transferred_size = state.written
        computed = self._verify(state, file_name)

        logger.debug(
            f"Downloaded {file_name}: {state.written:,} bytes in {metrics.total_time:.1f}s"
        )
        return DownloadResult(
            bucket=bucket,
            file_name=file_name,
            file_id=state.file_id,
            size=state.written,
            sha1=computed,
            verified_sha1=state.expected_sha1 is not None,
            content_type=state.content_type,
            metrics=metrics,
        )

    def _begin(self, state: _StreamState, response: httpx.Response) -> None:
        length = response.headers.get("Content-Length")
        state.expected_length = int(length) if length is not None else None
        state.expected_sha1 = expected_sha1(response.headers)
        state.file_id = response.headers.get(FILE_ID_HEADER)
        state.content_type = response.headers.get("Content-Type")

    def _continue(
        self,
        state: _StreamState,
        response: httpx.Response,
        sink: IO[bytes],
        seekable: bool,
        file_name: str,
        metrics: DownloadMetrics,
    ) -> None:
        """
        Accept a ranged response, or rewind if it cannot continue.

        A full (200) response restarts the download in place when the sink is
        seekable. A ranged response of another file version cannot be used:
        the sink is rewound and the download fails with INTERRUPTED.
        """
        file_id = response.headers.get(FILE_ID_HEADER)
        match = _CONTENT_RANGE.match(response.headers.get("Content-Range", ""))
        same_file = state.file_id is None or file_id is None or file_id == state.file_id
        if (
            response.status_code == 206
            and match is not None
            and int(match.group(1)) == state.written
            and same_file
        ):
            metrics.resumed_count += 1
            logger.info(f"Resuming {file_name} at byte {state.written:,}")
            return

        if not seekable:
            raise DownloadError(
                DownloadFailure.INTERRUPTED,
                file_name,
                detail="stream broke and the output cannot be rewound",
            )
        logger.info(f"Restarting {file_name} from the beginning")
        metrics.restarts_count += 1
        try:
            sink.seek(state.start)
            sink.truncate()
        except OSError as e:
            raise DownloadError(
                DownloadFailure.LOCAL_WRITE, file_name, detail=str(e), cause=e
            ) from e
        state.reset()
        if response.status_code == 206:
            # ranged body of a different file version; not retried
            raise DownloadError(
                DownloadFailure.INTERRUPTED,
                file_name,
                detail="file changed on the server during download",
            )
        self._begin(state, response)

    def _write(
        self, state: _StreamState, sink: IO[bytes], chunk: bytes, file_name: str
    ) -> None:
        try:
            sink.write(chunk)
        except OSError as e:
            raise DownloadError(
                DownloadFailure.LOCAL_WRITE, file_name, detail=str(e), cause=e
            ) from e
        state.sha1.update(chunk)
        state.written += len(chunk)

    def _verify(self, state: _StreamState, file_name: str) -> str:
        computed = state.sha1.hexdigest()
        if state.expected_length is not None and state.written != state.expected_length:
            raise DownloadError(
                DownloadFailure.CORRUPT,
                file_name,
                detail="length mismatch",
                expected=state.expected_length,
                actual=state.written,
            )
        if state.expected_sha1 is None:
            logger.debug(f"No checksum for {file_name}; verified length only")
        elif computed != state.expected_sha1:
            raise DownloadError(
                DownloadFailure.CORRUPT,
                file_name,
                detail="SHA1 mismatch",
                expected=state.expected_sha1,
                actual=computed,
            )
        return computed


def _count_retry(metrics: DownloadMetrics) -> None:
    metrics.retries_count += 1
