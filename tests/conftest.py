"""
Pytest configuration and fixtures for b2cli tests.

FakeB2 is an in-memory B2 service mounted on httpx.MockTransport. It keeps
buckets, file versions and unfinished large files, records every call, and
supports failure injection for retry, expiry and corruption tests.
"""

from __future__ import annotations

import base64
import os
import hashlib
import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio

from b2cli.account import AccountStore
from b2cli.client import B2Client
from b2cli.config import B2Settings, reset_settings
from b2cli.transport.retry import RetryPolicy

AUTH_URL = "https://api.fake-b2.test"
API_URL = "https://api001.fake-b2.test"
DOWNLOAD_URL = "https://f001.fake-b2.test"
UPLOAD_HOST = "https://pod-000.fake-b2.test"

KEY_ID = "0012ab34cd56"
KEY = "K001secretsecret"
ACCOUNT_ID = "12ab34cd56"


@dataclass
class StoredFile:
    file_id: str
    file_name: str
    bucket_id: str
    content: bytes
    content_type: str
    upload_timestamp: int
    action: str = "upload"
    file_info: dict[str, str] = field(default_factory=dict)
    large: bool = False

    @property
    def sha1(self) -> str:
        return hashlib.sha1(self.content).hexdigest()

    def as_json(self) -> dict[str, Any]:
        return {
            "accountId": ACCOUNT_ID,
            "action": self.action,
            "bucketId": self.bucket_id,
            "contentLength": len(self.content),
            "contentSha1": "none" if self.large else self.sha1,
            "contentType": self.content_type,
            "fileId": self.file_id,
            "fileInfo": self.file_info,
            "fileName": self.file_name,
            "uploadTimestamp": self.upload_timestamp,
        }


@dataclass
class LargeFile:
    file_id: str
    file_name: str
    bucket_id: str
    content_type: str
    file_info: dict[str, str]
    parts: dict[int, bytes] = field(default_factory=dict)


@dataclass
class Failure:
    """Injected error response for requests of one kind."""

    kind: str
    status: int
    code: str
    times: int
    match: Callable[[httpx.Request], bool] | None = None
    headers: dict[str, str] = field(default_factory=dict)


class FakeB2:
    """In-memory B2 native API (v3)."""

    def __init__(
        self,
        recommended_part_size: int = 1000,
        absolute_minimum_part_size: int = 100,
    ) -> None:
        self.key_id = KEY_ID
        self.key = KEY
        self.recommended_part_size = recommended_part_size
        self.absolute_minimum_part_size = absolute_minimum_part_size

        self.buckets: dict[str, str] = {}
        self.files: list[StoredFile] = []
        self.large_files: dict[str, LargeFile] = {}
        self.cancelled: list[str] = []

        self.calls: Counter[str] = Counter()
        self.requests: list[httpx.Request] = []
        self.part_numbers: list[int] = []

        self.token: str | None = None
        self.expired_tokens: set[str] = set()
        self.upload_tokens: set[str] = set()
        self._failures: list[Failure] = []
        self._broken_downloads: list[int] = []
        self._broken_replies: list[tuple[str, int]] = []
        self._garbled_replies: list[tuple[str, bytes]] = []
        self._corrupt_downloads = 0
        self._ignore_range = 0
        self._counter = 0
        self._clock = 1_700_000_000_000

    # -------------------------------------------------------------------------
    # Setup helpers
    # -------------------------------------------------------------------------

    def add_bucket(self, name: str, bucket_id: str | None = None) -> str:
        bucket_id = bucket_id or f"bucket{len(self.buckets) + 1:04d}"
        self.buckets[name] = bucket_id
        return bucket_id

    def add_file(
        self,
        bucket_name: str,
        file_name: str,
        content: bytes,
        content_type: str = "application/octet-stream",
        **kwargs: Any,
    ) -> StoredFile:
        stored = StoredFile(
            file_id=self._next_id("4_z"),
            file_name=file_name,
            bucket_id=self.buckets[bucket_name],
            content=content,
            content_type=content_type,
            upload_timestamp=self._tick(),
            **kwargs,
        )
        self.files.append(stored)
        return stored

    def fail(
        self,
        kind: str,
        status: int = 503,
        code: str = "service_unavailable",
        times: int = 1,
        match: Callable[[httpx.Request], bool] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        Answer the next ``times`` requests of ``kind`` with an error.

        Kinds are API names (``b2_list_file_names``), ``upload``, ``upload_part``
        and ``download``.
        """
        self._failures.append(Failure(kind, status, code, times, match, headers or {}))

    def break_download(self, after: int, times: int = 1) -> None:
        """Drop the connection after ``after`` body bytes on the next downloads."""
        self._broken_downloads.extend([after] * times)

    def break_reply(self, kind: str, after: int = 5, times: int = 1) -> None:
        """
        Drop the connection after ``after`` bytes of the next JSON replies.

        The request is still handled, so the server-side effect happens.
        Not for ``download``, whose bodies are already streamed.
        """
        self._broken_replies.extend([(kind, after)] * times)

    def garble_reply(self, kind: str, body: bytes, times: int = 1) -> None:
        """Answer the next requests of ``kind`` with ``body`` and HTTP 200."""
        self._garbled_replies.extend([(kind, body)] * times)

    def corrupt_next_download(self) -> None:
        """Serve the next download one byte short of its Content-Length."""
        self._corrupt_downloads += 1

    def ignore_next_range(self) -> None:
        """Answer the next ranged download with the whole file (200)."""
        self._ignore_range += 1

    def expire_token(self) -> None:
        if self.token is not None:
            self.expired_tokens.add(self.token)

    def latest(self, bucket_name: str, file_name: str) -> StoredFile | None:
        bucket_id = self.buckets[bucket_name]
        for stored in reversed(self.files):
            if stored.bucket_id == bucket_id and stored.file_name == file_name:
                return stored if stored.action == "upload" else None
        return None

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        response = self._route(request)
        kind = _kind_of(request)
        for index, (broken_kind, after) in enumerate(self._broken_replies):
            if broken_kind == kind:
                del self._broken_replies[index]
                return httpx.Response(
                    response.status_code,
                    headers=response.headers,
                    content=_live_body(response.content, after),
                )
        for index, (garbled_kind, body) in enumerate(self._garbled_replies):
            if garbled_kind == kind:
                del self._garbled_replies[index]
                return httpx.Response(
                    200, content=body, headers={"Content-Type": "application/json"}
                )
        return response

    def _route(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        base = f"{url.scheme}://{url.host}"
        path = url.path

        if base == AUTH_URL and path == "/b2api/v3/b2_authorize_account":
            return self._authorize(request)
        if base == UPLOAD_HOST:
            kind = "upload" if path.startswith("/upload/") else "upload_part"
            self.calls[kind] += 1
            injected = self._injected(kind, request)
            return injected if injected is not None else self._upload(request, kind)
        if base == DOWNLOAD_URL:
            self.calls["download"] += 1
            denied = self._check_token(request)
            if denied is not None:
                return denied
            injected = self._injected("download", request)
            return injected if injected is not None else self._download(request)
        if base == API_URL and path.startswith("/b2api/v3/"):
            api_name = path.rsplit("/", 1)[-1]
            self.calls[api_name] += 1
            denied = self._check_token(request)
            if denied is not None:
                return denied
            injected = self._injected(api_name, request)
            if injected is not None:
                return injected
            handler = getattr(self, f"_api_{api_name}", None)
            if handler is None:
                return _error(400, "bad_request", f"unknown api {api_name}")
            return handler(json.loads(request.content or b"{}"))
        return _error(404, "not_found", f"no route for {url}")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:08d}"

    def _tick(self) -> int:
        self._clock += 1000
        return self._clock

    def _injected(self, kind: str, request: httpx.Request) -> httpx.Response | None:
        for failure in self._failures:
            if failure.kind != kind or failure.times <= 0:
                continue
            if failure.match is not None and not failure.match(request):
                continue
            failure.times -= 1
            return _error(failure.status, failure.code, "injected failure", failure.headers)
        return None

    def _check_token(self, request: httpx.Request) -> httpx.Response | None:
        token = request.headers.get("Authorization")
        if token is not None and token in self.expired_tokens:
            return _error(401, "expired_auth_token", "Authorization token has expired")
        if token is None or token != self.token:
            return _error(401, "bad_auth_token", "Invalid authorization token")
        return None

    def _authorize(self, request: httpx.Request) -> httpx.Response:
        self.calls["b2_authorize_account"] += 1
        expected = "Basic " + base64.b64encode(f"{self.key_id}:{self.key}".encode()).decode()
        if request.headers.get("Authorization") != expected:
            return _error(401, "unauthorized", "invalid application key")
        self.token = self._next_id("4_token")
        return httpx.Response(
            200,
            json={
                "accountId": ACCOUNT_ID,
                "authorizationToken": self.token,
                "applicationKeyExpirationTimestamp": None,
                "apiInfo": {
                    "storageApi": {
                        "apiUrl": API_URL,
                        "downloadUrl": DOWNLOAD_URL,
                        "recommendedPartSize": self.recommended_part_size,
                        "absoluteMinimumPartSize": self.absolute_minimum_part_size,
                        "s3ApiUrl": "https://s3.fake-b2.test",
                    }
                },
            },
        )

    def _upload(self, request: httpx.Request, kind: str) -> httpx.Response:
        if request.headers.get("Authorization") not in self.upload_tokens:
            return _error(401, "bad_auth_token", "Invalid upload token")
        content = request.content
        sha1 = hashlib.sha1(content).hexdigest()
        if request.headers.get("X-Bz-Content-Sha1") != sha1:
            return _error(400, "bad_request", "Sha1 did not match data received")
        if int(request.headers["Content-Length"]) != len(content):
            return _error(400, "bad_request", "Content-Length mismatch")

        target = request.url.path.rsplit("/", 1)[-1]
        if kind == "upload":
            stored = StoredFile(
                file_id=self._next_id("4_z"),
                file_name=unquote(request.headers["X-Bz-File-Name"]),
                bucket_id=target,
                content=content,
                content_type=request.headers.get("Content-Type", "b2/x-auto"),
                upload_timestamp=self._tick(),
            )
            self.files.append(stored)
            return httpx.Response(200, json=stored.as_json())

        large = self.large_files.get(target)
        if large is None:
            return _error(400, "bad_request", "no such large file")
        number = int(request.headers["X-Bz-Part-Number"])
        large.parts[number] = content
        self.part_numbers.append(number)
        return httpx.Response(
            200,
            json={
                "fileId": target,
                "partNumber": number,
                "contentLength": len(content),
                "contentSha1": sha1,
                "uploadTimestamp": self._tick(),
            },
        )

    def _download(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/b2api/v3/b2_download_file_by_id":
            file_id = request.url.params.get("fileId")
            stored = next((f for f in self.files if f.file_id == file_id), None)
        elif path.startswith("/file/"):
            _, _, bucket_name, name = path.split("/", 3)
            stored = None
            if bucket_name in self.buckets:
                stored = self.latest(bucket_name, unquote(name))
        else:
            stored = None
        if stored is None:
            return _error(404, "not_found", "File not present")

        content = stored.content
        headers = {
            "Content-Type": stored.content_type,
            "X-Bz-File-Id": stored.file_id,
            "X-Bz-File-Name": stored.file_name,
            "X-Bz-Content-Sha1": "none" if stored.large else stored.sha1,
        }
        for key, value in stored.file_info.items():
            headers[f"X-Bz-Info-{key}"] = value

        status = 200
        range_header = request.headers.get("Range")
        if range_header and self._ignore_range > 0:
            self._ignore_range -= 1
        elif range_header:
            start = int(range_header.removeprefix("bytes=").split("-")[0])
            headers["Content-Range"] = f"bytes {start}-{len(content) - 1}/{len(content)}"
            content = content[start:]
            status = 206
        headers["Content-Length"] = str(len(content))

        if self._corrupt_downloads > 0:
            self._corrupt_downloads -= 1
            content = content[:-1]
        after = self._broken_downloads.pop(0) if self._broken_downloads else None
        return httpx.Response(status, headers=headers, content=_live_body(content, after))

    # -------------------------------------------------------------------------
    # API methods
    # -------------------------------------------------------------------------

    def _api_b2_list_buckets(self, body: dict[str, Any]) -> httpx.Response:
        buckets = [
            {"accountId": ACCOUNT_ID, "bucketId": bucket_id, "bucketName": name,
             "bucketType": "allPrivate"}
            for name, bucket_id in self.buckets.items()
        ]
        return httpx.Response(200, json={"buckets": buckets})

    def _sorted_files(self, bucket_id: str, prefix: str) -> list[StoredFile]:
        files = [f for f in self.files if f.bucket_id == bucket_id and f.file_name.startswith(prefix)]
        # by name, newest first
        return sorted(files, key=lambda f: (f.file_name, -f.upload_timestamp))

    def _api_b2_list_file_names(self, body: dict[str, Any]) -> httpx.Response:
        files = self._sorted_files(body["bucketId"], body.get("prefix", ""))
        latest: dict[str, StoredFile] = {}
        for stored in files:
            latest.setdefault(stored.file_name, stored)
        visible = [f for f in latest.values() if f.action == "upload"]
        start = body.get("startFileName")
        if start is not None:
            visible = [f for f in visible if f.file_name >= start]
        limit = body.get("maxFileCount", 100)
        page, rest = visible[:limit], visible[limit:]
        return httpx.Response(
            200,
            json={
                "files": [f.as_json() for f in page],
                "nextFileName": rest[0].file_name if rest else None,
            },
        )

    def _api_b2_list_file_versions(self, body: dict[str, Any]) -> httpx.Response:
        files = self._sorted_files(body["bucketId"], body.get("prefix", ""))
        start_name = body.get("startFileName")
        if start_name is not None:
            files = _versions_from(files, start_name, body.get("startFileId"))
        limit = body.get("maxFileCount", 100)
        page, rest = files[:limit], files[limit:]
        return httpx.Response(
            200,
            json={
                "files": [f.as_json() for f in page],
                "nextFileName": rest[0].file_name if rest else None,
                "nextFileId": rest[0].file_id if rest else None,
            },
        )

    def _api_b2_get_upload_url(self, body: dict[str, Any]) -> httpx.Response:
        token = self._next_id("upload_token_")
        self.upload_tokens.add(token)
        return httpx.Response(
            200,
            json={
                "bucketId": body["bucketId"],
                "uploadUrl": f"{UPLOAD_HOST}/upload/{body['bucketId']}",
                "authorizationToken": token,
            },
        )

    def _api_b2_start_large_file(self, body: dict[str, Any]) -> httpx.Response:
        large = LargeFile(
            file_id=self._next_id("4_large"),
            file_name=body["fileName"],
            bucket_id=body["bucketId"],
            content_type=body.get("contentType", "b2/x-auto"),
            file_info=body.get("fileInfo") or {},
        )
        self.large_files[large.file_id] = large
        return httpx.Response(
            200,
            json={
                "fileId": large.file_id,
                "fileName": large.file_name,
                "bucketId": large.bucket_id,
                "contentType": large.content_type,
                "fileInfo": large.file_info,
                "action": "start",
                "uploadTimestamp": self._tick(),
            },
        )

    def _api_b2_get_upload_part_url(self, body: dict[str, Any]) -> httpx.Response:
        token = self._next_id("part_token_")
        self.upload_tokens.add(token)
        return httpx.Response(
            200,
            json={
                "fileId": body["fileId"],
                "uploadUrl": f"{UPLOAD_HOST}/upload_part/{body['fileId']}",
                "authorizationToken": token,
            },
        )

    def _api_b2_finish_large_file(self, body: dict[str, Any]) -> httpx.Response:
        large = self.large_files.pop(body["fileId"], None)
        if large is None:
            return _error(400, "bad_request", "no such large file")
        numbers = sorted(large.parts)
        if numbers != list(range(1, len(numbers) + 1)):
            return _error(400, "bad_request", "missing parts")
        expected = [hashlib.sha1(large.parts[n]).hexdigest() for n in numbers]
        if body["partSha1Array"] != expected:
            return _error(400, "bad_request", "part sha1 array mismatch")
        stored = StoredFile(
            file_id=large.file_id,
            file_name=large.file_name,
            bucket_id=large.bucket_id,
            content=b"".join(large.parts[n] for n in numbers),
            content_type=large.content_type,
            upload_timestamp=self._tick(),
            file_info=large.file_info,
            large=True,
        )
        self.files.append(stored)
        return httpx.Response(200, json=stored.as_json())

    def _api_b2_cancel_large_file(self, body: dict[str, Any]) -> httpx.Response:
        large = self.large_files.pop(body["fileId"], None)
        if large is None:
            return _error(400, "bad_request", "no such large file")
        self.cancelled.append(large.file_id)
        return httpx.Response(
            200,
            json={"fileId": large.file_id, "fileName": large.file_name,
                  "bucketId": large.bucket_id, "accountId": ACCOUNT_ID},
        )


def _error(
    status: int, code: str, message: str, headers: dict[str, str] | None = None
) -> httpx.Response:
    return httpx.Response(
        status,
        json={"status": status, "code": code, "message": message},
        headers=headers,
    )


def _versions_from(
    files: list[StoredFile], start_name: str, start_id: str | None
) -> list[StoredFile]:
    """Versions from the (name, id) cursor onwards; files are sorted already."""
    for index, stored in enumerate(files):
        if stored.file_name > start_name:
            return files[index:]
        if stored.file_name == start_name and start_id in (None, stored.file_id):
            return files[index:]
    return []


def _kind_of(request: httpx.Request) -> str:
    """Failure-injection kind of a request: API name, upload, upload_part or download."""
    url = request.url
    base = f"{url.scheme}://{url.host}"
    if base == UPLOAD_HOST:
        return "upload" if url.path.startswith("/upload/") else "upload_part"
    if base == DOWNLOAD_URL:
        return "download"
    return url.path.rsplit("/", 1)[-1]


async def _live_body(content: bytes, break_after: int | None = None) -> AsyncIterator[bytes]:
    """Body streamed like a socket, optionally reset after some bytes."""
    if break_after is None:
        yield content
        return
    yield content[:break_after]
    raise httpx.ReadError("connection reset by peer")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch):
    """Isolate tests from the developer's B2_* environment."""
    for name in list(os.environ):
        if name.startswith("B2_"):
            monkeypatch.delenv(name)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def fake_b2() -> FakeB2:
    """Fake service with one empty bucket named ``photos``."""
    fake = FakeB2()
    fake.add_bucket("photos", "bucket0001")
    return fake


@pytest.fixture
def settings(tmp_path) -> B2Settings:
    """Settings with the fake credentials, a temp account file and no backoff."""
    return B2Settings(
        application_key_id=KEY_ID,
        application_key=KEY,
        auth_url=AUTH_URL,
        account_file=tmp_path / "account.json",
        retry_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=1.0,
        upload_threads=4,
        chunk_size=64 * 1024,
    )


@pytest.fixture
def account_store(settings) -> AccountStore:
    return AccountStore(settings.account_file)


@pytest_asyncio.fixture
async def http_client(fake_b2):
    async with httpx.AsyncClient(transport=fake_b2.transport()) as client:
        yield client


@pytest_asyncio.fixture
async def client(settings, account_store, http_client) -> B2Client:
    """B2Client talking to the fake service."""
    async with B2Client(settings, account_store=account_store, http_client=http_client) as c:
        yield c


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    """Retry policy that records delays instead of sleeping."""
    delays: list[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)

    policy = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=8.0, sleep=sleep)
    policy.delays = delays  # type: ignore[attr-defined]
    return policy
