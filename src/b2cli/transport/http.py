"""
HTTP transport shared by the listing, upload and download engines.

Attaches the current authorization token, recovers once from an expired
token by refreshing the session, and turns every other failure into a
classified TransportError for the caller's retry policy.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from b2cli.exceptions import AuthError, NotFoundError, TransportError
from b2cli.logging import get_logger

if TYPE_CHECKING:
    from b2cli.auth import AuthManager
    from b2cli.models.api import Session

logger = get_logger(__name__)

API_VERSION = "v3"

# 401 codes that a fresh token fixes; "unauthorized" means a missing capability
AUTH_EXPIRED_CODES = frozenset({"expired_auth_token", "bad_auth_token"})

TRANSIENT_STATUSES = frozenset({408, 429})

UrlSpec = Union[str, Callable[["Session"], str]]

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> TransportError:
    """Build a TransportError from a non-success response."""
    status = response.status_code
    code: str | None = None
    message = response.reason_phrase or "request failed"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or message

    transient = status >= 500 or status in TRANSIENT_STATUSES
    error_class = NotFoundError if status == 404 else TransportError
    return error_class(
        message,
        status=status,
        code=code,
        transient=transient,
        retry_after=_parse_retry_after(response),
    )


def classify_exception(exc: httpx.HTTPError, url: str = "") -> TransportError:
    """Build a TransportError from a network-level httpx exception."""
    transient = isinstance(
        exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
    )
    target = f" {url}" if url else ""
    return TransportError(
        f"{type(exc).__name__} while requesting{target}: {exc}",
        transient=transient,
        cause=exc,
    )


def read_json(response: httpx.Response, source: str) -> dict[str, Any]:
    """Decoded JSON object of a read response; anything else is a TransportError."""
    try:
        data = response.json()
    except ValueError as e:
        raise TransportError(f"Malformed JSON from {source}", cause=e) from e
    if not isinstance(data, dict):
        raise TransportError(f"Unexpected response from {source}: {data!r}")
    return data


def parse_reply(model: type[ModelT], data: Any, source: str) -> ModelT:
    """Validate a reply body against ``model``; a mismatch is a TransportError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise TransportError(
            f"Unexpected response from {source}: {e.error_count()} invalid field(s)",
            cause=e,
        ) from e


class AsyncTransport:
    """
    Request/response layer over a shared httpx.AsyncClient.

    Example:
        >>> transport = AsyncTransport(http, auth)
        >>> data = await transport.call("b2_list_buckets", json={"accountId": "..."})
    """

    def __init__(self, client: httpx.AsyncClient, auth: AuthManager) -> None:
        self._client = client
        self._auth = auth

    @property
    def auth(self) -> AuthManager:
        return self._auth

    async def session(self) -> Session:
        """Current session, authorizing first if needed."""
        return await self._auth.ensure_session()

    @staticmethod
    def api_endpoint(api_name: str) -> Callable[[Session], str]:
        """URL builder for a native API call, resolved against the live session."""
        return lambda session: f"{session.api_url}/b2api/{API_VERSION}/{api_name}"

    async def call(
        self,
        api_name: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Call a native API method and return its decoded JSON body.

        Args:
            api_name: API method, e.g. "b2_list_file_names".
            json: Request body.
        """
        logger.debug(f"POST {api_name} {json or {}}")
        response = await self.send("POST", self.api_endpoint(api_name), json=json or {})
        return read_json(response, api_name)

    async def send(
        self,
        method: str,
        url: UrlSpec,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        content: Any = None,
        json: Any = None,
        authorize: bool = True,
    ) -> httpx.Response:
        """Send a request and return the fully read response."""
        async with self.stream(
            method,
            url,
            params=params,
            headers=headers,
            content=content,
            json=json,
            authorize=authorize,
        ) as response:
            try:
                await response.aread()
            except httpx.HTTPError as e:
                raise classify_exception(e, str(response.url)) from e
            return response

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: UrlSpec,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        content: Any = None,
        json: Any = None,
        authorize: bool = True,
    ) -> AsyncIterator[httpx.Response]:
        """
        Open a streaming response whose status has already been checked.

        With ``authorize=False`` the caller supplies its own Authorization
        header (upload URLs carry their own token) and no refresh is attempted.
        Streaming request bodies can only be sent once, so they must use
        ``authorize=False``.
        """
        response = await self._open(
            method,
            url,
            params=params,
            headers=headers,
            content=content,
            json=json,
            authorize=authorize,
        )
        try:
            yield response
        finally:
            await response.aclose()

    async def _open(
        self,
        method: str,
        url: UrlSpec,
        *,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        content: Any,
        json: Any,
        authorize: bool,
    ) -> httpx.Response:
        refreshed = False
        while True:
            request_headers = dict(headers or {})
            session: Session | None = None
            if authorize:
                session = await self._auth.ensure_session()
                request_headers["Authorization"] = session.authorization_token

            if callable(url):
                if session is None:
                    session = await self._auth.ensure_session()
                target = url(session)
            else:
                target = url

            request = self._client.build_request(
                method,
                target,
                params=params,
                headers=request_headers,
                content=content,
                json=json,
            )
            try:
                response = await self._client.send(request, stream=True)
            except httpx.HTTPError as e:
                raise classify_exception(e, target) from e

            if response.is_success:
                return response

            try:
                await response.aread()
            except httpx.HTTPError as e:
                raise classify_exception(e, target) from e
            finally:
                await response.aclose()

            error = classify_response(response)
            if response.status_code != 401 or not authorize:
                if response.status_code == 401 and error.code in AUTH_EXPIRED_CODES:
                    error.transient = True
                raise error

            if error.code not in AUTH_EXPIRED_CODES:
                raise AuthError(f"Not authorized: {error.message}", cause=error)
            if refreshed:
                raise AuthError(
                    "Authorization token rejected again after refresh", cause=error
                )

            assert session is not None
            logger.debug(f"Token expired ({error.code}), refreshing and retrying once")
            refreshed = True
            await self._auth.refresh(session.version)


__all__ = [
    "AsyncTransport",
    "API_VERSION",
    "AUTH_EXPIRED_CODES",
    "classify_response",
    "classify_exception",
    "parse_reply",
    "read_json",
]
