"""
Auth manager.

Acquires a Session from long-lived application credentials and refreshes
it on demand. The session is a frozen, versioned value: a refresh replaces
it wholesale, and concurrent refresh requests collapse into one call.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import httpx
from pydantic import ValidationError

from b2cli.config import DEFAULT_AUTH_URL
from b2cli.exceptions import AuthError, MissingCredentialsError
from b2cli.logging import get_logger
from b2cli.models.api import Session

logger = get_logger(__name__)

AUTHORIZE_PATH = "/b2api/v3/b2_authorize_account"


class AuthManager:
    """
    Owns the current Session.

    No background refresh: Transport calls refresh() after an expired-token
    response and retries its request once.

    Example:
        >>> auth = AuthManager(http, "0012ab...", "K001...")
        >>> session = await auth.ensure_session()
        >>> session.api_url
        'https://api001.backblazeb2.com'
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        application_key_id: str | None = None,
        application_key: str | None = None,
        *,
        auth_url: str = DEFAULT_AUTH_URL,
        session: Session | None = None,
        on_session: Callable[[Session], None] | None = None,
    ) -> None:
        self._client = client
        self._application_key_id = application_key_id
        self._application_key = application_key
        self._auth_url = auth_url.rstrip("/")
        self._session = session
        self._on_session = on_session
        self._lock = asyncio.Lock()

    @property
    def application_key_id(self) -> str | None:
        return self._application_key_id

    @property
    def session(self) -> Session | None:
        """Current session, or None before the first authorization."""
        return self._session

    async def ensure_session(self) -> Session:
        """Return the current session, authorizing first if there is none."""
        session = self._session
        if session is not None:
            return session
        async with self._lock:
            if self._session is None:
                await self._authorize_locked()
            assert self._session is not None
            return self._session

    async def authorize(
        self,
        application_key_id: str | None = None,
        application_key: str | None = None,
    ) -> Session:
        """
        Authorize with the given (or stored) credentials.

        Raises:
            AuthError: Invalid credentials, unreachable endpoint or malformed reply.
        """
        async with self._lock:
            if application_key_id is not None:
                self._application_key_id = application_key_id
            if application_key is not None:
                self._application_key = application_key
            return await self._authorize_locked()

    async def refresh(self, stale_version: int | None = None) -> Session:
        """
        Re-run authorization with the stored credentials.

        Args:
            stale_version: Version of the session the caller saw rejected. If the
                current session is already newer, it is returned as is.
        """
        async with self._lock:
            current = self._session
            if (
                stale_version is not None
                and current is not None
                and current.version > stale_version
            ):
                logger.debug(
                    f"Session already refreshed (v{current.version} > v{stale_version})"
                )
                return current
            logger.debug("Refreshing authorization token")
            return await self._authorize_locked()

    async def _authorize_locked(self) -> Session:
        key_id = self._application_key_id
        key = self._application_key
        if not key_id or not key:
            raise MissingCredentialsError()

        url = f"{self._auth_url}{AUTHORIZE_PATH}"
        try:
            response = await self._client.get(url, auth=(key_id, key))
        except httpx.HTTPError as e:
            raise AuthError(f"Cannot reach {url}: {e}", cause=e) from e

        if response.status_code == 401:
            raise AuthError("Invalid application key id or application key")
        if not response.is_success:
            raise AuthError(
                f"Authorization failed with HTTP {response.status_code}: {response.text}"
            )

        version = self._session.version + 1 if self._session is not None else 1
        try:
            session = Session.from_authorize_response(response.json(), version=version)
        except (ValueError, KeyError, TypeError, ValidationError) as e:
            raise AuthError("Malformed authorization response", cause=e) from e

        self._session = session
        logger.debug(f"Authorized account {session.account_id} (session v{version})")
        if self._on_session is not None:
            self._on_session(session)
        return session


__all__ = ["AuthManager", "AUTHORIZE_PATH"]
