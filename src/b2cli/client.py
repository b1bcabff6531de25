"""
b2cli client.

Unified entry point wiring the settings, the persisted account, the auth
manager, the transport and the three services over one httpx.AsyncClient.
"""

from __future__ import annotations

from typing import Any

import httpx

from b2cli.account import AccountInfo, AccountStore
from b2cli.auth import AuthManager
from b2cli.config import B2Settings, get_settings
from b2cli.logging import get_logger
from b2cli.models.api import Session
from b2cli.services.download import DownloadService
from b2cli.services.listing import ListingService
from b2cli.services.upload import UploadService
from b2cli.transport.http import AsyncTransport
from b2cli.transport.retry import RetryPolicy

logger = get_logger(__name__)


class B2Client:
    """
    Client for one B2 account.

    Credentials come from the settings (``B2_APPLICATION_KEY_ID`` and
    ``B2_APPLICATION_KEY``) or, failing that, from the account file written
    by ``b2 authorise``. A session saved there is reused without a network
    call until the server rejects it.

    Example:
        >>> async with B2Client() as client:
        ...     bucket_id = await client.listing.resolve_bucket_id("photos")
        ...     result = await client.upload.upload_file(Path("cat.jpg"), bucket_id)

        >>> # With an explicit account file and HTTP client (tests)
        >>> client = B2Client(settings, account_store=store, http_client=http)
    """

    def __init__(
        self,
        settings: B2Settings | None = None,
        *,
        account_store: AccountStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            settings: Runtime settings (defaults to the process-wide settings).
            account_store: Where account state is persisted.
            http_client: Shared HTTP client; created (and owned) when omitted.
        """
        self._settings = settings or get_settings()
        self._store = account_store or AccountStore(self._settings.account_file)
        self._account = self._store.load()
        self._saved_state = self._account.model_dump_json()

        key_id = self._settings.application_key_id or self._account.application_key_id
        key = self._settings.application_key or self._account.application_key
        session = self._account.session
        if key_id != self._account.state_key_id:
            # stored session and bucket cache belong to another key
            logger.debug("Credentials differ from the account file; ignoring its session")
            session = None
            self._account.buckets = {}

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self._settings.request_timeout,
                connect=self._settings.connect_timeout,
            ),
        )

        self._auth = AuthManager(
            self._http,
            key_id or None,
            key or None,
            auth_url=self._settings.auth_url,
            session=session,
            on_session=self._remember_session,
        )
        self._transport = AsyncTransport(self._http, self._auth)

        retry = RetryPolicy.from_config(self._settings.retry)
        self._listing = ListingService(self._transport, self._account)
        self._upload = UploadService(
            self._transport,
            retry=retry,
            threads=self._settings.upload_threads,
            part_size=self._settings.part_size,
            chunk_size=self._settings.chunk_size,
        )
        self._download = DownloadService(
            self._transport,
            retry=retry,
            chunk_size=self._settings.chunk_size,
        )

    @property
    def settings(self) -> B2Settings:
        return self._settings

    @property
    def account(self) -> AccountInfo:
        """Persisted account state (credentials, session, bucket cache)."""
        return self._account

    @property
    def auth(self) -> AuthManager:
        return self._auth

    @property
    def transport(self) -> AsyncTransport:
        return self._transport

    @property
    def listing(self) -> ListingService:
        """Bucket and file listing."""
        return self._listing

    @property
    def upload(self) -> UploadService:
        """Upload engine."""
        return self._upload

    @property
    def download(self) -> DownloadService:
        """Download engine."""
        return self._download

    async def authorize(self, application_key_id: str, application_key: str) -> Session:
        """
        Authorize with new credentials and persist them.

        Raises:
            AuthError: The credentials were rejected.
        """
        previous_key_id = self._account.state_key_id
        session = await self._auth.authorize(application_key_id, application_key)
        if application_key_id != previous_key_id:
            self._account.buckets = {}
        self._account.application_key_id = application_key_id
        self._account.application_key = application_key
        self.save()
        return session

    def save(self) -> None:
        """Write account state if it changed since it was loaded or last saved."""
        state = self._account.model_dump_json()
        if state == self._saved_state:
            return
        self._store.save(self._account)
        self._saved_state = state

    def _remember_session(self, session: Session) -> None:
        self._account.session = session
        self._account.session_key_id = self._auth.application_key_id or ""

    async def __aenter__(self) -> B2Client:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Persist account state and close the HTTP client if owned."""
        try:
            self.save()
        finally:
            if self._owns_http:
                await self._http.aclose()

    def __repr__(self) -> str:
        return f"<B2Client account_file={str(self._store.path)!r}>"


__all__ = ["B2Client"]
