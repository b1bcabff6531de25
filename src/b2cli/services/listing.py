"""
Listing service.

Buckets and file names are exposed as async generators over the API's
cursor-based pages. A page is requested only when the consumer advances
past the previous batch, so ``break``-ing out early costs no extra calls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, AsyncIterator

from b2cli.exceptions import BucketNotFoundError
from b2cli.logging import get_logger
from b2cli.models.api import Bucket, FileVersion
from b2cli.services.base import BaseService
from b2cli.transport.http import parse_reply

if TYPE_CHECKING:
    from b2cli.account import AccountInfo
    from b2cli.transport.http import AsyncTransport

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 1000


class ListingService(BaseService):
    """
    Bucket and file enumeration.

    Example:
        >>> async for f in client.listing.list_file_names(bucket_id, prefix="logs/"):
        ...     print(f.file_name)
    """

    def __init__(
        self,
        transport: AsyncTransport,
        account: AccountInfo | None = None,
    ) -> None:
        super().__init__(transport)
        self._account = account

    async def list_buckets(self) -> AsyncIterator[Bucket]:
        """
        Yield every bucket of the account.

        Also refreshes the bucket name -> id cache when an account is attached.
        """
        session = await self._transport.session()
        data = await self._transport.call(
            "b2_list_buckets", json={"accountId": session.account_id}
        )
        buckets = [parse_reply(Bucket, b, "b2_list_buckets") for b in data.get("buckets", [])]
        if self._account is not None:
            self._account.buckets = {b.bucket_name: b.bucket_id for b in buckets}
        for bucket in buckets:
            yield bucket

    async def resolve_bucket_id(self, bucket_name: str) -> str:
        """
        Map a bucket name to its id.

        Uses the cached mapping first and refreshes it from the API on a miss,
        in case the bucket was created since the cache was filled.

        Raises:
            BucketNotFoundError: No bucket with this name exists.
        """
        if self._account is not None and bucket_name in self._account.buckets:
            return self._account.buckets[bucket_name]

        async for bucket in self.list_buckets():
            if bucket.bucket_name == bucket_name:
                return bucket.bucket_id
        raise BucketNotFoundError(bucket_name)

    async def list_file_names(
        self,
        bucket_id: str,
        prefix: str | None = None,
        *,
        delimiter: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[FileVersion]:
        """Yield the latest version of each file, ordered by name."""
        body: dict[str, Any] = {"bucketId": bucket_id, "maxFileCount": page_size}
        if prefix:
            body["prefix"] = prefix
        if delimiter:
            body["delimiter"] = delimiter

        start_name: str | None = None
        while True:
            if start_name is not None:
                body["startFileName"] = start_name
            data = await self._transport.call("b2_list_file_names", json=body)
            for entry in data.get("files", []):
                yield parse_reply(FileVersion, entry, "file listing")

            start_name = data.get("nextFileName")
            if start_name is None:
                return
            logger.debug(f"Next file-name page starts at {start_name!r}")

    async def list_file_versions(
        self,
        bucket_id: str,
        prefix: str | None = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AsyncIterator[FileVersion]:
        """Yield every version of every file, ordered by name then newest first."""
        body: dict[str, Any] = {"bucketId": bucket_id, "maxFileCount": page_size}
        if prefix:
            body["prefix"] = prefix

        while True:
            data = await self._transport.call("b2_list_file_versions", json=body)
            for entry in data.get("files", []):
                yield parse_reply(FileVersion, entry, "file listing")

            next_name = data.get("nextFileName")
            if next_name is None:
                return
            body["startFileName"] = next_name
            if data.get("nextFileId"):
                body["startFileId"] = data["nextFileId"]
            else:
                body.pop("startFileId", None)


__all__ = ["ListingService", "DEFAULT_PAGE_SIZE"]
