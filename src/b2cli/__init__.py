"""
b2cli - command-line client and transfer engine for Backblaze B2.

Example:
    >>> from b2cli import B2Client
    >>> async with B2Client() as client:
    ...     bucket_id = await client.listing.resolve_bucket_id("photos")
    ...     async for file in client.listing.list_file_names(bucket_id):
    ...         print(file.file_name)
"""

__version__ = "0.1.0"

from b2cli.client import B2Client
from b2cli.config import B2Settings, configure_settings, get_settings
from b2cli.exceptions import (
    AuthError,
    B2Error,
    BucketNotFoundError,
    DownloadError,
    DownloadFailure,
    MissingCredentialsError,
    NotFoundError,
    RetryExhaustedError,
    TransportError,
    UploadError,
    UploadFailure,
)

__all__ = [
    "__version__",
    # Client
    "B2Client",
    # Settings
    "B2Settings",
    "configure_settings",
    "get_settings",
    # Errors
    "B2Error",
    "AuthError",
    "MissingCredentialsError",
    "TransportError",
    "NotFoundError",
    "RetryExhaustedError",
    "BucketNotFoundError",
    "UploadError",
    "UploadFailure",
    "DownloadError",
    "DownloadFailure",
]
