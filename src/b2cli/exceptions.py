"""
Exceptions for b2cli.

Every error raised by the transfer engine derives from B2Error so the CLI can
report it with a single handler. Context (file name, part number, attempt
count) is kept on the exception for user-facing messages.
"""

from __future__ import annotations

from enum import Enum


class B2Error(Exception):
    """Base exception for all b2cli errors."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self._original_cause = cause

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Authentication
# =============================================================================


class AuthError(B2Error):
    """Bad credentials, unreachable auth endpoint or malformed auth response."""


class MissingCredentialsError(AuthError):
    """No application key configured."""

    def __init__(self) -> None:
        super().__init__(
            "No application key configured. "
            "Run `b2 authorise` or set B2_APPLICATION_KEY_ID and B2_APPLICATION_KEY."
        )


# =============================================================================
# Transport
# =============================================================================


class TransportError(B2Error):
    """HTTP-level failure, classified as transient or fatal."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        transient: bool = False,
        retry_after: float | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.status = status
        self.code = code
        self.transient = transient
        self.retry_after = retry_after
        if status is not None:
            message = f"{message} (HTTP {status}{f' {code}' if code else ''})"
        super().__init__(message, cause=cause)


class NotFoundError(TransportError):
    """Remote object does not exist (HTTP 404)."""


class RetryExhaustedError(B2Error):
    """Retry budget spent on transient failures."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            cause=last_error,
        )


class BucketNotFoundError(B2Error):
    """Bucket name is unknown to the account."""

    def __init__(self, bucket_name: str) -> None:
        self.bucket_name = bucket_name
        super().__init__(f"Bucket `{bucket_name}` does not exist")


# =============================================================================
# Transfers
# =============================================================================


class UploadFailure(str, Enum):
    """Reason an upload failed."""

    PART_FAILED = "part_failed"
    EXHAUSTED = "exhausted"
    LOCAL_READ = "local_read"


class DownloadFailure(str, Enum):
    """Reason a download failed."""

    CORRUPT = "corrupt"
    LOCAL_WRITE = "local_write"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"
    INTERRUPTED = "interrupted"


class UploadError(B2Error):
    """Upload could not be completed."""

    def __init__(
        self,
        reason: UploadFailure,
        file_name: str,
        detail: str = "",
        part_number: int | None = None,
        attempts: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.reason = reason
        self.file_name = file_name
        self.part_number = part_number
        self.attempts = attempts

        message = f"Upload of {file_name} failed ({reason.value})"
        if part_number is not None:
            message += f" at part {part_number}"
        if attempts is not None:
            message += f" after {attempts} attempts"
        if detail:
            message += f": {detail}"
        super().__init__(message, cause=cause)


class DownloadError(B2Error):
    """Download could not be completed or failed verification."""

    def __init__(
        self,
        reason: DownloadFailure,
        file_name: str,
        detail: str = "",
        expected: str | int | None = None,
        actual: str | int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.reason = reason
        self.file_name = file_name
        self.expected = expected
        self.actual = actual

        message = f"Download of {file_name} failed ({reason.value})"
        if detail:
            message += f": {detail}"
        if expected is not None or actual is not None:
            message += f" [expected {expected}, got {actual}]"
        super().__init__(message, cause=cause)


__all__ = [
    "B2Error",
    "AuthError",
    "MissingCredentialsError",
    "TransportError",
    "NotFoundError",
    "RetryExhaustedError",
    "BucketNotFoundError",
    "UploadFailure",
    "DownloadFailure",
    "UploadError",
    "DownloadError",
]
