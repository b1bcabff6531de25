"""
Models for the B2 native API.

Responses arrive as camelCase JSON; the models expose snake_case attributes
and accept either spelling on input.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for models parsed from API JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Session(ApiModel):
    """
    Authenticated context for all API calls.

    Immutable; a refresh produces a new Session with a higher version.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    account_id: str
    authorization_token: str
    api_url: str
    download_url: str
    recommended_part_size: int
    absolute_minimum_part_size: int
    minimum_part_size: int = 0
    version: int = 0

    @classmethod
    def from_authorize_response(cls, data: dict[str, Any], version: int = 0) -> Session:
        """Build a session from a b2_authorize_account (v3) response body."""
        storage = data["apiInfo"]["storageApi"]
        absolute_minimum = storage["absoluteMinimumPartSize"]
        return cls(
            account_id=data["accountId"],
            authorization_token=data["authorizationToken"],
            api_url=storage["apiUrl"],
            download_url=storage["downloadUrl"],
            recommended_part_size=storage["recommendedPartSize"],
            absolute_minimum_part_size=absolute_minimum,
            minimum_part_size=storage.get("minimumPartSize", absolute_minimum),
            version=version,
        )


class Bucket(ApiModel):
    """Read-only projection of a remote bucket."""

    bucket_id: str
    bucket_name: str
    bucket_type: str = "allPrivate"


class FileAction(str, Enum):
    """What a file version entry represents."""

    UPLOAD = "upload"
    HIDE = "hide"
    START = "start"
    FOLDER = "folder"


class FileVersion(ApiModel):
    """A file version as returned by listing and upload calls."""

    file_name: str
    file_id: str | None = None
    content_length: int = 0
    content_sha1: str | None = None
    content_type: str | None = None
    upload_timestamp: datetime | None = None
    action: FileAction = FileAction.UPLOAD
    file_info: dict[str, str] = Field(default_factory=dict)

    @field_validator("upload_timestamp", mode="before")
    @classmethod
    def _from_millis(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        return value


class UploadTarget(ApiModel):
    """Upload URL plus its own authorization token."""

    upload_url: str
    authorization_token: str


class PartRange(BaseModel):
    """Contiguous byte range of a large file."""

    model_config = ConfigDict(frozen=True)

    part_number: int
    offset: int
    length: int


class UploadedPart(ApiModel):
    """Part accepted by the server."""

    part_number: int
    sha1: str = Field(alias="contentSha1")
    length: int = Field(alias="contentLength")


class UploadSession(BaseModel):
    """State of an unfinished large file."""

    file_id: str
    part_size: int
    parts: list[UploadedPart] = Field(default_factory=list)

    @property
    def part_sha1_array(self) -> list[str]:
        """Part hashes in part-number order, as b2_finish_large_file expects."""
        return [part.sha1 for part in sorted(self.parts, key=lambda p: p.part_number)]


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferTask(BaseModel):
    """Description of a finished transfer."""

    model_config = {"arbitrary_types_allowed": True}

    local_path: Path | None = None
    bucket: str
    remote_name: str
    direction: TransferDirection
    size: int = 0
    computed_hash: str | None = None


__all__ = [
    "Session",
    "Bucket",
    "FileAction",
    "FileVersion",
    "UploadTarget",
    "PartRange",
    "UploadedPart",
    "UploadSession",
    "TransferDirection",
    "TransferTask",
]
