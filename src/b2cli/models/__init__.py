"""
Data models for b2cli.
"""

from b2cli.models.api import (
    Bucket,
    FileAction,
    FileVersion,
    PartRange,
    Session,
    TransferDirection,
    TransferTask,
    UploadedPart,
    UploadSession,
    UploadTarget,
)
from b2cli.models.config import RetryConfig

__all__ = [
    "Bucket",
    "FileAction",
    "FileVersion",
    "PartRange",
    "Session",
    "TransferDirection",
    "TransferTask",
    "UploadedPart",
    "UploadSession",
    "UploadTarget",
    "RetryConfig",
]
