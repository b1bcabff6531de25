"""
Models for upload service.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from b2cli.models.api import FileVersion, TransferDirection, TransferTask


class UploadStats(BaseModel):
    """Counters collected while uploading."""

    bytes_sent: int = 0
    parts_count: int = 0
    retries_count: int = 0


class UploadResult(BaseModel):
    """Result of an upload."""

    model_config = {"arbitrary_types_allowed": True}

    file: FileVersion
    local_path: Path
    bucket_id: str
    size: int
    sha1: str | None = None
    stats: UploadStats = Field(default_factory=UploadStats)
    elapsed_seconds: float = 0.0

    @property
    def is_large_file(self) -> bool:
        return self.stats.parts_count > 0

    @property
    def speed_mbps(self) -> float:
        """Upload speed in MB/s."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return (self.size / 1024 / 1024) / self.elapsed_seconds

    @property
    def task(self) -> TransferTask:
        return TransferTask(
            local_path=self.local_path,
            bucket=self.bucket_id,
            remote_name=self.file.file_name,
            direction=TransferDirection.UPLOAD,
            size=self.size,
            computed_hash=self.sha1,
        )

    def __str__(self) -> str:
        line = f"{self.file.file_name}: {self.size:,} bytes in {self.elapsed_seconds:.1f}s"
        if self.stats.parts_count:
            line += f" ({self.stats.parts_count} parts)"
        if self.stats.retries_count:
            line += f", {self.stats.retries_count} retries"
        return line
