"""
Models for download service.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from b2cli.models.api import TransferDirection, TransferTask


class DownloadMetrics(BaseModel):
    """Metrics for a download operation."""

    # Timing (seconds)
    total_time: float = 0.0

    # Sizes (bytes)
    remote_size: int = 0
    transferred_size: int = 0

    # Transfer details
    chunks_count: int = 0
    retries_count: int = 0
    resumed_count: int = 0
    restarts_count: int = 0

    @property
    def total_speed_mbps(self) -> float:
        """Average speed in MB/s."""
        if self.total_time <= 0:
            return 0.0
        return (self.transferred_size / 1024 / 1024) / self.total_time

    def summary(self) -> str:
        """Human-readable summary."""
        size_mb = self.transferred_size / 1024 / 1024
        lines = [
            f"Size: {size_mb:.1f} MB ({self.transferred_size:,} bytes)",
            f"Total: {self.total_time:.1f}s @ {self.total_speed_mbps:.1f} MB/s",
        ]
        if self.chunks_count > 0:
            lines.append(f"Chunks: {self.chunks_count}")
        if self.retries_count > 0:
            lines.append(f"Retries: {self.retries_count}")
        if self.resumed_count > 0:
            lines.append(f"  └─ Resumed: {self.resumed_count}")
        if self.restarts_count > 0:
            lines.append(f"  └─ Restarted: {self.restarts_count}")
        return "\n".join(lines)


class DownloadResult(BaseModel):
    """Result of a verified download."""

    model_config = {"arbitrary_types_allowed": True}

    bucket: str
    file_name: str
    file_id: str | None = None
    size: int = 0
    sha1: str
    verified_sha1: bool = True
    content_type: str | None = None
    local_path: Path | None = None
    metrics: DownloadMetrics = Field(default_factory=DownloadMetrics)

    @property
    def task(self) -> TransferTask:
        return TransferTask(
            local_path=self.local_path,
            bucket=self.bucket,
            remote_name=self.file_name,
            direction=TransferDirection.DOWNLOAD,
            size=self.size,
            computed_hash=self.sha1,
        )

    def __repr__(self) -> str:
        m = self.metrics
        size_mb = self.size / 1024 / 1024
        return (
            f"DownloadResult({self.file_name}, {size_mb:.1f}MB, "
            f"{m.total_time:.1f}s, {m.total_speed_mbps:.1f}MB/s)"
        )

    def __str__(self) -> str:
        return self.metrics.summary()
