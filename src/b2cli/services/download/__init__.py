"""
Download service for b2cli.

Features:
- Streaming download into any binary sink with a running SHA1
- Length and checksum verification against the server's headers
- Resume with byte-range requests after a broken stream
- Detailed metrics (timing, speed, chunks, retries, resumes)
"""

from b2cli.services.download._aio import DownloadService, expected_sha1
from b2cli.services.download._models import DownloadMetrics, DownloadResult

__all__ = [
    "DownloadMetrics",
    "DownloadResult",
    "DownloadService",
    "expected_sha1",
]
