"""
Upload service for b2cli.

Features:
- Single-request upload for files up to the part size
- Large-file protocol with parallel, individually retried parts
- Incremental SHA1 of every byte range sent
- Best-effort cancel of unfinished large files on failure or interrupt
- Recursive directory upload
"""

from b2cli.services.upload._aio import UploadService, guess_content_type
from b2cli.services.upload._models import UploadResult, UploadStats
from b2cli.services.upload._transfer import plan_parts, validate_file_name

__all__ = [
    "UploadService",
    "UploadResult",
    "UploadStats",
    "guess_content_type",
    "plan_parts",
    "validate_file_name",
]
