"""Transfer engines and listing built on the shared transport."""

from b2cli.services.download import DownloadService
from b2cli.services.listing import ListingService
from b2cli.services.upload import UploadService

__all__ = ["DownloadService", "ListingService", "UploadService"]
