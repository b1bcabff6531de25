"""
Configuration constants for download service.
"""

# Chunk size for streaming the response body into the sink
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB

# Checksum headers sent with every download
SHA1_HEADER = "X-Bz-Content-Sha1"
LARGE_FILE_SHA1_HEADER = "X-Bz-Info-large_file_sha1"
FILE_ID_HEADER = "X-Bz-File-Id"

# Value of the SHA1 header for large files
NO_SHA1 = "none"

# Prefix for checksums the server stored without verifying
UNVERIFIED_PREFIX = "unverified:"
