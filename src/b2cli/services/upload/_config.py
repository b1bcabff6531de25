"""
Configuration constants for upload service.
"""

# Chunk size for hashing and streaming request bodies
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB

# Parallel part uploads for large files
DEFAULT_UPLOAD_THREADS = 4

# Server limits for large files
MAX_PART_COUNT = 10_000
MIN_PART_COUNT = 2

# Let the server pick a content type from the file name
AUTO_CONTENT_TYPE = "b2/x-auto"

# Longest file name the service accepts (utf-8 bytes)
MAX_FILE_NAME_BYTES = 1024
