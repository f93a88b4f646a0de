"""Object storage adapters.

Usage:
    from pgdump_s3.adapters import ObjectStorage, S3ObjectStorage
"""

from pgdump_s3.adapters.base import ObjectStorage, ObjectStream, UploadResult
from pgdump_s3.adapters.s3 import S3ObjectStorage, S3ObjectStream, create_s3_client

__all__ = [
    "ObjectStorage",
    "ObjectStream",
    "UploadResult",
    "S3ObjectStorage",
    "S3ObjectStream",
    "create_s3_client",
]
