"""Backup destinations."""

from .s3_storage import S3Storage, StoredObject

__all__ = ["S3Storage", "StoredObject"]
