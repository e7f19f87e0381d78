"""OKR remote sync: Git and S3 durability for the local OKR database."""

__version__ = "1.0.0"
__author__ = "OKR Manager"

from .service import OperationResult, SyncService

__all__ = ["OperationResult", "SyncService", "__version__"]
