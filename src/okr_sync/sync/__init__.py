"""Sync and backup engines."""

from .backup_manager import BackupType, RestoreMode, S3BackupEngine
from .git_engine import GitSyncEngine
from .snapshot import SyncData

__all__ = ["BackupType", "GitSyncEngine", "RestoreMode", "S3BackupEngine", "SyncData"]
