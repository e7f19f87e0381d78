"""Utility functions and helpers."""

from .logging import setup_logging
from .encryption import BackupCipher
from .file_utils import FileHelper
from .scheduler import RecurringJob

__all__ = ["setup_logging", "BackupCipher", "FileHelper", "RecurringJob"]
