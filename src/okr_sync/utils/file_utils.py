"""File utility functions."""

import os
import shutil
import tempfile
import time
from pathlib import Path


class FileHelper:
    """Helper class for file operations."""

    @staticmethod
    def format_file_size(size_bytes: int) -> str:
        """Format file size in human readable format.

        Args:
            size_bytes: Size in bytes

        Returns:
            Formatted size string
        """
        if size_bytes == 0:
            return "0 B"

        size_names = ["B", "KB", "MB", "GB", "TB", "PB"]
        i = 0

        while size_bytes >= 1024 and i < len(size_names) - 1:
            size_bytes /= 1024.0
            i += 1

        return f"{size_bytes:.1f} {size_names[i]}"

    @staticmethod
    def copy_aside(file_path: Path) -> Path:
        """Copy a file next to itself with a millisecond timestamp suffix.

        Args:
            file_path: File to preserve

        Returns:
            Path of the copy (``<name>.backup.<epoch ms>``)
        """
        backup_path = file_path.with_name(f"{file_path.name}.backup.{int(time.time() * 1000)}")
        shutil.copy2(file_path, backup_path)
        return backup_path

    @staticmethod
    def atomic_write_bytes(file_path: Path, data: bytes) -> None:
        """Replace a file's content without leaving a half-written file behind.

        Args:
            file_path: Destination file
            data: New content
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", dir=str(file_path.parent))
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, file_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
