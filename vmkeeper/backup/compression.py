"""
Archive creation for exported VMs.

Each exported VM folder becomes one encrypted 7-Zip archive:
- maximum compression by default (-mx=9)
- AES encryption with the configured password (-p)
- encrypted headers so file names inside the archive are hidden (-mhe=on)
"""

import os
import logging
from typing import Callable, Optional

from .tools import run_command, ToolError


logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class Archiver:
    """Interface for archive handlers."""

    def compress(self, source_path: str, dest_file: str, password: str, level: int = 9):
        raise NotImplementedError


class SevenZipArchiver(Archiver):
    """Handler for the 7-Zip command line tool."""

    def __init__(self, executable: str = '7z', encrypt_headers: bool = True,
                 on_output: Optional[Callable[[str], None]] = None):
        """
        Initialize 7-Zip handler.

        Args:
            executable: Path to 7z / 7z.exe
            encrypt_headers: Encrypt archive headers (file names)
            on_output: Optional callback receiving tool output lines
        """
        self.executable = executable
        self.encrypt_headers = encrypt_headers
        self.on_output = on_output

    def build_command(self, source_path: str, dest_file: str, password: str, level: int):
        cmd = [self.executable, 'a', '-t7z', f'-mx={level}', f'-p{password}', '-y']
        if self.encrypt_headers:
            cmd.append('-mhe=on')
        cmd.extend([dest_file, source_path])
        return cmd

    def compress(self, source_path: str, dest_file: str, password: str, level: int = 9):
        """
        Compress source_path into an encrypted archive at dest_file.

        Raises:
            CompressionError: If the source is missing or 7-Zip fails
        """
        if not os.path.exists(source_path):
            raise CompressionError(f"Path does not exist: {source_path}")
        if not password:
            raise CompressionError("Archive password is required")

        os.makedirs(os.path.dirname(dest_file), exist_ok=True)
        cmd = self.build_command(source_path, dest_file, password, level)

        try:
            result = run_command(cmd, redact=[password], on_line=self.on_output)
        except ToolError as e:
            raise CompressionError(f"Failed to create archive: {e}") from e

        if not result.ok:
            _remove_partial(dest_file)
            raise CompressionError(
                f"Failed to create archive {os.path.basename(dest_file)} (exit {result.returncode}): {result.summary()}"
            )


def _remove_partial(archive_path: str):
    """Clean up partial archive on failure."""
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {archive_path}: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
