"""
Module for scanning the local backup folder.
"""
import fnmatch
import logging
import os
from pathlib import Path
from typing import List

from .errors import LocalEnumerationError
from .models import FileRef

logger = logging.getLogger(__name__)


class FileScanner:
    """Enumerates the files directly inside a local folder."""

    def __init__(self, pattern: str = "*"):
        """Initialize the file scanner.

        Args:
            pattern: Glob pattern file names must match
        """
        self.pattern = pattern

    def scan_folder(self, folder: Path) -> List[FileRef]:
        """Scan a folder for regular files matching the pattern.

        Subdirectories are skipped. Results are sorted by name so that the
        pending set has a stable order.

        Args:
            folder: Path to the folder to scan

        Returns:
            List of FileRef objects

        Raises:
            LocalEnumerationError: If the folder is missing or unreadable
        """
        folder = Path(folder)
        files = []
        try:
            with os.scandir(folder) as it:
                for entry in it:
                    if not fnmatch.fnmatchcase(entry.name, self.pattern):
                        continue
                    if not entry.is_file():
                        logger.debug(f"Skipping non-file entry {entry.name}")
                        continue
                    files.append(FileRef(
                        name=entry.name,
                        absolute_path=Path(entry.path).resolve(),
                        size_bytes=entry.stat().st_size
                    ))
        except OSError as e:
            raise LocalEnumerationError(f"Error reading directory {folder}: {e}") from e

        files.sort(key=lambda ref: ref.name)
        logger.debug(f"Found {len(files)} local files in {folder}")
        return files
