"""
Module for scanning local folders into transfer work sets.
"""
import logging
from pathlib import Path
from typing import List

from .models import StorageFile
from .paths import relative_key

logger = logging.getLogger(__name__)


class FileScanner:
    """Walks local directory trees."""

    def scan_folder(self, folder: Path, pattern: str = "**/*") -> List[StorageFile]:
        """Scan a folder for files matching the pattern.

        Args:
            folder: Path to the folder to scan
            pattern: Glob pattern to match files against, recursive by default

        Returns:
            Files found, with paths relative to the folder, in sorted order

        Raises:
            ValueError: If the folder does not exist or is not a directory
        """
        if not folder.exists():
            raise ValueError(f"Folder does not exist: {folder}")
        if not folder.is_dir():
            raise ValueError(f"{folder} is not a directory")

        files = [
            StorageFile(
                file_path=relative_key(folder, path.relative_to(folder)),
                file_size_bytes=path.stat().st_size
            )
            for path in folder.glob(pattern)
            if path.is_file()
        ]
        files.sort(key=lambda f: f.file_path)
        logger.debug(f"Found {len(files)} files under {folder}")
        return files
