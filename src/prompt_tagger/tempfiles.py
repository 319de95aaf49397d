"""Scratch-file allocation and cleanup for the output pipeline."""

import secrets
import string
import time
from pathlib import Path

from loguru import logger


BACKUP_SUFFIX = "_original"
_RANDOM_ALPHABET = string.ascii_lowercase + string.digits
_RANDOM_LENGTH = 6


class TempFileManager:
    """
    Hand out collision-resistant scratch paths and delete them afterwards.

    Paths look like ``<prefix><epoch-ms>_<random><extension>`` inside
    ``temp_dir``, which is created on first allocation.
    """

    def __init__(self, temp_dir: Path) -> None:
        self.temp_dir = temp_dir

    def ensure_temp_dir(self) -> Path:
        """Create the scratch directory if needed and return it."""
        if not self.temp_dir.is_dir():
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            logger.debug("temp_dir_created", path=str(self.temp_dir))
        return self.temp_dir

    def allocate(self, prefix: str = "temp_", extension: str = "") -> Path:
        """
        Return a new, unused scratch path.

        Args:
            prefix: Leading part of the file name (e.g. "process_").
            extension: File extension including the dot (e.g. ".png").

        Returns:
            Path inside the scratch directory. The file itself is not created.

        """
        timestamp = int(time.time() * 1000)
        random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(_RANDOM_LENGTH))
        return self.ensure_temp_dir() / f"{prefix}{timestamp}_{random_part}{extension}"

    def release(self, path: Path) -> None:
        """Delete ``path`` if it exists. Deletion errors are logged, never raised."""
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("temp_file_cleanup_failed", path=str(path), error=str(exc))
            return
        logger.debug("temp_file_removed", file=path.name)

    @staticmethod
    def backup_path(destination: Path) -> Path:
        """
        Return the backup ExifTool leaves next to ``destination`` when it edits it.

        The name keeps the image extension before the suffix, so it can never
        collide with another image picked up by extension.

        Examples:
            >>> TempFileManager.backup_path(Path("out/image.png")).name
            'image.png_original'

        """
        return destination.with_name(destination.name + BACKUP_SUFFIX)

    def release_backup(self, destination: Path) -> None:
        """Delete the ExifTool backup beside ``destination``, if any."""
        self.release(self.backup_path(destination))
