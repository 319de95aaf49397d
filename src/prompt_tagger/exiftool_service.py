"""
Shared ExifTool process used to write description and keyword tags.

One ExifTool process is kept running for the lifetime of the program. Writes
from concurrent jobs go through an asyncio lock so the stay-open process only
ever sees one command at a time.
"""

import asyncio
from collections.abc import Mapping, Sequence
from pathlib import Path

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolException
from loguru import logger

from prompt_tagger.threads import run_in_thread


TagValue = str | Sequence[str]


class MetadataWriteError(RuntimeError):
    """Raised when ExifTool could not write tags to a file."""


class ExifToolService:
    """
    Serialized async access to a single long-lived ExifTool process.

    The process starts lazily on the first write. ``close`` may be called any
    number of times; only the first call terminates the process, and writes
    after it are rejected.
    """

    def __init__(self, *, overwrite_original: bool = False, executable: str | None = None) -> None:
        """
        Configure the service without starting ExifTool.

        Args:
            overwrite_original: Pass ``-overwrite_original`` so ExifTool keeps no
                ``_original`` backup beside modified files.
            executable: ExifTool executable; defaults to ``exiftool`` on PATH.

        """
        self.overwrite_original = overwrite_original
        self._executable = executable
        self._helper: ExifToolHelper | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_helper(self) -> ExifToolHelper:
        if self._helper is None:
            kwargs = {"executable": self._executable} if self._executable else {}
            self._helper = ExifToolHelper(**kwargs)  # type: ignore[no-untyped-call]
        if not self._helper.running:
            self._helper.run()
            logger.debug("exiftool_process_started")
        return self._helper

    def _write_sync(self, image_path: Path, tags: Mapping[str, TagValue]) -> None:
        params = ["-overwrite_original"] if self.overwrite_original else None
        try:
            helper = self._ensure_helper()
            helper.set_tags(files=[str(image_path)], tags=dict(tags), params=params)
        except (ValueError, TypeError, OSError, RuntimeError, ExifToolException) as e:
            logger.exception("exiftool_write_failed", error=str(e), target=str(image_path))
            msg = f"ExifTool failed to write metadata to {image_path}: {e}"
            raise MetadataWriteError(msg) from e

    async def write_metadata(self, image_path: Path, tags: Mapping[str, TagValue]) -> None:
        """
        Write ``tags`` to ``image_path``.

        Args:
            image_path: File to modify in place.
            tags: ExifTool tag names mapped to a string or a list of strings
                  (e.g. ``{"Description": "...", "Keywords": ["Tree: Oak"]}``).

        Raises:
            MetadataWriteError: If the service is closed or ExifTool fails.

        """
        if self._closed:
            msg = "ExifTool service is shut down"
            raise MetadataWriteError(msg)

        async with self._lock:
            if self._closed:
                msg = "ExifTool service is shut down"
                raise MetadataWriteError(msg)
            logger.debug("writing_metadata", target=str(image_path), tags=sorted(tags))
            await run_in_thread(self._write_sync, image_path, tags)

        logger.info("metadata_written_successfully", target=str(image_path))

    async def close(self) -> None:
        """Terminate the ExifTool process once; later calls do nothing."""
        if self._closed:
            return
        self._closed = True

        async with self._lock:
            helper, self._helper = self._helper, None
            if helper is None or not helper.running:
                logger.debug("exiftool_process_not_running")
                return
            try:
                await run_in_thread(helper.terminate)
            except (OSError, RuntimeError, ExifToolException) as e:
                logger.exception("exiftool_shutdown_failed", error=str(e))
            else:
                logger.debug("exiftool_process_terminated")
