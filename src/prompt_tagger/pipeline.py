"""
Per-file output pipeline.

A job reads the prompt embedded in a generated image, matches it against the
keyword dictionary, stages an sRGB (and optionally watermarked) copy in the
scratch directory, copies it to the destination and tags it with ExifTool.
Scratch files are always removed, whatever the outcome.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict

from prompt_tagger.exiftool_service import MetadataWriteError, TagValue
from prompt_tagger.extraction import ExtractionResult, PromptExtractionService
from prompt_tagger.imaging import (
    WATERMARK_TEXT,
    add_watermark,
    normalize_color_profile,
    read_embedded_metadata,
)
from prompt_tagger.keywords import KeywordMatcher
from prompt_tagger.tempfiles import TempFileManager
from prompt_tagger.threads import run_in_thread


AI_GENERATED_KEYWORD = WATERMARK_TEXT
PROCESS_PREFIX = "process_"
WATERMARK_PREFIX = "watermark_"


class OutputDirectoryError(OSError):
    """Raised when the destination directory of a job cannot be created."""


class MetadataWriter(Protocol):
    async def write_metadata(self, image_path: Path, tags: dict[str, TagValue]) -> None: ...


class ProcessingConfig(BaseModel):
    """Runtime options for one pipeline invocation."""

    model_config = ConfigDict(frozen=True)

    add_watermark: bool = True
    target_subfolder: str | None = None
    extensions: frozenset[str] = frozenset({".png"})
    remove_partial_output: bool = True

    def output_dir(self, destination_dir: Path) -> Path:
        """
        Resolve the directory that receives processed files.

        Examples:
            >>> ProcessingConfig(target_subfolder="portraits").output_dir(Path("out"))
            PosixPath('out/portraits')

        """
        subfolder = (self.target_subfolder or "").strip()
        return destination_dir / subfolder if subfolder else destination_dir


@dataclass
class ProcessingJob:
    """State owned by a single ``process_file`` call."""

    source_file: Path
    destination_dir: Path
    temp_artifacts: list[Path] = field(default_factory=list)
    destination_file: Path | None = None
    keep_backup: bool = False

    def allocate(self, temp_files: TempFileManager, prefix: str) -> Path:
        """Allocate a scratch path and register it for cleanup."""
        path = temp_files.allocate(prefix, self.source_file.suffix)
        self.temp_artifacts.append(path)
        return path

    def release(self, temp_files: TempFileManager) -> None:
        """Delete every scratch artifact and the metadata-tool backup this job caused."""
        for artifact in self.temp_artifacts:
            temp_files.release(artifact)
        if self.destination_file is not None and not self.keep_backup:
            temp_files.release_backup(self.destination_file)
        logger.debug("job_cleaned_up", artifacts=len(self.temp_artifacts))


def build_metadata_tags(extraction: ExtractionResult, keywords: list[str]) -> dict[str, TagValue]:
    """
    Build the ExifTool tags written on the output file.

    The description is the first prompt only; later prompts contribute keywords.
    Keywords are mirrored to Subject, which Lightroom reads from XMP.
    """
    description = extraction.description
    return {
        "Description": description,
        "ImageDescription": description,
        "Keywords": keywords,
        "Subject": keywords,
    }


class OutputPipeline:
    """Turn a generated image into a tagged copy in a destination directory."""

    def __init__(
        self,
        keyword_matcher: KeywordMatcher,
        metadata_writer: MetadataWriter,
        temp_files: TempFileManager,
        extraction_service: PromptExtractionService | None = None,
    ) -> None:
        self.keyword_matcher = keyword_matcher
        self.metadata_writer = metadata_writer
        self.temp_files = temp_files
        self.extraction_service = extraction_service or PromptExtractionService()

    def match_keywords(self, extraction: ExtractionResult, config: ProcessingConfig) -> list[str]:
        """Return the sorted labels for all prompts, plus the AI label when watermarking."""
        labels = self.keyword_matcher.find_keywords_in_prompts(extraction.prompts)
        if config.add_watermark:
            labels.add(AI_GENERATED_KEYWORD)
        return sorted(labels)

    async def process_file(
        self,
        source_path: Path,
        destination_dir: Path,
        config: ProcessingConfig | None = None,
    ) -> bool:
        """
        Process one image end to end.

        Args:
            source_path: Generated image carrying prompt metadata.
            destination_dir: Base output directory (created if missing).
            config: Runtime options; defaults to ProcessingConfig().

        Returns:
            True when the tagged copy was written, False when the file was
            skipped or any stage failed.

        Raises:
            OutputDirectoryError: If the output directory cannot be created.
                Scratch files are already cleaned up when it propagates.

        """
        config = config or ProcessingConfig()
        job = ProcessingJob(
            source_file=Path(source_path),
            destination_dir=config.output_dir(Path(destination_dir)),
        )

        with logger.contextualize(file=job.source_file.name):
            if job.source_file.suffix.lower() not in config.extensions:
                logger.warning("skipping_unsupported_file", extension=job.source_file.suffix)
                return False

            logger.info("processing_file", destination=str(job.destination_dir))
            try:
                return await self._run(job, config)
            except OutputDirectoryError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("processing_exception", error=str(exc))
                return False
            finally:
                job.release(self.temp_files)

    async def _run(self, job: ProcessingJob, config: ProcessingConfig) -> bool:
        metadata = await run_in_thread(read_embedded_metadata, job.source_file)
        if not metadata.comments:
            logger.warning("no_metadata_comments_found")
            return False

        extraction = self.extraction_service.extract_prompts(metadata)
        if extraction is None:
            logger.warning("no_prompt_found")
            return False
        logger.info(
            "prompts_extracted",
            strategy=extraction.strategy_id,
            prompt_count=len(extraction.prompts),
        )

        keywords = self.match_keywords(extraction, config)
        logger.info("keywords_matched", count=len(keywords), keywords=keywords)

        staged = job.allocate(self.temp_files, PROCESS_PREFIX)
        await run_in_thread(normalize_color_profile, job.source_file, staged)

        if config.add_watermark:
            watermarked = job.allocate(self.temp_files, WATERMARK_PREFIX)
            await run_in_thread(add_watermark, staged, watermarked)
            staged = watermarked

        self._ensure_output_dir(job.destination_dir)
        destination = job.destination_dir / job.source_file.name
        replaces_existing = destination.exists()
        # a backup present before the write belongs to someone else
        job.keep_backup = self.temp_files.backup_path(destination).exists()
        job.destination_file = destination
        try:
            await run_in_thread(shutil.copyfile, staged, destination)
        except OSError as exc:
            logger.error("output_copy_failed", target=str(destination), error=str(exc))
            if not replaces_existing:
                self.temp_files.release(destination)
            return False

        try:
            await self.metadata_writer.write_metadata(
                job.destination_file,
                build_metadata_tags(extraction, keywords),
            )
        except MetadataWriteError as exc:
            logger.error("metadata_write_failed", error=str(exc))
            if config.remove_partial_output:
                self.temp_files.release(job.destination_file)
                logger.warning("partial_output_removed", target=str(job.destination_file))
            else:
                logger.warning("partial_output_kept", target=str(job.destination_file))
            return False

        logger.info(
            "processing_success",
            target=str(job.destination_file),
            description=extraction.description[:100],
            keyword_count=len(keywords),
        )
        return True

    @staticmethod
    def _ensure_output_dir(output_dir: Path) -> None:
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("output_dir_create_failed", path=str(output_dir), error=str(exc))
            msg = f"Cannot create output directory {output_dir}: {exc}"
            raise OutputDirectoryError(msg) from exc
