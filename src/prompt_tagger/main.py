#!/usr/bin/env python3
"""
Prompt Tagger: CLI app to tag generated images with keywords taken from their prompt.

Generated PNGs carry the prompt that produced them in their metadata. For each
image, the prompt is extracted, matched against a keyword dictionary, and a
copy is written to the output folder with an sRGB profile, an optional
"AI Generated" watermark, and the prompt/keywords embedded as
Description/Keywords tags.

Requirements:
 - Exiftool installed and available in PATH.
 - A JSON keyword dictionary (see keywords.example.json).

"""
# ruff: noqa: PLR0913

import asyncio
import contextlib
import os
import signal
import sys
from datetime import UTC, datetime
from itertools import chain
from pathlib import Path
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from prompt_tagger.exiftool_service import ExifToolService
from prompt_tagger.keywords import KeywordDictionaryError, KeywordMatcher, load_keyword_dictionary
from prompt_tagger.pipeline import OutputDirectoryError, OutputPipeline, ProcessingConfig
from prompt_tagger.tempfiles import TempFileManager


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]


def _env_flag(name: str, *, default: bool) -> bool:
    """Read a boolean environment variable ("1", "true", "yes" or "on" mean True)."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, *, default: int) -> int:
    """Read an integer environment variable, ignoring values that are not integers."""
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("invalid_env_int_ignored", name=name, value=value, default=default)
        return default


# Configuration defaults
DEFAULT_OUTPUT_DIR = os.getenv("OUTPUT_DIR")
DEFAULT_KEYWORDS_FILE = Path(os.getenv("KEYWORDS_FILE", "keywords.json"))
DEFAULT_TEMP_DIR = Path(os.getenv("TEMP_DIR", "temp"))
DEFAULT_ADD_WATERMARK = _env_flag("ADD_WATERMARK", default=True)
DEFAULT_TARGET_SUBFOLDER = os.getenv("TARGET_SUBFOLDER") or None
DEFAULT_JOBS = _env_int("JOBS", default=1)


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="prompt-tagger",
    version=__version__,
)


LOG_FILE_PATTERN = "%Y%m%d%H%M%S-prompt_tagger.log"
FILE_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{module}.{function}:{line} | {message} | {extra}"
)
CONSOLE_LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<level>{message:<32}</level> <yellow>{extra}</yellow>"
)


def log_file_path(log_folder: Path, now: datetime | None = None) -> Path:
    """
    Return the timestamped log file for a run started at ``now``.

    Examples:
        >>> log_file_path(Path("logs"), datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)).name
        '20250102030405-prompt_tagger.log'

    """
    return log_folder / (now or datetime.now(tz=UTC)).strftime(LOG_FILE_PATTERN)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> Path | None:
    """
    Replace Loguru's default handler with a console sink and a per-run log file.

    Either sink is skipped when its level is 'OFF'. The file sink rotates at
    500 MB and old runs are zipped and kept for 10 days.

    Returns:
        The log file path, or None when file logging is off.

    """
    logger.remove()

    if console_log_level != "OFF":
        logger.add(sys.stderr, level=console_log_level, colorize=True, format=CONSOLE_LOG_FORMAT)

    if file_log_level == "OFF":
        return None

    log_folder.mkdir(parents=True, exist_ok=True)
    log_file = log_file_path(log_folder)
    logger.add(
        log_file,
        level=file_log_level,
        format=FILE_LOG_FORMAT,
        rotation="500 MB",
        retention="10 days",
        compression="zip",
    )
    return log_file


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a lowercase set like {".png"}.

    Examples:
        >>> sorted(_parse_extensions("png, .PNG ,webp"))
        ['.png', '.webp']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve_image_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of files.

    - Directories are expanded by extension, case-insensitively (honoring --recursive)
    - Explicit files are accepted as-is (the pipeline skips unsupported ones)
    - Order is preserved and duplicates removed
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError, RuntimeError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            files_from_dirs.extend(
                sorted(
                    f
                    for f in path_resolved.glob(pattern)
                    if f.is_file() and f.suffix.lower() in ext_set
                ),
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f.resolve()) if f.exists() else str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined


def _find_name_collisions(image_files: list[Path]) -> dict[str, list[Path]]:
    """
    Group inputs that would be written to the same output file.

    Names are compared case-insensitively, as on the default macOS and Windows
    file systems.

    Examples:
        >>> _find_name_collisions([Path("a/img.png"), Path("b/IMG.png"), Path("c.png")])
        {'img.png': [PosixPath('a/img.png'), PosixPath('b/IMG.png')]}

    """
    by_name: dict[str, list[Path]] = {}
    for image_file in image_files:
        by_name.setdefault(image_file.name.casefold(), []).append(image_file)
    return {name: paths for name, paths in by_name.items() if len(paths) > 1}


def _resolve_image_batch(
    inputs: list[Path] | None,
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint=("Pass one or more --input/-i paths (files or directories)"),
        )
        raise SystemExit(1)

    image_files = _resolve_image_files(inputs, ext_set, recursive=recursive)
    if not image_files:
        logger.error(
            "no_image_files_found",
            inputs=[str(p) for p in inputs],
            recursive=recursive,
            extensions=sorted(ext_set),
        )
        raise SystemExit(1)

    collisions = _find_name_collisions(image_files)
    if collisions:
        logger.error(
            "duplicate_output_names",
            hint="Every file is written to the output folder under its own name",
            collisions={name: [str(p) for p in paths] for name, paths in collisions.items()},
        )
        raise SystemExit(1)

    logger.info("image_files_discovered", count=len(image_files))
    return image_files


def _load_matcher(keywords_file: Path) -> KeywordMatcher:
    try:
        dictionary = load_keyword_dictionary(keywords_file)
    except KeywordDictionaryError as exc:
        logger.error("keyword_dictionary_invalid", file=str(keywords_file), error=str(exc))
        raise SystemExit(1) from exc
    if not dictionary:
        logger.warning("keyword_dictionary_empty", file=str(keywords_file))
    return KeywordMatcher(dictionary)


async def _execute_process(
    pipeline: OutputPipeline,
    image_file: Path,
    output_dir: Path,
    config: ProcessingConfig,
    *,
    index: str,
) -> bool:
    """Run the pipeline once with consistent logging and error handling."""
    try:
        ok = await pipeline.process_file(image_file, output_dir, config)
    except OutputDirectoryError as exc:
        logger.error("processing_failed", file=image_file.name, index=index, error=str(exc))
        return False
    except Exception as exc:  # noqa: BLE001
        logger.exception("processing_exception", file=image_file.name, error=str(exc))
        return False

    if ok:
        logger.info("file_processed", file=image_file.name, index=index)
    else:
        logger.warning("file_not_processed", file=image_file.name, index=index)
    return ok


async def process_batch(
    image_files: list[Path],
    pipeline: OutputPipeline,
    output_dir: Path,
    config: ProcessingConfig,
    *,
    jobs: int = 1,
) -> list[Path]:
    """
    Process files with at most ``jobs`` pipelines in flight.

    Returns:
        The files that were not processed, in input order.

    """
    semaphore = asyncio.Semaphore(max(jobs, 1))
    file_count = len(image_files)

    async def run_one(idx: int, image_file: Path) -> bool:
        async with semaphore:
            return await _execute_process(
                pipeline,
                image_file,
                output_dir,
                config,
                index=f"{idx}/{file_count}",
            )

    results = await asyncio.gather(
        *(run_one(idx, image_file) for idx, image_file in enumerate(image_files, start=1)),
    )
    return [image_file for image_file, ok in zip(image_files, results, strict=True) if not ok]


async def _run(
    image_files: list[Path],
    *,
    matcher: KeywordMatcher,
    output_dir: Path,
    temp_dir: Path,
    config: ProcessingConfig,
    jobs: int,
    overwrite_original: bool,
) -> list[Path]:
    exiftool = ExifToolService(overwrite_original=overwrite_original)
    pipeline = OutputPipeline(matcher, exiftool, TempFileManager(temp_dir))

    task = asyncio.current_task()
    if task is not None:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)

    try:
        return await process_batch(image_files, pipeline, output_dir, config, jobs=jobs)
    finally:
        await exiftool.close()


@app.default
def tag(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    output_dir: Annotated[
        Path | None,
        Parameter(
            name=("--output", "-o"),
            help="Destination folder for tagged copies. Defaults to $OUTPUT_DIR",
        ),
    ] = Path(DEFAULT_OUTPUT_DIR) if DEFAULT_OUTPUT_DIR else None,
    keywords_file: Annotated[
        Path,
        Parameter(
            name=("--keywords", "-k"),
            help="JSON file mapping prompt terms to keyword labels",
        ),
    ] = DEFAULT_KEYWORDS_FILE,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated extensions picked up from directories (case insensitive)",
        ),
    ] = "png",
    add_watermark: Annotated[
        bool,
        Parameter(
            name=("--watermark",),
            negative="--no-watermark",
            help="Stamp an 'AI Generated' label on the image and add it as a keyword",
        ),
    ] = DEFAULT_ADD_WATERMARK,
    target_subfolder: Annotated[
        str | None,
        Parameter(
            name=("--subfolder",),
            help="Write into this subfolder of the output folder",
        ),
    ] = DEFAULT_TARGET_SUBFOLDER,
    temp_dir: Annotated[
        Path,
        Parameter(
            name=("--temp-dir",),
            help="Scratch folder for intermediate files",
        ),
    ] = DEFAULT_TEMP_DIR,
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    jobs: Annotated[
        int,
        Parameter(
            name=("--jobs", "-j"),
            validator=validators.Number(gte=1),
            help="Number of files processed concurrently",
        ),
    ] = DEFAULT_JOBS,
    keep_partial_output: Annotated[
        bool,
        Parameter(
            name=("--keep-partial-output",),
            help="Keep the untagged copy when writing metadata fails",
        ),
    ] = False,
    overwrite_original: Annotated[
        bool,
        Parameter(
            name=("--overwrite-original",),
            help="Ask ExifTool not to create _original backups at all",
        ),
    ] = False,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Tag generated images with keywords matched from their embedded prompt.

    Requirements:
    - ExifTool installed and on PATH.
    - A keyword dictionary JSON file (term -> label or list of labels).

    Inputs:
    - One or more --input/-i paths (files and/or directories; repeatable).
    - Directories use --ext (add --recursive for subfolders).

    Behavior:
    - Reads the 'parameters' or 'prompt' metadata of each PNG.
    - Writes an sRGB copy (watermarked unless --no-watermark) into --output,
        with the first prompt as Description and the matched labels as Keywords.
    - Files without a usable prompt are skipped and left untouched.

    Exit status: returns 1 if no inputs, no images, two inputs sharing a file name, an
    invalid dictionary, or any file was not processed.

    Examples:
        prompt-tagger -i ./renders -o ./tagged
        prompt-tagger -i ./renders -o ./tagged --no-watermark --subfolder portraits -r

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_prompt_tagger",
        inputs=[str(p) for p in (inputs or [])],
        output_dir=str(output_dir) if output_dir else None,
        keywords_file=str(keywords_file),
        extensions=image_extensions,
        add_watermark=add_watermark,
        target_subfolder=target_subfolder,
        temp_dir=str(temp_dir),
        recursive=recursive,
        jobs=jobs,
    )

    if output_dir is None:
        logger.error("no_output_dir", hint="Pass --output/-o or set OUTPUT_DIR")
        raise SystemExit(1)

    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    image_files = _resolve_image_batch(inputs, ext_set, recursive=recursive)
    matcher = _load_matcher(keywords_file)
    config = ProcessingConfig(
        add_watermark=add_watermark,
        target_subfolder=target_subfolder,
        extensions=frozenset(ext_set),
        remove_partial_output=not keep_partial_output,
    )

    try:
        failures = asyncio.run(
            _run(
                image_files,
                matcher=matcher,
                output_dir=output_dir,
                temp_dir=temp_dir,
                config=config,
                jobs=jobs,
                overwrite_original=overwrite_original,
            ),
        )
    except (KeyboardInterrupt, asyncio.CancelledError) as exc:
        logger.warning("processing_interrupted")
        raise SystemExit(130) from exc

    file_count = len(image_files)
    logger.info(
        "processing_summary",
        total_files=file_count,
        successful=file_count - len(failures),
        failed=len(failures),
    )
    if failures:
        logger.error("files_not_processed", files=[str(path) for path in failures])
        raise SystemExit(1)


if __name__ == "__main__":
    app()
