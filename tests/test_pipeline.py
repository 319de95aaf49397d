"""End-to-end tests for the output pipeline with a fake metadata writer."""

import asyncio
import threading
import time
from pathlib import Path
from typing import Any

import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

import prompt_tagger.pipeline as m
from prompt_tagger.exiftool_service import MetadataWriteError
from prompt_tagger.keywords import KeywordMatcher
from prompt_tagger.tempfiles import TempFileManager


class _FakeMetadataWriter:
    """Records writes; can leave an ExifTool-style backup or fail."""

    def __init__(self, *, fail: bool = False, leave_backup: bool = False) -> None:
        self.fail = fail
        self.leave_backup = leave_backup
        self.calls: list[tuple[Path, dict[str, Any]]] = []

    async def write_metadata(self, image_path: Path, tags: dict[str, Any]) -> None:
        self.calls.append((image_path, tags))
        if self.leave_backup:
            image_path.with_name(image_path.name + "_original").write_bytes(b"backup")
        if self.fail:
            msg = "exiftool exploded"
            raise MetadataWriteError(msg)


def _make_png(path: Path, size: tuple[int, int] = (120, 80), **chunks: str) -> Path:
    info = PngInfo()
    for keyword, text in chunks.items():
        info.add_text(keyword, text)
    Image.new("RGB", size, (255, 255, 255)).save(path, pnginfo=info)
    return path


def _pipeline(
    tmp_path: Path,
    writer: _FakeMetadataWriter,
    dictionary: dict[str, Any] | None = None,
) -> m.OutputPipeline:
    matcher = KeywordMatcher(dictionary or {"oak": "Tree: Oak"})
    return m.OutputPipeline(matcher, writer, TempFileManager(tmp_path / "temp"))


def _temp_files(tmp_path: Path) -> list[Path]:
    temp_dir = tmp_path / "temp"
    return sorted(temp_dir.iterdir()) if temp_dir.exists() else []


def test_parameters_image_is_copied_and_tagged(tmp_path: Path) -> None:
    """The parameters scenario: description, labels and the AI label are written."""
    source = _make_png(
        tmp_path / "barn.png",
        parameters="a red barn, oak tree\nNegative prompt: blurry",
    )
    writer = _FakeMetadataWriter()
    output = tmp_path / "out"

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, output))

    assert ok is True
    destination = output / "barn.png"
    assert destination.exists()
    assert writer.calls == [
        (
            destination,
            {
                "Description": "a red barn, oak tree",
                "ImageDescription": "a red barn, oak tree",
                "Keywords": ["AI Generated", "Tree: Oak"],
                "Subject": ["AI Generated", "Tree: Oak"],
            },
        ),
    ]
    with Image.open(destination) as img:
        assert img.getpixel((0, 0)) == (255, 255, 255)
        assert img.getpixel((119, 79)) != (255, 255, 255)
    assert _temp_files(tmp_path) == []


def test_watermark_disabled_skips_overlay_and_label(tmp_path: Path) -> None:
    """Without watermarking the image is untouched and only matched labels are written."""
    source = _make_png(tmp_path / "barn.png", parameters="oak tree")
    writer = _FakeMetadataWriter()
    config = m.ProcessingConfig(add_watermark=False)

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out", config))

    assert ok is True
    _, tags = writer.calls[0]
    assert tags["Keywords"] == ["Tree: Oak"]
    with Image.open(tmp_path / "out" / "barn.png") as img:
        assert img.getpixel((119, 79)) == (255, 255, 255)
    assert _temp_files(tmp_path) == []


def test_structured_prompt_image_uses_all_entries(tmp_path: Path) -> None:
    """Every populated_text feeds keywords; only the first becomes the description."""
    source = _make_png(
        tmp_path / "peak.png",
        prompt=(
            '{"1": {"inputs": {"populated_text": "a mountain, cloudy sky"}},'
            ' "2": {"inputs": {"populated_text": "oak forest"}}}'
        ),
    )
    writer = _FakeMetadataWriter()
    dictionary = {
        "mountain": "Landscape: Mountain",
        "cloudy": "Weather: Overcast",
        "oak": "Tree: Oak",
    }
    config = m.ProcessingConfig(add_watermark=False)

    ok = asyncio.run(
        _pipeline(tmp_path, writer, dictionary).process_file(source, tmp_path / "out", config),
    )

    assert ok is True
    _, tags = writer.calls[0]
    assert tags["Description"] == "a mountain, cloudy sky"
    assert tags["Keywords"] == ["Landscape: Mountain", "Tree: Oak", "Weather: Overcast"]


def test_image_without_comments_is_skipped(tmp_path: Path) -> None:
    """No embedded text: False, nothing written, no output file."""
    source = _make_png(tmp_path / "plain.png")
    writer = _FakeMetadataWriter()
    output = tmp_path / "out"

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, output))

    assert ok is False
    assert writer.calls == []
    assert not (output / "plain.png").exists()
    assert _temp_files(tmp_path) == []


def test_image_without_usable_prompt_is_skipped(tmp_path: Path) -> None:
    """Comments that no strategy understands give False."""
    source = _make_png(tmp_path / "odd.png", prompt="{broken", Software="paint")
    writer = _FakeMetadataWriter()

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out"))

    assert ok is False
    assert writer.calls == []


def test_unsupported_extension_is_skipped(tmp_path: Path) -> None:
    """Non-PNG files are not opened."""
    source = tmp_path / "photo.jpg"
    Image.new("RGB", (8, 8)).save(source)
    writer = _FakeMetadataWriter()

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out"))

    assert ok is False
    assert writer.calls == []


def test_unreadable_image_fails_without_raising(tmp_path: Path) -> None:
    """A corrupt PNG is a failed job, not an exception."""
    source = tmp_path / "broken.png"
    source.write_bytes(b"definitely not a png")
    writer = _FakeMetadataWriter()

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out"))

    assert ok is False
    assert _temp_files(tmp_path) == []


def test_target_subfolder_is_created(tmp_path: Path) -> None:
    """Output goes into the configured subfolder, created on demand."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    writer = _FakeMetadataWriter()
    config = m.ProcessingConfig(target_subfolder="portraits")

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out", config))

    assert ok is True
    assert (tmp_path / "out" / "portraits" / "barn.png").exists()


def test_backup_left_by_metadata_tool_is_removed(tmp_path: Path) -> None:
    """'_original' backups beside the output do not survive the job."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    writer = _FakeMetadataWriter(leave_backup=True)
    output = tmp_path / "out"

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, output))

    assert ok is True
    assert sorted(p.name for p in output.iterdir()) == ["barn.png"]


def test_metadata_write_failure_removes_partial_output(tmp_path: Path) -> None:
    """A failed tag write returns False and leaves no untagged copy or scratch file."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    writer = _FakeMetadataWriter(fail=True, leave_backup=True)
    output = tmp_path / "out"

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, output))

    assert ok is False
    assert list(output.iterdir()) == []
    assert _temp_files(tmp_path) == []


def test_metadata_write_failure_can_keep_partial_output(tmp_path: Path) -> None:
    """remove_partial_output=False keeps the untagged copy in place."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    writer = _FakeMetadataWriter(fail=True)
    config = m.ProcessingConfig(remove_partial_output=False)

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, tmp_path / "out", config))

    assert ok is False
    assert (tmp_path / "out" / "barn.png").exists()
    assert _temp_files(tmp_path) == []


def test_output_dir_failure_raises_after_cleanup(tmp_path: Path) -> None:
    """An uncreatable destination propagates OutputDirectoryError with scratch cleaned."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    writer = _FakeMetadataWriter()

    with pytest.raises(m.OutputDirectoryError):
        asyncio.run(_pipeline(tmp_path, writer).process_file(source, blocker / "out"))

    assert writer.calls == []
    assert _temp_files(tmp_path) == []


def test_concurrent_jobs_share_scratch_dir_without_leftovers(tmp_path: Path) -> None:
    """Interleaved jobs each clean up their own scratch files."""
    sources = [_make_png(tmp_path / f"img{i}.png", parameters=f"oak {i}") for i in range(4)]
    writer = _FakeMetadataWriter()
    pipeline = _pipeline(tmp_path, writer)

    async def scenario() -> list[bool]:
        return await asyncio.gather(
            *(pipeline.process_file(source, tmp_path / "out") for source in sources),
        )

    assert asyncio.run(scenario()) == [True] * 4
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == [
        "img0.png",
        "img1.png",
        "img2.png",
        "img3.png",
    ]
    assert _temp_files(tmp_path) == []


def test_processing_config_output_dir() -> None:
    """Blank subfolders are ignored."""
    assert m.ProcessingConfig().output_dir(Path("out")) == Path("out")
    assert m.ProcessingConfig(target_subfolder="  ").output_dir(Path("out")) == Path("out")
    assert m.ProcessingConfig(target_subfolder="a").output_dir(Path("out")) == Path("out") / "a"


def test_cancelled_job_cleans_up_after_running_stage_finishes(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Cancellation waits for the blocking stage, so its scratch file is still removed."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    writer = _FakeMetadataWriter()
    stage_started = threading.Event()

    def slow_normalize(_source: Path, target: Path) -> None:
        stage_started.set()
        time.sleep(0.3)
        target.write_bytes(b"staged")

    monkeypatch.setattr(m, "normalize_color_profile", slow_normalize)
    pipeline = _pipeline(tmp_path, writer)

    async def scenario() -> None:
        job = asyncio.create_task(pipeline.process_file(source, tmp_path / "out"))
        await asyncio.to_thread(stage_started.wait, 5)
        job.cancel()
        with pytest.raises(asyncio.CancelledError):
            await job

    asyncio.run(scenario())

    assert writer.calls == []
    assert not (tmp_path / "out" / "barn.png").exists()
    assert _temp_files(tmp_path) == []


def test_output_named_like_a_backup_survives_later_jobs(tmp_path: Path) -> None:
    """'img_original.png' is an output of its own, not a backup of 'img.png'."""
    lookalike = _make_png(tmp_path / "img_original.png", parameters="oak")
    plain = _make_png(tmp_path / "img.png", parameters="oak")
    writer = _FakeMetadataWriter(leave_backup=True)
    pipeline = _pipeline(tmp_path, writer)
    output = tmp_path / "out"

    first = asyncio.run(pipeline.process_file(lookalike, output))
    second = asyncio.run(pipeline.process_file(plain, output))

    assert (first, second) == (True, True)
    assert sorted(p.name for p in output.iterdir()) == ["img.png", "img_original.png"]


def test_backup_present_before_the_job_is_left_alone(tmp_path: Path) -> None:
    """Only the backup written during this job is removed."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    output = tmp_path / "out"
    output.mkdir()
    earlier_backup = output / "barn.png_original"
    earlier_backup.write_bytes(b"kept by the user")

    ok = asyncio.run(_pipeline(tmp_path, _FakeMetadataWriter()).process_file(source, output))

    assert ok is True
    assert earlier_backup.read_bytes() == b"kept by the user"


def test_copy_failure_keeps_existing_output(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed copy never deletes a file this job did not create."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    output = tmp_path / "out"
    output.mkdir()
    existing = output / "barn.png"
    existing.write_bytes(b"earlier output")
    writer = _FakeMetadataWriter()

    def failing_copy(_source: Path, target: Path) -> None:  # noqa: ARG001
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(m.shutil, "copyfile", failing_copy)

    ok = asyncio.run(_pipeline(tmp_path, writer).process_file(source, output))

    assert ok is False
    assert existing.read_bytes() == b"earlier output"
    assert writer.calls == []
    assert _temp_files(tmp_path) == []


def test_copy_failure_removes_partial_new_output(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A half-written copy that this job created is removed."""
    source = _make_png(tmp_path / "barn.png", parameters="oak")
    output = tmp_path / "out"

    def partial_copy(_source: Path, target: Path) -> None:
        Path(target).write_bytes(b"partial")
        msg = "disk full"
        raise OSError(msg)

    monkeypatch.setattr(m.shutil, "copyfile", partial_copy)

    ok = asyncio.run(_pipeline(tmp_path, _FakeMetadataWriter()).process_file(source, output))

    assert ok is False
    assert list(output.iterdir()) == []
