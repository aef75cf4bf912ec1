from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import numpy as np
import pytest
from PIL import Image

import subtitle_tonemap as tonemap
from subtitle_tonemap import io_utils, pipeline
from subtitle_tonemap.pipeline import StageResult, WorkItem

from .documentation import documents
from .fakes import FakeCodec, GLYPH_PIXELS, read_glyph, write_glyph

PROPORTIONAL = tonemap.TonemapPolicy(ratio=0.6)


def _make_inputs(folder: Path, names=("a.sup", "b.sup", "c.sup")) -> list:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = folder / name
        path.write_bytes(b"PG\x00\x00")
        paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# Image tonemapper
# ---------------------------------------------------------------------------


def test_tonemap_image_rewrites_file_in_place(tmp_path: Path):
    glyph = tmp_path / "glyph.png"
    write_glyph(glyph)

    assert tonemap.tonemap_image(glyph, PROPORTIONAL) == glyph

    result = read_glyph(glyph)
    assert tuple(result[0, 0]) == (120, 60, 30, 255)
    assert tuple(result[0, 1]) == (144, 144, 144, 255)
    assert tuple(result[0, 2]) == GLYPH_PIXELS[2]
    assert tuple(result[0, 3]) == GLYPH_PIXELS[3]
    assert not list(tmp_path.glob(".glyph.png.tmp*"))


def test_tonemap_image_expands_palette_images(tmp_path: Path):
    glyph = tmp_path / "palette.png"
    Image.new("RGBA", (2, 2), (200, 100, 50, 255)).convert("P").save(glyph)

    tonemap.tonemap_image(glyph, PROPORTIONAL)

    with Image.open(glyph) as image:
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0))[3] == 255


def test_tonemap_image_fixed_mode_uses_image_reference(tmp_path: Path):
    glyph = tmp_path / "glyph.png"
    write_glyph(glyph, [(200, 200, 200, 255), (100, 100, 100, 255)])
    policy = tonemap.TonemapPolicy(ratio=1.0, mode="fixed", base_color=(255, 136, 0))

    tonemap.tonemap_image(glyph, policy)

    result = read_glyph(glyph)
    assert tuple(result[0, 0]) == (255, 136, 0, 255)
    assert tuple(result[0, 1]) == (128, 68, 0, 255)


def test_tonemap_image_rejects_non_images(tmp_path: Path):
    bogus = tmp_path / "bogus.png"
    bogus.write_bytes(b"not an image")

    with pytest.raises(tonemap.ImageDecodeError) as excinfo:
        tonemap.tonemap_image(bogus, PROPORTIONAL)

    assert excinfo.value.path == bogus


def test_tonemap_image_write_failure_keeps_original(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    glyph = tmp_path / "glyph.png"
    original = write_glyph(glyph)

    def failing_replace(src, dst):
        raise PermissionError("read-only")

    monkeypatch.setattr(io_utils.os, "replace", failing_replace)

    with pytest.raises(tonemap.ImageWriteError):
        tonemap.tonemap_image(glyph, PROPORTIONAL)

    np.testing.assert_array_equal(read_glyph(glyph), original)
    assert not list(tmp_path.glob(".glyph.png.tmp*"))


def test_tonemap_directory_processes_every_png(tmp_path: Path):
    for index in range(4):
        write_glyph(tmp_path / f"sub0_{index}.png")
    (tmp_path / "sub0.xml").write_text("<BDN/>")

    done = tonemap.tonemap_directory(tmp_path, PROPORTIONAL, workers=2)

    assert [path.name for path in done] == [f"sub0_{index}.png" for index in range(4)]
    for path in done:
        assert tuple(read_glyph(path)[0, 0]) == (120, 60, 30, 255)


@documents("A broken glyph fails the directory without rolling back its siblings")
def test_tonemap_directory_reports_first_failure_after_draining(tmp_path: Path):
    write_glyph(tmp_path / "a.png")
    (tmp_path / "b.png").write_bytes(b"garbage")
    write_glyph(tmp_path / "c.png")

    with pytest.raises(tonemap.ImageDecodeError):
        tonemap.tonemap_directory(tmp_path, PROPORTIONAL, workers=3)

    assert tuple(read_glyph(tmp_path / "a.png")[0, 0]) == (120, 60, 30, 255)
    assert tuple(read_glyph(tmp_path / "c.png")[0, 0]) == (120, 60, 30, 255)


# ---------------------------------------------------------------------------
# Stage chaining
# ---------------------------------------------------------------------------


def test_stage_result_short_circuits_after_failure(tmp_path: Path):
    calls = []

    def boom(path: Path) -> Path:
        raise tonemap.ExternalToolError("exit 1")

    def record(path: Path) -> Path:
        calls.append(path)
        return path

    result = StageResult.success("discover", tmp_path).and_then("extract", boom).and_then("merge", record)

    assert not result.ok
    assert result.stage == "extract"
    assert result.error.stage == "extract"
    assert calls == []


def test_stage_result_wraps_image_and_filesystem_errors(tmp_path: Path):
    def bad_image(path: Path) -> Path:
        raise tonemap.ImageDecodeError(path, "Unable to decode image")

    def bad_disk(path: Path) -> Path:
        raise FileNotFoundError(path)

    image_result = StageResult.success("extract", tmp_path).and_then("tonemap", bad_image)
    disk_result = StageResult.success("merge", tmp_path).and_then("cleanup", bad_disk)

    assert isinstance(image_result.error, tonemap.ImageStageError)
    assert isinstance(image_result.error.image_error, tonemap.ImageDecodeError)
    assert isinstance(disk_result.error, tonemap.PipelineError)
    assert disk_result.error.stage == "cleanup"


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


def test_collect_subtitles_handles_files_and_folders(tmp_path: Path):
    _make_inputs(tmp_path, ("b.sup", "a.SUP", "notes.txt"))
    (tmp_path / "nested").mkdir()
    _make_inputs(tmp_path / "nested", ("deep.sup",))

    assert [p.name for p in tonemap.collect_subtitles(tmp_path)] == ["a.SUP", "b.sup"]
    assert tonemap.collect_subtitles(tmp_path / "b.sup") == [tmp_path / "b.sup"]
    assert tonemap.collect_subtitles(tmp_path / "notes.txt") == []


def test_discover_work_items_assigns_deterministic_names(tmp_path: Path):
    items = tonemap.discover_work_items(_make_inputs(tmp_path))

    assert [item.index for item in items] == [0, 1, 2]
    assert [item.working_name for item in items] == ["sub0", "sub1", "sub2"]


def test_process_work_item_runs_all_stages(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    output.mkdir()
    codec = FakeCodec()

    result = tonemap.process_work_item(WorkItem(0, source), PROPORTIONAL, codec, output)

    assert result.ok
    assert result.output == output / "movie.sup"
    assert result.output.exists()
    assert [call[0] for call in codec.calls] == ["extract", "merge"]
    merged = codec.merged[output / "movie.sup"]
    assert len(merged) == 3
    assert all(tuple(glyph[0, 0]) == (120, 60, 30, 255) for glyph in merged)
    assert not (output / "sub0").exists()


def test_process_work_item_keep_temp_leaves_working_directory(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    work = tmp_path / "work"
    output.mkdir()

    result = tonemap.process_work_item(
        WorkItem(4, source), PROPORTIONAL, FakeCodec(), output, work_root=work, keep_temp=True
    )

    assert result.ok
    assert (work / "sub4" / "sub4.xml").exists()
    assert len(list((work / "sub4").glob("*.png"))) == 3


def test_process_work_item_merge_failure_keeps_working_directory(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    output.mkdir()

    result = tonemap.process_work_item(
        WorkItem(0, source), PROPORTIONAL, FakeCodec(fail_merge={"movie.sup"}), output
    )

    assert not result.ok
    assert result.failed_stage == "merge"
    assert isinstance(result.error, tonemap.ExternalToolError)
    assert result.output is None
    assert (output / "sub0").is_dir()
    assert not (output / "movie.sup").exists()


@documents("A rerun clears glyphs left in the working directory by a failed run")
def test_process_work_item_clears_stale_working_directory(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    (output / "sub0").mkdir(parents=True)
    (output / "sub0" / "stale.png").write_bytes(b"\x89PNG truncated")
    (output / "sub0" / "sub0.xml").write_text("<BDN/>")
    codec = FakeCodec()

    result = tonemap.process_work_item(WorkItem(0, source), PROPORTIONAL, codec, output)

    assert result.ok
    assert len(codec.merged[output / "movie.sup"]) == 3
    assert not (output / "sub0").exists()


@documents("Unrelated files in a working directory are never deleted")
def test_process_work_item_refuses_foreign_working_directory(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    (output / "sub0").mkdir(parents=True)
    (output / "sub0" / "notes.txt").write_text("keep me")
    codec = FakeCodec()

    result = tonemap.process_work_item(WorkItem(0, source), PROPORTIONAL, codec, output)

    assert not result.ok
    assert result.failed_stage == "extract"
    assert "notes.txt" in str(result.error)
    assert codec.calls == []
    assert (output / "sub0" / "notes.txt").read_text() == "keep me"


def test_process_work_item_image_failure_skips_merge(tmp_path: Path):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    output.mkdir()

    class CorruptingCodec(FakeCodec):
        def extract(self, source: Path, markup: Path) -> Path:
            super().extract(source, markup)
            (markup.parent / "broken.png").write_bytes(b"\x89PNG broken")
            return markup

    codec = CorruptingCodec()
    result = tonemap.process_work_item(WorkItem(0, source), PROPORTIONAL, codec, output)

    assert result.failed_stage == "tonemap"
    assert isinstance(result.error, tonemap.ImageStageError)
    assert [call[0] for call in codec.calls] == ["extract"]


@documents("Cleanup failures are reported without failing an otherwise successful item")
def test_process_work_item_cleanup_failure_is_not_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    source = _make_inputs(tmp_path / "in", ("movie.sup",))[0]
    output = tmp_path / "out"
    output.mkdir()

    def failing_rmtree(path, *args, **kwargs):
        raise PermissionError(f"busy: {path}")

    monkeypatch.setattr(pipeline.shutil, "rmtree", failing_rmtree)

    result = tonemap.process_work_item(WorkItem(0, source), PROPORTIONAL, FakeCodec(), output)

    assert result.ok
    assert result.output == output / "movie.sup"
    assert result.cleanup_error is not None
    assert result.cleanup_error.stage == "cleanup"


# ---------------------------------------------------------------------------
# Batch scheduling
# ---------------------------------------------------------------------------


@documents("Every file gets an output and no working directory survives a clean run")
def test_run_batch_processes_every_file(tmp_path: Path):
    items = tonemap.discover_work_items(_make_inputs(tmp_path / "in"))
    output = tmp_path / "out"
    output.mkdir()

    report = tonemap.run_batch(items, PROPORTIONAL, FakeCodec(), output, workers=3, progress=False)

    assert len(report.succeeded) == 3
    assert report.failures == []
    assert sorted(p.name for p in output.iterdir()) == ["a.sup", "b.sup", "c.sup"]
    assert not list(output.glob("sub*"))
    assert report.elapsed >= 0.0


@documents("One failing file never stops the rest of the batch")
def test_run_batch_isolates_failing_items(tmp_path: Path):
    items = tonemap.discover_work_items(_make_inputs(tmp_path / "in"))
    output = tmp_path / "out"
    output.mkdir()

    report = tonemap.run_batch(
        items, PROPORTIONAL, FakeCodec(fail_extract={"b.sup"}), output, workers=2, progress=False
    )

    assert [result.item.source.name for result in report.results] == ["a.sup", "b.sup", "c.sup"]
    assert [result.item.source.name for result in report.failures] == ["b.sup"]
    assert report.failures[0].failed_stage == "extract"
    assert (output / "a.sup").exists()
    assert (output / "c.sup").exists()
    assert not (output / "b.sup").exists()
    assert not (output / "sub0").exists()
    assert not (output / "sub2").exists()


def test_run_batch_records_unexpected_exceptions(tmp_path: Path):
    items = tonemap.discover_work_items(_make_inputs(tmp_path / "in", ("a.sup", "b.sup")))
    output = tmp_path / "out"
    output.mkdir()

    class ExplodingCodec(FakeCodec):
        def extract(self, source: Path, markup: Path) -> Path:
            if source.name == "a.sup":
                raise RuntimeError("converter crashed")
            return super().extract(source, markup)

    report = tonemap.run_batch(items, PROPORTIONAL, ExplodingCodec(), output, progress=False)

    assert [result.item.source.name for result in report.failures] == ["a.sup"]
    assert "converter crashed" in str(report.failures[0].error)
    assert (output / "b.sup").exists()


def test_run_batch_without_items_returns_empty_report(tmp_path: Path):
    report = tonemap.run_batch([], PROPORTIONAL, FakeCodec(), tmp_path)

    assert report.results == ()


def test_run_batch_invokes_progress_wrapper(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    items = tonemap.discover_work_items(_make_inputs(tmp_path / "in", ("a.sup", "b.sup")))
    output = tmp_path / "out"
    output.mkdir()
    calls: Dict[str, Any] = {"called": False, "count": 0}

    def stub_progress(iterable, *, total=None, description=None):
        calls["called"] = True
        calls["total"] = total
        calls["description"] = description
        for item in iterable:
            calls["count"] += 1
            yield item

    monkeypatch.setattr(pipeline, "_PROGRESS_WRAPPER", stub_progress)

    tonemap.run_batch(items, PROPORTIONAL, FakeCodec(), output, progress=True)

    assert calls["called"] is True
    assert calls["total"] == 2
    assert calls["count"] == 2
    assert "Tonemapping" in calls["description"]


def test_run_batch_progress_disabled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    items = tonemap.discover_work_items(_make_inputs(tmp_path / "in", ("a.sup",)))
    output = tmp_path / "out"
    output.mkdir()
    calls = {"called": False}

    def stub_progress(iterable, *, total=None, description=None):
        calls["called"] = True
        yield from iterable

    monkeypatch.setattr(pipeline, "_PROGRESS_WRAPPER", stub_progress)

    tonemap.run_batch(items, PROPORTIONAL, FakeCodec(), output, progress=False)

    assert calls["called"] is False
