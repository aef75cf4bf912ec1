"""Image tonemapping and per-file pipeline orchestration.

Each input subtitle file is a :class:`WorkItem` that runs through four stages:

extract
    The converter unpacks the file into ``<work_root>/sub<index>/``.
tonemap
    Every glyph PNG in that directory is remapped in place, in parallel.
merge
    The converter packs the directory into ``<output_root>/<file name>``.
cleanup
    The working directory is removed.

A failed stage skips the remaining stages of its item only. :func:`run_batch`
runs all items on a thread pool and collects a :class:`BatchReport`.
"""
from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from tqdm import tqdm as _tqdm

from .codec import ExternalToolError, PipelineError, SubtitleCodec
from .color import apply_tonemap
from .io_utils import IMAGE_SUFFIX, ImageError, load_rgba, save_rgba
from .policy import TonemapPolicy

LOGGER = logging.getLogger("subtitle_tonemap")
WORKER_LOGGER = LOGGER.getChild("worker")

SUBTITLE_SUFFIX = ".sup"

T = TypeVar("T")


class ImageStageError(PipelineError):
    """At least one glyph image of a work item failed to tonemap."""

    def __init__(self, error: ImageError, *, stage: str = "tonemap") -> None:
        super().__init__(str(error), stage=stage)
        self.image_error = error


def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


def _tqdm_progress(iterable: Iterable[T], *, total: Optional[int], description: Optional[str]) -> Iterable[T]:
    return _tqdm(iterable, total=total, desc=description, unit="file")


_PROGRESS_WRAPPER = _tqdm_progress


def _wrap_with_progress(
    iterable: Iterable[T],
    *,
    total: Optional[int],
    description: str,
    enabled: bool,
) -> Iterable[T]:
    """Return an iterable wrapped with the progress helper when enabled."""

    if not enabled:
        return iterable
    return _PROGRESS_WRAPPER(iterable, total=total, description=description)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class WorkItem:
    """One input subtitle file and its deterministic working-directory index."""

    index: int
    source: Path

    @property
    def working_name(self) -> str:
        return f"sub{self.index}"


def collect_subtitles(input_path: Path) -> List[Path]:
    """Return the ``.sup`` files named by *input_path*, sorted by name.

    *input_path* may be a single subtitle file or a directory, which is not
    searched recursively.
    """
    if input_path.is_dir():
        return sorted(
            path
            for path in input_path.iterdir()
            if path.is_file() and path.suffix.lower() == SUBTITLE_SUFFIX
        )
    if input_path.is_file() and input_path.suffix.lower() == SUBTITLE_SUFFIX:
        return [input_path]
    return []


def discover_work_items(paths: Iterable[Path]) -> List[WorkItem]:
    return [WorkItem(index=index, source=Path(path)) for index, path in enumerate(paths)]


def collect_images(folder: Path) -> List[Path]:
    return sorted(
        path for path in folder.iterdir() if path.is_file() and path.suffix.lower() == IMAGE_SUFFIX
    )


def output_path_for(item: WorkItem, output_root: Path) -> Path:
    return output_root / item.source.name


# ---------------------------------------------------------------------------
# Image tonemapping
# ---------------------------------------------------------------------------


def tonemap_image(path: Path, policy: TonemapPolicy) -> Path:
    """Tonemap the glyph image at *path* in place.

    Raises:
        ImageDecodeError: If *path* is not a readable image.
        ImageWriteError: If the result cannot be written back.
    """
    rgba = load_rgba(path)
    apply_tonemap(rgba, policy)
    save_rgba(path, rgba)
    return path


def tonemap_directory(
    directory: Path,
    policy: TonemapPolicy,
    *,
    workers: Optional[int] = None,
) -> List[Path]:
    """Tonemap every PNG in *directory* using a thread pool.

    All submitted images are attempted; the first :class:`ImageError` is raised
    once the pool has drained. Images already written are kept.
    """
    images = collect_images(directory)
    if not images:
        WORKER_LOGGER.warning("No images found in %s", directory)
        return []

    max_workers = min(workers or default_workers(), len(images))
    done: List[Path] = []
    first_error: Optional[ImageError] = None
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(tonemap_image, image, policy) for image in images]
        for future in futures:
            try:
                done.append(future.result())
            except ImageError as exc:
                WORKER_LOGGER.error("%s", exc)
                if first_error is None:
                    first_error = exc
    if first_error is not None:
        raise first_error
    WORKER_LOGGER.debug("Tonemapped %d image(s) in %s", len(done), directory)
    return done


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class StageResult:
    """Tagged outcome of a pipeline stage.

    ``value`` is the path handed to the next stage on success; ``error`` is set
    on failure and short-circuits every following :meth:`and_then`.
    """

    stage: str
    value: Optional[Path] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, stage: str, value: Path) -> "StageResult":
        return cls(stage=stage, value=value)

    def and_then(self, stage: str, func: Callable[[Path], Path]) -> "StageResult":
        if not self.ok:
            return self
        assert self.value is not None
        try:
            return StageResult(stage=stage, value=func(self.value))
        except PipelineError as exc:
            exc.stage = stage
            return StageResult(stage=stage, error=exc)
        except ImageError as exc:
            return StageResult(stage=stage, error=ImageStageError(exc, stage=stage))
        except OSError as exc:
            error = PipelineError(f"Filesystem error during {stage}: {exc}", stage=stage)
            error.__cause__ = exc
            return StageResult(stage=stage, error=error)


def _is_converter_output(path: Path) -> bool:
    name = path.name
    return path.is_file() and (
        path.suffix.lower() in {IMAGE_SUFFIX, ".xml"} or (name.startswith(".") and ".tmp-" in name)
    )


def _prepare_working_directory(working_dir: Path) -> None:
    """Create an empty *working_dir*, clearing what an earlier run left behind.

    Raises:
        PipelineError: If the directory holds anything the converter did not write.
    """
    if working_dir.exists():
        foreign = sorted(path.name for path in working_dir.iterdir() if not _is_converter_output(path))
        if foreign:
            raise PipelineError(
                f"Working directory {working_dir} contains unrelated files ({', '.join(foreign)}); "
                "move them or choose another --work-dir"
            )
        WORKER_LOGGER.info("Clearing leftover working directory %s", working_dir)
        shutil.rmtree(working_dir)
    working_dir.mkdir(parents=True)


def extract_subtitle(source: Path, *, item: WorkItem, codec: SubtitleCodec, work_root: Path) -> Path:
    working_dir = work_root / item.working_name
    _prepare_working_directory(working_dir)
    markup = working_dir / f"{item.working_name}.xml"
    WORKER_LOGGER.debug("Extracting %s into %s", source, working_dir)
    return Path(codec.extract(source, markup))


def tonemap_working_directory(
    markup: Path, *, policy: TonemapPolicy, workers: Optional[int] = None
) -> Path:
    tonemap_directory(markup.parent, policy, workers=workers)
    return markup


def merge_subtitle(markup: Path, *, destination: Path, codec: SubtitleCodec) -> Path:
    WORKER_LOGGER.debug("Merging %s into %s", markup, destination)
    codec.merge(markup, destination)
    if not destination.exists():
        raise ExternalToolError(f"Converter reported success but {destination} was not written")
    return markup


def cleanup_working_directory(markup: Path) -> Path:
    working_dir = markup.parent
    shutil.rmtree(working_dir)
    return working_dir


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class WorkItemResult:
    """Outcome of one work item.

    Attributes:
        item: The processed work item.
        output: Written subtitle file, ``None`` when the item failed.
        error: First stage error, ``None`` on success.
        cleanup_error: Cleanup failure; reported but never marks the item failed.
    """

    item: WorkItem
    output: Optional[Path] = None
    error: Optional[PipelineError] = None
    cleanup_error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failed_stage(self) -> Optional[str]:
        return None if self.error is None else self.error.stage


def process_work_item(
    item: WorkItem,
    policy: TonemapPolicy,
    codec: SubtitleCodec,
    output_root: Path,
    *,
    work_root: Optional[Path] = None,
    image_workers: Optional[int] = None,
    keep_temp: bool = False,
) -> WorkItemResult:
    """Run extract -> tonemap -> merge -> cleanup for a single subtitle file."""

    work_root = work_root if work_root is not None else output_root
    destination = output_path_for(item, output_root)
    WORKER_LOGGER.info("Tonemapping %s -> %s", item.source, destination)

    result = (
        StageResult.success("discover", item.source)
        .and_then("extract", partial(extract_subtitle, item=item, codec=codec, work_root=work_root))
        .and_then("tonemap", partial(tonemap_working_directory, policy=policy, workers=image_workers))
        .and_then("merge", partial(merge_subtitle, destination=destination, codec=codec))
    )
    if not result.ok:
        WORKER_LOGGER.error("%s failed during %s: %s", item.source.name, result.stage, result.error)
        return WorkItemResult(item=item, error=result.error)

    cleanup_error: Optional[PipelineError] = None
    if keep_temp:
        WORKER_LOGGER.debug("Keeping working directory %s", result.value)
    else:
        cleanup = result.and_then("cleanup", cleanup_working_directory)
        if not cleanup.ok:
            cleanup_error = cleanup.error
            WORKER_LOGGER.warning("Cleanup failed for %s: %s", item.source.name, cleanup_error)
    return WorkItemResult(item=item, output=destination, cleanup_error=cleanup_error)


# ---------------------------------------------------------------------------
# Batch scheduling
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class BatchReport:
    results: Tuple[WorkItemResult, ...]
    elapsed: float

    @property
    def succeeded(self) -> List[WorkItemResult]:
        return [result for result in self.results if result.ok]

    @property
    def failures(self) -> List[WorkItemResult]:
        return [result for result in self.results if not result.ok]

    @property
    def cleanup_failures(self) -> List[WorkItemResult]:
        return [result for result in self.results if result.cleanup_error is not None]


def run_batch(
    items: Sequence[WorkItem],
    policy: TonemapPolicy,
    codec: SubtitleCodec,
    output_root: Path,
    *,
    workers: Optional[int] = None,
    image_workers: Optional[int] = None,
    work_root: Optional[Path] = None,
    keep_temp: bool = False,
    progress: bool = True,
) -> BatchReport:
    """Process every work item on a bounded thread pool.

    A failing item never stops the others; its error is recorded in the
    returned report, which lists results in item order.
    """
    start = time.perf_counter()
    results: List[WorkItemResult] = []
    if not items:
        return BatchReport(results=(), elapsed=time.perf_counter() - start)

    max_workers = min(workers or default_workers(), len(items))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(
                process_work_item,
                item,
                policy,
                codec,
                output_root,
                work_root=work_root,
                image_workers=image_workers,
                keep_temp=keep_temp,
            ): item
            for item in items
        }
        completed = _wrap_with_progress(
            as_completed(futures),
            total=len(futures),
            description="Tonemapping subtitles",
            enabled=progress,
        )
        for future in completed:
            item = futures[future]
            try:
                results.append(future.result())
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.exception("Unexpected failure while processing %s", item.source)
                error = PipelineError(f"Unexpected error: {exc}")
                error.__cause__ = exc
                results.append(WorkItemResult(item=item, error=error))

    results.sort(key=lambda result: result.item.index)
    return BatchReport(results=tuple(results), elapsed=time.perf_counter() - start)


__all__ = [
    "BatchReport",
    "ImageStageError",
    "StageResult",
    "SUBTITLE_SUFFIX",
    "WorkItem",
    "WorkItemResult",
    "cleanup_working_directory",
    "collect_images",
    "collect_subtitles",
    "default_workers",
    "discover_work_items",
    "extract_subtitle",
    "merge_subtitle",
    "output_path_for",
    "process_work_item",
    "run_batch",
    "tonemap_directory",
    "tonemap_image",
    "tonemap_working_directory",
]
