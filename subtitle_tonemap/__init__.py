"""Batch tonemapping for PGS (``.sup``) subtitles.

Each subtitle file is unpacked into per-glyph PNG images by an external
converter (BDSup2Sub), every glyph is dimmed or recolored, and the images are
packed back into a subtitle file.

Module Organization
-------------------

policy
    Immutable tonemap policy plus percentage and color parsing.

color
    Per-pixel color transform and its vectorised image counterpart.

io_utils
    Glyph image decoding and staged PNG writes.

codec
    The external converter protocol and its BDSup2Sub implementation.

pipeline
    Image tonemapping, the extract/tonemap/merge/cleanup stages and the batch
    scheduler.

cli
    Command-line interface.

Example Usage
-------------

    from subtitle_tonemap import (
        BDSup2SubCodec,
        TonemapPolicy,
        collect_subtitles,
        discover_work_items,
        run_batch,
    )

    items = discover_work_items(collect_subtitles(Path("subs")))
    report = run_batch(
        items,
        TonemapPolicy.from_percentage(60),
        BDSup2SubCodec(jar=Path("BDSup2Sub512.jar")),
        Path("out"),
    )
"""
from __future__ import annotations

import logging

from .cli import build_codec, build_parser, build_policy, main, parse_args, run_pipeline
from .codec import (
    BDSup2SubCodec,
    ConverterUnavailableError,
    ExternalToolError,
    PipelineError,
    SubtitleCodec,
    ensure_java_available,
    locate_converter,
)
from .color import apply_tonemap, lightness, reference_brightness, transform_pixel
from .io_utils import ImageDecodeError, ImageError, ImageWriteError, load_rgba, save_rgba
from .pipeline import (
    BatchReport,
    ImageStageError,
    StageResult,
    WorkItem,
    WorkItemResult,
    collect_subtitles,
    discover_work_items,
    process_work_item,
    run_batch,
    tonemap_directory,
    tonemap_image,
)
from .policy import DEFAULT_BASE_COLOR, TonemapMode, TonemapPolicy, parse_color, percentage_to_ratio

LOGGER = logging.getLogger("subtitle_tonemap")

__all__ = [
    "BDSup2SubCodec",
    "BatchReport",
    "ConverterUnavailableError",
    "DEFAULT_BASE_COLOR",
    "ExternalToolError",
    "ImageDecodeError",
    "ImageError",
    "ImageStageError",
    "ImageWriteError",
    "PipelineError",
    "StageResult",
    "SubtitleCodec",
    "TonemapMode",
    "TonemapPolicy",
    "WorkItem",
    "WorkItemResult",
    "apply_tonemap",
    "build_codec",
    "build_parser",
    "build_policy",
    "collect_subtitles",
    "discover_work_items",
    "ensure_java_available",
    "lightness",
    "load_rgba",
    "locate_converter",
    "main",
    "parse_args",
    "parse_color",
    "percentage_to_ratio",
    "process_work_item",
    "reference_brightness",
    "run_batch",
    "run_pipeline",
    "save_rgba",
    "tonemap_directory",
    "tonemap_image",
    "transform_pixel",
]
