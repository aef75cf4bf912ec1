"""Command-line interface wiring for the PGS subtitle tonemapper."""
from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import yaml

from .codec import (
    BDSup2SubCodec,
    ConverterUnavailableError,
    SubtitleCodec,
    ensure_java_available,
    locate_converter,
)
from .pipeline import BatchReport, collect_subtitles, default_workers, discover_work_items, run_batch
from .policy import DEFAULT_PERCENTAGE, TonemapPolicy, parse_color, percentage_to_ratio

LOGGER = logging.getLogger("subtitle_tonemap")


def _percentage(value: Any) -> float:
    try:
        number = float(value)
        percentage_to_ratio(number)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return number


def _hex_color(value: Any) -> tuple:
    try:
        return parse_color(str(value))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _positive_int(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def _load_config_data(path: Path) -> Mapping[str, Any]:
    """Load option defaults from a JSON or YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the content cannot be parsed or is not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(path.read_text())
        else:
            data = json.loads(path.read_text())
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ValueError(f"Unable to parse configuration file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Configuration file {path} must contain a mapping of option names to values")
    return data


_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


def _config_options(parser: argparse.ArgumentParser) -> dict[str, argparse.Action]:
    """Index the long flags by their config key (``image_workers`` for ``--image-workers``)."""

    options: dict[str, argparse.Action] = {}
    for flag, action in parser._option_string_actions.items():  # pylint: disable=protected-access
        if flag.startswith("--") and action.dest not in {"help", "config"}:
            options[flag[2:].replace("-", "_")] = action
    return options


def _config_value(action: argparse.Action, value: Any, *, source: Path, key: str) -> Any:
    if isinstance(action, argparse._StoreTrueAction):  # pylint: disable=protected-access
        if isinstance(value, bool):
            return value
        word = str(value).strip().lower()
        if word in _TRUE_WORDS or word in _FALSE_WORDS:
            return word in _TRUE_WORDS
        raise ValueError(f"Invalid boolean for '{key}' in {source}: {value!r}")

    try:
        converted = action.type(value) if action.type is not None else value
    except (argparse.ArgumentTypeError, TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value for '{key}' in {source}: {exc}") from exc
    if action.choices is not None and converted not in action.choices:
        raise ValueError(f"Invalid value for '{key}' in {source}: {converted!r}")
    return converted


def _apply_config_defaults(parser: argparse.ArgumentParser, config_path: Path) -> None:
    options = _config_options(parser)
    defaults: dict[str, Any] = {}
    for key, value in _load_config_data(config_path).items():
        action = options.get(str(key).replace("-", "_"))
        if action is None:
            raise ValueError(f"Unknown configuration option '{key}' in {config_path}")
        defaults[action.dest] = _config_value(action, value, source=config_path, key=key)

    if "output" in defaults:
        options["output"].required = False
    parser.set_defaults(**defaults)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="subtitle-tonemap",
        description="Tonemap PGS subtitles: dim or recolor every glyph of .sup files.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional JSON or YAML file providing defaults for any option",
    )
    parser.add_argument("input", type=Path, help="A .sup file or a folder containing .sup files")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        required=True,
        help="Folder where tonemapped subtitles are written (created if missing)",
    )
    parser.add_argument(
        "-p",
        "--percentage",
        type=_percentage,
        default=DEFAULT_PERCENTAGE,
        help="Brightness percentage between 0 and 100",
    )
    parser.add_argument(
        "-f",
        "--fixed",
        action="store_true",
        help="Recolor glyphs to a fixed base color scaled by their relative lightness",
    )
    parser.add_argument(
        "-c",
        "--color",
        type=_hex_color,
        default=None,
        help="Base color for --fixed as six hex digits (RRGGBB); defaults to white",
    )
    parser.add_argument(
        "--converter",
        type=Path,
        default=None,
        help="Path to BDSup2Sub512.jar (defaults to $SUBTITLE_TONEMAP_CONVERTER or the program folder)",
    )
    parser.add_argument("--java", default="java", help="Java executable used to run the converter")
    parser.add_argument(
        "--work-dir",
        type=Path,
        default=None,
        dest="work_dir",
        help="Folder for temporary per-file working directories. Defaults to the output folder.",
    )
    parser.add_argument(
        "--workers",
        type=_positive_int,
        default=default_workers(),
        help="Number of subtitle files processed in parallel",
    )
    parser.add_argument(
        "--image-workers",
        type=_positive_int,
        default=default_workers(),
        dest="image_workers",
        help="Number of glyph images tonemapped in parallel per subtitle file",
    )
    parser.add_argument(
        "--keep-temp",
        action="store_true",
        dest="keep_temp",
        help="Keep working directories of successfully processed files",
    )
    parser.add_argument("--dry-run", action="store_true", help="List the planned work without running it")
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress reporting (useful for non-interactive environments)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    argv_list = list(argv) if argv is not None else None

    config_reader = argparse.ArgumentParser(add_help=False)
    config_reader.add_argument("--config", type=Path, default=None)
    preliminary, _ = config_reader.parse_known_args(argv_list)
    if preliminary.config is not None:
        try:
            _apply_config_defaults(parser, preliminary.config)
        except (OSError, ValueError) as exc:
            parser.error(str(exc))

    args = parser.parse_args(argv_list)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")
    if args.color is not None and not args.fixed:
        LOGGER.warning("--color only applies to --fixed mode; ignoring %s", args.color)
    return args


def build_policy(args: argparse.Namespace) -> TonemapPolicy:
    """Construct the run's immutable tonemap policy from parsed arguments."""

    policy = TonemapPolicy.from_percentage(args.percentage, fixed=args.fixed, base_color=args.color)
    LOGGER.debug("Using policy: %s", policy)
    return policy


def build_codec(args: argparse.Namespace) -> SubtitleCodec:
    """Resolve the converter before any work item is scheduled.

    Raises:
        SystemExit: If the converter archive or Java runtime is missing.
    """
    try:
        jar = locate_converter(args.converter)
        ensure_java_available(args.java)
    except ConverterUnavailableError as exc:
        raise SystemExit(str(exc)) from exc
    LOGGER.debug("Using converter %s", jar)
    return BDSup2SubCodec(jar=jar, java=args.java)


def _ensure_distinct_output(input_path: Path, output_root: Path) -> None:
    input_dir = input_path if input_path.is_dir() else input_path.parent
    if input_dir == output_root:
        raise SystemExit("Output folder must be different from the input folder to avoid self-overwrites.")


def run_pipeline(args: argparse.Namespace, codec: Optional[SubtitleCodec] = None) -> BatchReport:
    """Run the batch tonemapper with the provided arguments."""

    start = time.perf_counter()
    run_id = uuid.uuid4().hex
    policy = build_policy(args)
    input_path = args.input.resolve()
    output_root = args.output.resolve()
    work_root = args.work_dir.resolve() if args.work_dir is not None else output_root

    if not input_path.exists():
        raise SystemExit(f"Input path not found: {input_path}")
    _ensure_distinct_output(input_path, output_root)

    sources = collect_subtitles(input_path)
    items = discover_work_items(sources)
    if not items:
        LOGGER.warning("No .sup files found in %s (run %s)", input_path, run_id)
        return BatchReport(results=(), elapsed=time.perf_counter() - start)

    LOGGER.info("Starting batch run %s: %d subtitle file(s), %s", run_id, len(items), policy.describe())

    if args.dry_run:
        for item in items:
            LOGGER.info(
                "Dry run: would tonemap %s -> %s (working dir %s)",
                item.source,
                output_root / item.source.name,
                work_root / item.working_name,
            )
        return BatchReport(results=(), elapsed=time.perf_counter() - start)

    if codec is None:
        codec = build_codec(args)

    try:
        output_root.mkdir(parents=True, exist_ok=True)
        work_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SystemExit(f"Unable to create output folder {output_root}: {exc}") from exc

    report = run_batch(
        items,
        policy,
        codec,
        output_root,
        workers=args.workers,
        image_workers=args.image_workers,
        work_root=work_root,
        keep_temp=args.keep_temp,
        progress=not args.no_progress,
    )

    for result in report.failures:
        LOGGER.error("Failed: %s (%s stage): %s", result.item.source.name, result.failed_stage, result.error)
    for result in report.cleanup_failures:
        LOGGER.warning("Working directory left behind for %s: %s", result.item.source.name, result.cleanup_error)

    LOGGER.info(
        "Finished batch run %s; %d succeeded, %d failed. Done: %.2fs elapsed",
        run_id,
        len(report.succeeded),
        len(report.failures),
        time.perf_counter() - start,
    )
    return report


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    report = run_pipeline(args)
    return 1 if report.failures else 0


__all__ = [
    "build_codec",
    "build_parser",
    "build_policy",
    "main",
    "parse_args",
    "run_pipeline",
]
