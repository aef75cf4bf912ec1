"""External PGS converter wrapper.

The PGS container is never parsed here. BDSup2Sub unpacks a ``.sup`` file into
an XML timing file plus one PNG per glyph, and packs such a directory back into
a ``.sup`` file. The pipeline only depends on the :class:`SubtitleCodec`
protocol so tests can substitute an in-process fake.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

LOGGER = logging.getLogger("subtitle_tonemap")

DEFAULT_JAR_NAME = "BDSup2Sub512.jar"
CONVERTER_ENV_VAR = "SUBTITLE_TONEMAP_CONVERTER"
STDERR_TAIL_LINES = 20


class PipelineError(RuntimeError):
    """A work item failed in one of its pipeline stages."""

    def __init__(self, message: str, *, stage: str = "unknown") -> None:
        super().__init__(message)
        self.stage = stage


class ExternalToolError(PipelineError):
    """The external converter could not be started or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "unknown",
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, stage=stage)
        self.returncode = returncode
        self.stderr = stderr


class ConverterUnavailableError(RuntimeError):
    """The converter archive or the Java runtime is missing."""


class SubtitleCodec(Protocol):
    """Unpacks subtitle files into glyph images and packs them back."""

    def extract(self, source: Path, markup: Path) -> Path:
        """Unpack *source* next to *markup* and return the markup path."""

    def merge(self, markup: Path, destination: Path) -> Path:
        """Pack the directory holding *markup* into *destination*."""


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


@dataclass(frozen=True)
class BDSup2SubCodec:
    """:class:`SubtitleCodec` backed by ``java -jar BDSup2Sub512.jar``.

    Attributes:
        jar: Path to the BDSup2Sub archive.
        java: Java executable name or path.
    """

    jar: Path
    java: str = "java"

    def command(self, source: Path, destination: Path) -> List[str]:
        # "-T keep" preserves the glyph transparency in both directions.
        return [
            self.java,
            "-jar",
            os.fspath(self.jar),
            "-T",
            "keep",
            "-o",
            os.fspath(destination),
            os.fspath(source),
        ]

    def _run(self, cmd: Sequence[str], stage: str) -> None:
        LOGGER.debug("$ %s", " ".join(shlex.quote(part) for part in cmd))
        try:
            proc = subprocess.run(list(cmd), capture_output=True, text=True, check=False)
        except OSError as exc:
            raise ExternalToolError(f"Unable to start converter: {exc}", stage=stage) from exc
        if proc.returncode != 0:
            stderr = _tail(proc.stderr or proc.stdout or "")
            raise ExternalToolError(
                f"Converter failed with exit code {proc.returncode}"
                + (f": {stderr}" if stderr else ""),
                stage=stage,
                returncode=proc.returncode,
                stderr=stderr,
            )

    def extract(self, source: Path, markup: Path) -> Path:
        self._run(self.command(source, markup), "extract")
        return markup

    def merge(self, markup: Path, destination: Path) -> Path:
        self._run(self.command(markup, destination), "merge")
        return destination


@lru_cache(maxsize=8)
def shutil_which(binary: str) -> Optional[str]:
    """Cache binary path lookups."""
    return shutil.which(binary)


def ensure_java_available(java: str = "java") -> str:
    """Return the resolved Java executable or raise :class:`ConverterUnavailableError`."""

    resolved = shutil_which(java)
    if not resolved:
        raise ConverterUnavailableError(
            f"Required dependency '{java}' was not found on PATH. Install a Java runtime to continue."
        )
    return resolved


def _default_search_dirs() -> List[Path]:
    dirs: List[Path] = []
    if sys.argv and sys.argv[0]:
        dirs.append(Path(sys.argv[0]).resolve().parent)
    dirs.append(Path.cwd())
    return dirs


def locate_converter(
    explicit: Optional[Path] = None,
    *,
    search_dirs: Optional[Sequence[Path]] = None,
    jar_name: str = DEFAULT_JAR_NAME,
) -> Path:
    """Find the BDSup2Sub archive.

    An explicit path wins, then ``$SUBTITLE_TONEMAP_CONVERTER``, then
    *jar_name* inside each of *search_dirs* (by default the directory of the
    running script and the current directory).

    Raises:
        ConverterUnavailableError: If no candidate exists.
    """
    if explicit is not None:
        if Path(explicit).is_file():
            return Path(explicit).resolve()
        raise ConverterUnavailableError(f"Converter archive not found: {explicit}")

    env_value = os.environ.get(CONVERTER_ENV_VAR)
    if env_value:
        if Path(env_value).is_file():
            return Path(env_value).resolve()
        raise ConverterUnavailableError(f"{CONVERTER_ENV_VAR} points to a missing file: {env_value}")

    dirs = list(search_dirs) if search_dirs is not None else _default_search_dirs()
    for directory in dirs:
        candidate = Path(directory) / jar_name
        if candidate.is_file():
            return candidate.resolve()

    searched = ", ".join(str(d) for d in dirs) or "<nowhere>"
    raise ConverterUnavailableError(
        f"{jar_name} should be in the same directory as this program "
        f"(searched: {searched}); pass --converter or set {CONVERTER_ENV_VAR}."
    )


__all__ = [
    "BDSup2SubCodec",
    "CONVERTER_ENV_VAR",
    "ConverterUnavailableError",
    "DEFAULT_JAR_NAME",
    "ExternalToolError",
    "PipelineError",
    "SubtitleCodec",
    "ensure_java_available",
    "locate_converter",
]
