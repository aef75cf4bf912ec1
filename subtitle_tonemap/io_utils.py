"""Image I/O for subtitle glyph buffers.

Glyph images are decoded to an ``(H, W, 4)`` uint8 RGBA array and written back
as PNG through a staged temporary file so a failed write never leaves a
truncated image behind.

Key Components
--------------

ImageError
    Base class for decode and write failures, carrying the offending path.

staged_write
    Context manager staging a write next to its destination.

load_rgba / save_rgba
    Decode and encode glyph buffers.
"""
from __future__ import annotations

import contextlib
import logging
import os
import uuid
from pathlib import Path
from typing import Iterator

import numpy as np
from PIL import Image, UnidentifiedImageError

LOGGER = logging.getLogger("subtitle_tonemap")

IMAGE_SUFFIX = ".png"


class ImageError(RuntimeError):
    """Raised when a glyph image cannot be processed."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"{message}: {path}")
        self.path = Path(path)


class ImageDecodeError(ImageError):
    """The file is missing, unreadable or not a valid image."""


class ImageWriteError(ImageError):
    """The tonemapped buffer could not be written back."""


@contextlib.contextmanager
def staged_write(destination: Path) -> Iterator[Path]:
    """Yield a hidden sibling path that replaces *destination* once the block succeeds.

    The staged file is removed whenever the block or the final move fails.
    """
    staged = destination.parent / f".{destination.name}.tmp-{uuid.uuid4().hex}"
    try:
        yield staged
        os.replace(staged, destination)
    finally:
        with contextlib.suppress(FileNotFoundError):
            staged.unlink()


def load_rgba(path: Path) -> np.ndarray:
    """Decode *path* into a writable ``(H, W, 4)`` uint8 array.

    Palette and greyscale PNGs, as produced by most PGS exporters, are
    expanded to RGBA.

    Raises:
        ImageDecodeError: If the file cannot be opened or decoded.
    """
    try:
        with Image.open(path) as image:
            if image.mode != "RGBA":
                LOGGER.debug("Expanding %s image %s to RGBA", image.mode, path)
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageDecodeError(path, f"Unable to decode image ({exc})") from exc
    return np.array(rgba, dtype=np.uint8)


def save_rgba(path: Path, rgba: np.ndarray) -> None:
    """Encode *rgba* as PNG over *path* using a staged write.

    Raises:
        ImageWriteError: On any I/O failure; *path* keeps its previous content.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected an (H, W, 4) buffer, got shape {rgba.shape}")
    image = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    try:
        with staged_write(Path(path)) as staged_path:
            image.save(os.fspath(staged_path), format="PNG")
    except OSError as exc:
        raise ImageWriteError(path, f"Unable to write image ({exc})") from exc


__all__ = [
    "IMAGE_SUFFIX",
    "ImageDecodeError",
    "ImageError",
    "ImageWriteError",
    "staged_write",
    "load_rgba",
    "save_rgba",
]
