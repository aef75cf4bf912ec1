"""Per-pixel color remapping for subtitle glyph images."""
from __future__ import annotations

import logging
import math
from typing import Tuple

import numpy as np

from .policy import TonemapPolicy

LOGGER = logging.getLogger("subtitle_tonemap")

Pixel = Tuple[int, int, int, int]

# Channels at or below this value are anti-aliasing fringe and stay untouched.
NOISE_FLOOR = 1


# Absorbs float error so products such as 50 * 0.29 round up like the exact value.
ROUNDING_EPSILON = 1e-9


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5 + ROUNDING_EPSILON))


def lightness(r: int, g: int, b: int) -> float:
    """Return the HSL lightness of an 8-bit RGB triple in ``[0, 1]``."""

    return (max(r, g, b) + min(r, g, b)) / 510.0


def is_eligible(pixel: Pixel) -> bool:
    r, g, b, a = pixel
    return a > 0 and r > NOISE_FLOOR and g > NOISE_FLOOR and b > NOISE_FLOOR


def transform_pixel(pixel: Pixel, policy: TonemapPolicy, reference: float = 1.0) -> Pixel:
    """Remap a single RGBA pixel according to *policy*.

    Args:
        pixel: Input ``(r, g, b, a)`` with 8-bit channels.
        policy: Tonemap policy for the run.
        reference: Reference brightness of the pixel's image. Only used in
            fixed mode; a reference of ``0`` leaves the pixel unchanged.

    Returns:
        The remapped pixel. Alpha is always passed through.
    """
    if not is_eligible(pixel):
        return pixel
    r, g, b, a = pixel

    if not policy.fixed:
        return (
            min(max(_round_half_up(r * policy.ratio), 0), 255),
            min(max(_round_half_up(g * policy.ratio), 0), 255),
            min(max(_round_half_up(b * policy.ratio), 0), 255),
            a,
        )

    if reference <= 0.0:
        return pixel
    scale = lightness(r, g, b) * policy.ratio / reference
    out = [min(max(_round_half_up(base * scale), 0), base) for base in policy.base_color]
    return (out[0], out[1], out[2], a)


def lightness_map(rgba: np.ndarray) -> np.ndarray:
    """Vectorised :func:`lightness` over an ``(H, W, 3|4)`` uint8 array."""

    rgb = rgba[..., :3].astype(np.float64)
    return (rgb.max(axis=-1) + rgb.min(axis=-1)) / 510.0


def reference_brightness(rgba: np.ndarray) -> float:
    """Return the maximum lightness over every pixel of the image.

    Transparent and fringe pixels count too; the brightest pixel anchors the
    fixed-mode scale for the whole image.
    """
    if rgba.size == 0:
        return 0.0
    return float(lightness_map(rgba).max())


def eligible_mask(rgba: np.ndarray) -> np.ndarray:
    rgb = rgba[..., :3]
    return (rgba[..., 3] > 0) & np.all(rgb > NOISE_FLOOR, axis=-1)


def apply_tonemap(rgba: np.ndarray, policy: TonemapPolicy) -> np.ndarray:
    """Tonemap an ``(H, W, 4)`` uint8 buffer in place and return it.

    The result is identical to mapping :func:`transform_pixel` over every pixel
    with the image's :func:`reference_brightness`.
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.dtype != np.uint8:
        raise ValueError(f"Expected an (H, W, 4) uint8 buffer, got {rgba.shape} {rgba.dtype}")

    mask = eligible_mask(rgba)
    if not mask.any():
        return rgba

    if policy.fixed:
        reference = reference_brightness(rgba)
        if reference <= 0.0:
            LOGGER.debug("Reference brightness is zero; leaving image unchanged")
            return rgba
        scale = lightness_map(rgba) * policy.ratio / reference
        base = np.asarray(policy.base_color, dtype=np.float64)
        remapped = np.floor(base * scale[..., None] + 0.5 + ROUNDING_EPSILON)
        remapped = np.clip(remapped, 0.0, base)
    else:
        rgb = rgba[..., :3].astype(np.float64)
        remapped = np.clip(np.floor(rgb * policy.ratio + 0.5 + ROUNDING_EPSILON), 0.0, 255.0)

    rgba[..., :3][mask] = remapped[mask].astype(np.uint8)
    return rgba


__all__ = [
    "NOISE_FLOOR",
    "Pixel",
    "apply_tonemap",
    "eligible_mask",
    "is_eligible",
    "lightness",
    "lightness_map",
    "reference_brightness",
    "transform_pixel",
]
