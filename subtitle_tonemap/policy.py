"""Tonemap policies shared by every worker of a batch run.

A policy selects one of two remapping modes:

- **proportional**: every eligible channel is multiplied by ``ratio``.
- **fixed**: every eligible pixel becomes ``base_color`` scaled by the pixel's
  lightness relative to the brightest pixel of its image, times ``ratio``.

Example Usage
-------------

    from subtitle_tonemap import TonemapPolicy, parse_color

    dimmed = TonemapPolicy.from_percentage(60)
    amber = TonemapPolicy.from_percentage(80, fixed=True, base_color=parse_color("FFBF00"))
"""
from __future__ import annotations

import enum
import math
import string
from dataclasses import dataclass
from typing import Optional, Tuple

RGB = Tuple[int, int, int]

DEFAULT_BASE_COLOR: RGB = (255, 255, 255)
DEFAULT_PERCENTAGE = 60.0


class TonemapMode(str, enum.Enum):
    """Remapping strategy applied to eligible pixels."""

    PROPORTIONAL = "proportional"
    FIXED = "fixed"


@dataclass(frozen=True)
class TonemapPolicy:
    """Immutable tonemap configuration for a processing run.

    Attributes:
        ratio: Brightness ratio in ``[0, 1]``.
        mode: Remapping strategy.
        base_color: Target RGB color used by :attr:`TonemapMode.FIXED`.
    """

    ratio: float
    mode: TonemapMode = TonemapMode.PROPORTIONAL
    base_color: RGB = DEFAULT_BASE_COLOR

    def __post_init__(self) -> None:
        if not isinstance(self.mode, TonemapMode):
            object.__setattr__(self, "mode", TonemapMode(self.mode))
        if not (isinstance(self.ratio, (int, float)) and math.isfinite(self.ratio)):
            raise ValueError(f"ratio must be a finite number, got {self.ratio!r}")
        if not 0.0 <= self.ratio <= 1.0:
            raise ValueError(f"ratio must be between 0.0 and 1.0, got {self.ratio}")
        base = tuple(self.base_color)
        if len(base) != 3:
            raise ValueError(f"base_color must have three channels, got {self.base_color!r}")
        for channel in base:
            if not isinstance(channel, int) or not 0 <= channel <= 255:
                raise ValueError(f"base_color channels must be integers in [0, 255], got {self.base_color!r}")
        object.__setattr__(self, "base_color", base)

    @property
    def fixed(self) -> bool:
        return self.mode is TonemapMode.FIXED

    @classmethod
    def from_percentage(
        cls,
        percentage: float,
        *,
        fixed: bool = False,
        base_color: Optional[RGB] = None,
    ) -> "TonemapPolicy":
        """Build a policy from a 0-100 percentage as accepted on the command line."""

        return cls(
            ratio=percentage_to_ratio(percentage),
            mode=TonemapMode.FIXED if fixed else TonemapMode.PROPORTIONAL,
            base_color=base_color if base_color is not None else DEFAULT_BASE_COLOR,
        )

    def describe(self) -> str:
        if self.fixed:
            return "fixed {:.0%} of #{:02X}{:02X}{:02X}".format(self.ratio, *self.base_color)
        return f"proportional {self.ratio:.0%}"


def percentage_to_ratio(percentage: float) -> float:
    """Validate a 0-100 percentage and return it as a ratio.

    Raises:
        ValueError: If *percentage* is not finite or falls outside ``[0, 100]``.
    """
    value = float(percentage)
    if not math.isfinite(value) or not 0.0 <= value <= 100.0:
        raise ValueError(f"Percentage has to be between 0 and 100, got {percentage}")
    return value / 100.0


def parse_color(value: str) -> RGB:
    """Parse a ``RRGGBB`` hexadecimal string into an RGB triple.

    >>> parse_color("FF8800")
    (255, 136, 0)
    """
    text = value.strip()
    if len(text) != 6:
        raise ValueError(f"Color must be exactly 6 hexadecimal digits (RRGGBB), got {value!r}")
    if any(char not in string.hexdigits for char in text):
        raise ValueError(f"Color contains non-hexadecimal characters: {value!r}")
    packed = int(text, 16)
    return ((packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF)


__all__ = [
    "DEFAULT_BASE_COLOR",
    "DEFAULT_PERCENTAGE",
    "RGB",
    "TonemapMode",
    "TonemapPolicy",
    "parse_color",
    "percentage_to_ratio",
]
