from __future__ import annotations

import logging
import math
from typing import Optional

from passportprint.core.errors import GeometryError, InvalidUnit
from passportprint.core.models import DPI, PhysicalSize, PixelDimensions

logger = logging.getLogger(__name__)

# Physical units per inch.
UNITS_PER_INCH = {
    "mm": 25.4,
    "cm": 2.54,
    "inch": 1.0,
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


def unit_to_inch(unit: str, fallback_unit: Optional[str] = None) -> float:
    """
    Return how many `unit`s make one inch.

    fallback_unit:
        Opt-in policy for unknown units. When given (e.g. "mm"), an unknown unit is
        treated as that unit and a warning is logged. When None, an unknown unit
        raises InvalidUnit.
    """
    key = (unit or "").strip().lower()
    if key in UNITS_PER_INCH:
        return UNITS_PER_INCH[key]
    if fallback_unit is None:
        raise InvalidUnit(unit)
    if fallback_unit not in UNITS_PER_INCH:
        raise InvalidUnit(fallback_unit)
    logger.warning("Unknown unit %r, treating it as %s", unit, fallback_unit)
    return UNITS_PER_INCH[fallback_unit]


def convert(
    width: float,
    height: float,
    unit: str,
    dpi: int = DPI,
    fallback_unit: Optional[str] = None,
) -> PixelDimensions:
    """Physical size -> pixel dimensions at `dpi`: round(physical / units_per_inch * dpi)."""
    if width <= 0 or height <= 0:
        raise GeometryError(f"Physical size must be positive, got {width}x{height} {unit}.")
    if dpi <= 0:
        raise GeometryError(f"DPI must be positive, got {dpi}.")
    per_inch = unit_to_inch(unit, fallback_unit=fallback_unit)
    return PixelDimensions(
        width=round_half_up(width / per_inch * dpi),
        height=round_half_up(height / per_inch * dpi),
    )


def pixel_dimensions(size: PhysicalSize, dpi: int = DPI) -> PixelDimensions:
    return convert(size.width, size.height, size.unit, dpi)
