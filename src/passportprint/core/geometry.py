from __future__ import annotations

from typing import Tuple

from passportprint.core.errors import DegenerateCrop
from passportprint.core.models import CropRectangle

# Fraction of the limiting image side the initial crop uses; the rest is left
# as margin so the user can frame the face.
INITIAL_CROP_FILL = 0.8

EPSILON = 1e-9


def _require_area(width: float, height: float, what: str) -> None:
    if width <= 0 or height <= 0:
        raise DegenerateCrop(f"{what} has no area ({width}x{height}).")


def initial_crop(image_width: float, image_height: float, aspect_ratio: float) -> CropRectangle:
    """
    Largest centered crop with the target aspect ratio that covers 80% of the
    limiting image side.
    """
    _require_area(image_width, image_height, "Image")
    if aspect_ratio <= 0:
        raise DegenerateCrop(f"Aspect ratio must be positive, got {aspect_ratio}.")

    if image_width / image_height > aspect_ratio:
        # Wider than the target: height is the limiting side.
        height = image_height * INITIAL_CROP_FILL
        width = height * aspect_ratio
    else:
        width = image_width * INITIAL_CROP_FILL
        height = width / aspect_ratio

    x = (image_width - width) / 2.0
    y = (image_height - height) / 2.0
    return clamp_to_bounds(CropRectangle(x, y, width, height, "px"), image_width, image_height)


def _clamp_axis(pos: float, length: float, limit: float) -> Tuple[float, float]:
    # Float slack so that shifting to `limit - length` counts as inside.
    slack = EPSILON * max(1.0, limit)
    pos = max(0.0, pos)
    if pos + length > limit + slack:
        # Shift first, then shrink whatever still overflows.
        pos = max(0.0, limit - length)
        if pos + length > limit + slack:
            length = limit - pos
    return pos, length


def clamp_to_bounds(crop: CropRectangle, image_width: float, image_height: float) -> CropRectangle:
    """
    Fit `crop` inside the image. Percent rectangles are converted to pixels first.
    Each axis is shifted back inside the image before it is shrunk, so a crop that
    merely hangs over an edge keeps its size (and aspect ratio).
    """
    _require_area(image_width, image_height, "Image")
    px = crop.to_pixels(image_width, image_height)
    _require_area(px.width, px.height, "Crop")

    x, width = _clamp_axis(float(px.x), float(px.width), float(image_width))
    y, height = _clamp_axis(float(px.y), float(px.height), float(image_height))
    return CropRectangle(x, y, width, height, "px")


def display_to_natural(
    crop: CropRectangle,
    displayed_size: Tuple[float, float],
    natural_size: Tuple[float, float],
) -> CropRectangle:
    """Map a crop drawn on a displayed (scaled) image onto natural-resolution pixels."""
    dw, dh = displayed_size
    nw, nh = natural_size
    _require_area(dw, dh, "Displayed image")
    _require_area(nw, nh, "Natural image")
    px = crop.to_pixels(dw, dh)
    return px.scaled(nw / dw, nh / dh)
