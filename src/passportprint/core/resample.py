from __future__ import annotations

import logging
from typing import Optional, Tuple

from PIL import Image

from passportprint.core.errors import DegenerateCrop
from passportprint.core.geometry import display_to_natural
from passportprint.core.models import CropRectangle, ImageBlob, PixelDimensions, rgb_to_hex
from passportprint.core.units import round_half_up

logger = logging.getLogger(__name__)

# Smoothed filter for the fused crop+resize; never NEAREST (aliasing on downscale).
RESAMPLE_FILTER = Image.LANCZOS


def source_box(
    crop: CropRectangle,
    displayed_size: Tuple[float, float],
    natural_size: Tuple[int, int],
) -> Tuple[int, int, int, int]:
    """
    Natural-resolution pixel box (left, top, right, bottom) for a crop drawn on the
    displayed image. Each of x, y, width, height is rounded to the nearest pixel,
    then the box is kept inside the image.
    """
    left, top, right, bottom = display_to_natural(crop, displayed_size, natural_size).rounded()
    nw, nh = natural_size
    left, top = max(0, left), max(0, top)
    right, bottom = min(nw, right), min(nh, bottom)
    if right <= left or bottom <= top:
        raise DegenerateCrop(f"Crop maps to an empty source region {(left, top, right, bottom)}.")
    return left, top, right, bottom


def crop_and_resample(
    img: Image.Image,
    box: Tuple[int, int, int, int],
    target: PixelDimensions,
) -> Image.Image:
    """Draw `box` of `img` into a buffer of exactly `target` pixels in one scaled pass."""
    if target.width <= 0 or target.height <= 0:
        raise DegenerateCrop(f"Target size has no area ({target.width}x{target.height}).")
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
    return img.resize(target.as_tuple(), resample=RESAMPLE_FILTER, box=box)


def crop(
    image: ImageBlob,
    crop_rect: CropRectangle,
    displayed_size: Optional[Tuple[float, float]],
    natural_size: Optional[Tuple[int, int]],
    target: PixelDimensions,
    fmt: str,
) -> ImageBlob:
    """
    Crop `image` to `crop_rect` (in displayed coordinates) and resample it to
    `target`. Missing sizes default to the image's natural size (scale 1).
    """
    img = image.to_pil()
    if natural_size is None:
        natural_size = img.size
    if displayed_size is None:
        displayed_size = natural_size

    box = source_box(crop_rect, displayed_size, natural_size)
    logger.debug("Resampling source box %s -> %dx%d", box, target.width, target.height)
    out = crop_and_resample(img, box, target)
    return ImageBlob.from_pil(out, fmt)


def sample_color(
    image: ImageBlob,
    point: Tuple[float, float],
    displayed_size: Optional[Tuple[float, float]] = None,
) -> str:
    """Hex colour of the pixel under `point` (displayed coordinates) for the eyedropper."""
    img = image.to_pil().convert("RGB")
    nw, nh = img.size
    dw, dh = displayed_size or (nw, nh)
    if dw <= 0 or dh <= 0:
        raise DegenerateCrop(f"Displayed image has no area ({dw}x{dh}).")
    x = min(nw - 1, max(0, round_half_up(point[0] * nw / dw)))
    y = min(nh - 1, max(0, round_half_up(point[1] * nh / dh)))
    return rgb_to_hex(img.getpixel((x, y)))
