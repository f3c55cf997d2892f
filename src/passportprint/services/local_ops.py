"""
In-process ImageOps: the same three operations as the photo service, computed
locally with rembg (segmentation), Pillow (compositing) and OpenCV (tonal
adjustment). Useful offline and as the reference behaviour for the service.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from passportprint.core.errors import ImageOpError
from passportprint.core.models import (
    AdjustmentParams,
    BackgroundSpec,
    ColorBackground,
    ImageBackground,
    ImageBlob,
)

logger = logging.getLogger(__name__)


def _to_rgba(img: Image.Image) -> Image.Image:
    return img if img.mode == "RGBA" else img.convert("RGBA")


def _split_alpha(img: Image.Image) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """PIL image -> (OpenCV BGR array, alpha array or None)."""
    if img.mode == "RGBA":
        arr = np.array(img)
        return cv2.cvtColor(arr[:, :, :3], cv2.COLOR_RGB2BGR), arr[:, :, 3]
    if img.mode != "RGB":
        img = img.convert("RGB")
    return cv2.cvtColor(np.array(img), cv2.COLOR_RGB2BGR), None


def _merge_alpha(bgr: np.ndarray, alpha: Optional[np.ndarray]) -> Image.Image:
    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    if alpha is None:
        return Image.fromarray(rgb, "RGB")
    return Image.fromarray(np.dstack([rgb, alpha]), "RGBA")


def adjust_array(bgr: np.ndarray, params: AdjustmentParams) -> np.ndarray:
    """
    Brightness/contrast as a saturating linear map (pixel * contrast + brightness),
    then saturation scaled in HSV and clipped at 255.
    """
    out = np.clip(bgr.astype(np.float32) * params.contrast + params.brightness, 0, 255).astype(np.uint8)
    if params.saturation != 1.0:
        hsv = cv2.cvtColor(out, cv2.COLOR_BGR2HSV).astype(np.float32)
        hsv[:, :, 1] = np.minimum(hsv[:, :, 1] * params.saturation, 255.0)
        out = cv2.cvtColor(hsv.astype(np.uint8), cv2.COLOR_HSV2BGR)
    return out


def tile_background(bg: Image.Image, canvas_size: Tuple[int, int], scale: float, offset_x: float, offset_y: float) -> Image.Image:
    """
    Scale `bg` and tile it over a canvas, shifted by offset * scaled size, so the
    canvas is always fully covered.
    """
    cw, ch = canvas_size
    tw = max(1, int(bg.width * scale))
    th = max(1, int(bg.height * scale))
    tile = bg.convert("RGB").resize((tw, th), Image.LANCZOS)

    start_x = int(offset_x * tw) % tw
    start_y = int(offset_y * th) % th
    if start_x > 0:
        start_x -= tw
    if start_y > 0:
        start_y -= th

    canvas = Image.new("RGB", (cw, ch))
    for y in range(start_y, ch, th):
        for x in range(start_x, cw, tw):
            canvas.paste(tile, (x, y))
    return canvas


class LocalImageOps:
    """ImageOps computed in this process."""

    def segment(self, image: ImageBlob, fmt: str) -> ImageBlob:
        try:
            from rembg import remove  # type: ignore
        except ImportError as e:
            raise ImageOpError(
                None, "Local background removal needs rembg (pip install 'passportprint[local]')."
            ) from e

        logger.info("Removing background using rembg...")
        try:
            cut = remove(image.to_pil())
        except Exception as e:
            raise ImageOpError(None, f"Background removal failed: {e}") from e
        if isinstance(cut, bytes):
            cut = ImageBlob(cut).to_pil()
        # Transparency is the point of this step, so always hand back PNG.
        return ImageBlob.from_pil(_to_rgba(cut), "png")

    def composite(self, image: ImageBlob, background: BackgroundSpec, fmt: str) -> ImageBlob:
        fg = _to_rgba(image.to_pil())
        if isinstance(background, ColorBackground):
            base = Image.new("RGBA", fg.size, background.rgb + (255,))
        elif isinstance(background, ImageBackground):
            canvas = tile_background(
                background.image.to_pil(),
                fg.size,
                background.scale,
                background.offset_x,
                background.offset_y,
            )
            base = canvas.convert("RGBA")
        else:
            raise TypeError(f"Unsupported background {background!r}")

        out = Image.alpha_composite(base, fg).convert("RGB")
        return ImageBlob.from_pil(out, fmt)

    def adjust(self, image: ImageBlob, params: AdjustmentParams, fmt: str) -> ImageBlob:
        bgr, alpha = _split_alpha(image.to_pil())
        out = _merge_alpha(adjust_array(bgr, params), alpha)
        return ImageBlob.from_pil(out, fmt)
