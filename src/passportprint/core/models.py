from __future__ import annotations

import io
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from functools import cached_property
from typing import TYPE_CHECKING, Dict, Literal, Tuple, Union

if TYPE_CHECKING:  # avoid importing Pillow at module import time
    from PIL import Image

DPI = 300

OutputFormat = Literal["png", "jpeg"]
OUTPUT_FORMATS: Tuple[str, ...] = ("png", "jpeg")

Unit = Literal["mm", "cm", "inch"]
CropUnit = Literal["%", "px"]

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def normalize_format(fmt: str) -> str:
    """Map user spellings ("JPG", "jpeg", "PNG") onto an output format."""
    f = (fmt or "").strip().lower()
    if f == "jpg":
        f = "jpeg"
    if f not in OUTPUT_FORMATS:
        raise ValueError(f"Unsupported output format {fmt!r}; expected png or jpeg.")
    return f


@dataclass(frozen=True)
class PhysicalSize:
    """A printed photo size, e.g. 35x45 mm. `label` is for display only."""
    width: float
    height: float
    unit: str
    label: str = ""

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


# Catalog of supported photo sizes, keyed by the short name used in the UI/CLI.
PHOTO_SIZES: Dict[str, PhysicalSize] = {
    "2x2": PhysicalSize(2, 2, "inch", "2x2 inches (US and India)"),
    "35x45": PhysicalSize(35, 45, "mm", "35x45 mm (UK, Europe, Australia, Singapore, Nigeria)"),
    "5x7": PhysicalSize(5, 7, "cm", "5x7 cm (Canada)"),
    "33x48": PhysicalSize(33, 48, "mm", "33x48 mm (China)"),
}
DEFAULT_SIZE_KEY = "2x2"

BACKGROUND_COLORS: Dict[str, str] = {
    "White": "#ffffff",
    "Blue": "#0284c7",
    "Red": "#dc2626",
    "Gray": "#9ca3af",
    "Black": "#000000",
}


@dataclass(frozen=True)
class PixelDimensions:
    width: int
    height: int

    def as_tuple(self) -> Tuple[int, int]:
        return (self.width, self.height)


@dataclass(frozen=True)
class CropRectangle:
    """
    Crop region on an image.

    unit:
        "px" for pixel coordinates, "%" for percentages of the image size.
    """
    x: float
    y: float
    width: float
    height: float
    unit: str = "px"

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0

    def to_pixels(self, image_width: float, image_height: float) -> "CropRectangle":
        if self.unit == "px":
            return self
        return CropRectangle(
            x=self.x * image_width / 100.0,
            y=self.y * image_height / 100.0,
            width=self.width * image_width / 100.0,
            height=self.height * image_height / 100.0,
            unit="px",
        )

    def scaled(self, sx: float, sy: float) -> "CropRectangle":
        return CropRectangle(self.x * sx, self.y * sy, self.width * sx, self.height * sy, self.unit)

    def rounded(self) -> Tuple[int, int, int, int]:
        """(left, top, right, bottom) with every edge rounded to the nearest pixel."""
        from passportprint.core.units import round_half_up

        left = round_half_up(self.x)
        top = round_half_up(self.y)
        return (
            left,
            top,
            left + round_half_up(self.width),
            top + round_half_up(self.height),
        )


@dataclass(frozen=True)
class AdjustmentParams:
    """
    Tonal correction parameters.

    brightness:
        Additive pixel shift, -100..100. 0 is neutral.
    contrast / saturation:
        Multipliers, 0.5..3.0. 1.0 is neutral.
    """
    brightness: int = 0
    contrast: float = 1.0
    saturation: float = 1.0

    def __post_init__(self) -> None:
        if not (-100 <= self.brightness <= 100):
            raise ValueError(f"brightness must be within -100..100, got {self.brightness}")
        if not (0.5 <= self.contrast <= 3.0):
            raise ValueError(f"contrast must be within 0.5..3.0, got {self.contrast}")
        if not (0.5 <= self.saturation <= 3.0):
            raise ValueError(f"saturation must be within 0.5..3.0, got {self.saturation}")

    @classmethod
    def neutral(cls) -> "AdjustmentParams":
        return cls()

    @property
    def is_neutral(self) -> bool:
        return self == AdjustmentParams()


class PipelineStage(IntEnum):
    UPLOAD = 1
    BACKGROUND = 2
    ADJUST = 3
    CROP = 4


class ArtifactKind(Enum):
    ORIGINAL = "original"
    BACKGROUND_REMOVED = "background_removed"
    BACKGROUND_COMPOSITED = "background_composited"
    ADJUSTED = "adjusted"
    CROPPED = "cropped"


@dataclass(frozen=True, eq=False)
class ImageBlob:
    """
    Opaque encoded image handle. Identity-compared: every image operation
    returns a new blob, even for identical bytes.
    """
    data: bytes = field(repr=False)
    format: str = "png"

    @classmethod
    def from_pil(cls, img: "Image.Image", fmt: str = "png") -> "ImageBlob":
        fmt = normalize_format(fmt)
        buf = io.BytesIO()
        if fmt == "jpeg":
            if img.mode in ("RGBA", "LA", "P"):
                img = _flatten_on_white(img)
            elif img.mode != "RGB":
                img = img.convert("RGB")
            img.save(buf, format="JPEG", quality=95, optimize=True)
        else:
            img.save(buf, format="PNG")
        return cls(data=buf.getvalue(), format=fmt)

    @classmethod
    def from_path(cls, path: str) -> "ImageBlob":
        """Read a file from disk, applying EXIF orientation."""
        from PIL import Image, ImageOps

        img = Image.open(path)
        img = ImageOps.exif_transpose(img)
        fmt = "jpeg" if (img.format or "").upper() == "JPEG" else "png"
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        return cls.from_pil(img, fmt)

    def to_pil(self) -> "Image.Image":
        from PIL import Image

        img = Image.open(io.BytesIO(self.data))
        img.load()
        return img

    @cached_property
    def size(self) -> Tuple[int, int]:
        """Natural (full-resolution) size as (width, height)."""
        return self.to_pil().size


def _flatten_on_white(img: "Image.Image") -> "Image.Image":
    from PIL import Image

    rgba = img.convert("RGBA")
    white = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    return Image.alpha_composite(white, rgba).convert("RGB")


@dataclass(frozen=True)
class StageArtifact:
    kind: ArtifactKind
    image: ImageBlob


@dataclass(frozen=True)
class ColorBackground:
    color_hex: str = "#ffffff"

    def __post_init__(self) -> None:
        if not _HEX_COLOR.match(self.color_hex):
            raise ValueError(f"Background colour must look like #RRGGBB, got {self.color_hex!r}")

    @property
    def rgb(self) -> Tuple[int, int, int]:
        h = self.color_hex.lstrip("#")
        return (int(h[0:2], 16), int(h[2:4], 16), int(h[4:6], 16))


@dataclass(frozen=True)
class ImageBackground:
    """
    Background picture drawn behind the subject.

    scale:
        Size multiplier for the background, 0.5..2.0.
    offset_x / offset_y:
        Shift as a fraction of the scaled background size, -1.0..1.0.
    """
    image: ImageBlob
    scale: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0

    def __post_init__(self) -> None:
        if not (0.5 <= self.scale <= 2.0):
            raise ValueError(f"scale must be within 0.5..2.0, got {self.scale}")
        for name in ("offset_x", "offset_y"):
            v = getattr(self, name)
            if not (-1.0 <= v <= 1.0):
                raise ValueError(f"{name} must be within -1.0..1.0, got {v}")


BackgroundSpec = Union[ColorBackground, ImageBackground]


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    r, g, b = (max(0, min(255, int(c))) for c in rgb[:3])
    return f"#{r:02x}{g:02x}{b:02x}"
