from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from passportprint.core.errors import UserInputError
from passportprint.core.models import ImageBlob, normalize_format

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "passport-photo"

_UNSAFE = re.compile(r"[\\/:*?\"<>|\x00-\x1f]+")


def export_filename(name: str, fmt: str) -> str:
    """User-editable base name (blank -> "passport-photo") plus the format's extension."""
    ext = normalize_format(fmt)
    base = _UNSAFE.sub("-", (name or "").strip()).strip(" .-")
    if not base:
        base = DEFAULT_FILENAME
    if base.lower().endswith("." + ext):
        base = base[: -(len(ext) + 1)]
    return f"{base}.{ext}"


@dataclass(frozen=True)
class ExportTarget:
    """Where the final photo is written."""
    directory: Path
    filename: str

    @property
    def path(self) -> Path:
        return self.directory / self.filename

    @staticmethod
    def build(directory: Union[str, Path], name: str, fmt: str) -> "ExportTarget":
        return ExportTarget(directory=Path(directory), filename=export_filename(name, fmt))


def save_image(image: ImageBlob, target: ExportTarget) -> Path:
    if image is None:
        raise UserInputError("Nothing to export yet. Finish cropping first.")
    target.directory.mkdir(parents=True, exist_ok=True)
    target.path.write_bytes(image.data)
    logger.info("Saved %s (%d bytes)", target.path, len(image.data))
    return target.path
