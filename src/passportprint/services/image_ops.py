from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Tuple

import requests

from passportprint.core.errors import RemoteError
from passportprint.core.models import (
    AdjustmentParams,
    BackgroundSpec,
    ColorBackground,
    ImageBackground,
    ImageBlob,
    normalize_format,
)

logger = logging.getLogger(__name__)

PROCESS_PHOTO_PATH = "/api/process-photo"
ADJUST_PHOTO_PATH = "/api/adjust-photo"

_MIME = {"png": "image/png", "jpeg": "image/jpeg"}


class ImageOps(Protocol):
    """
    The three pixel operations the pipeline depends on. Each call is one-shot and
    returns a brand new ImageBlob; failures raise RemoteError and produce nothing.
    """

    def segment(self, image: ImageBlob, fmt: str) -> ImageBlob:
        """Remove the background, returning an image with transparency."""
        ...

    def composite(self, image: ImageBlob, background: BackgroundSpec, fmt: str) -> ImageBlob:
        """Layer the (transparent) foreground over a colour or a picture."""
        ...

    def adjust(self, image: ImageBlob, params: AdjustmentParams, fmt: str) -> ImageBlob:
        """Apply brightness/contrast/saturation."""
        ...


def _file_part(name: str, blob: ImageBlob) -> Tuple[str, bytes, str]:
    return (f"{name}.{blob.format}", blob.data, _MIME.get(blob.format, "application/octet-stream"))


class RemoteImageOps:
    """ImageOps backed by the photo service's HTTP endpoints (multipart uploads)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def submit(
        self,
        path: str,
        image: ImageBlob,
        fields: Dict[str, Any],
        extra_files: Optional[Dict[str, ImageBlob]] = None,
    ) -> ImageBlob:
        """POST `image` plus form `fields` to `path` and return the image body."""
        fmt = normalize_format(fields.get("format", image.format))
        files = {"image": _file_part("image", image)}
        for name, blob in (extra_files or {}).items():
            files[name] = _file_part(name, blob)
        data = {k: str(v) for k, v in fields.items()}

        url = self.base_url + path
        logger.info("POST %s (%d bytes, fields=%s)", url, len(image.data), sorted(data))
        try:
            resp = self.session.post(url, data=data, files=files, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise RemoteError(None, f"Request to {url} timed out after {self.timeout:g}s") from e
        except requests.exceptions.RequestException as e:
            raise RemoteError(None, f"Request to {url} failed: {e}") from e

        if not (200 <= resp.status_code < 300):
            detail = (resp.text or "").strip()[:200]
            logger.error("Image service error: %s - %s", resp.status_code, detail)
            raise RemoteError(resp.status_code, f"Server responded with {resp.status_code}" + (f": {detail}" if detail else ""))

        content = resp.content
        if not content:
            raise RemoteError(resp.status_code, "Server returned an empty image")
        logger.info("Image service success - %d bytes", len(content))
        return ImageBlob(data=content, format=fmt)

    def segment(self, image: ImageBlob, fmt: str) -> ImageBlob:
        return self.submit(PROCESS_PHOTO_PATH, image, {"format": normalize_format(fmt)})

    def composite(self, image: ImageBlob, background: BackgroundSpec, fmt: str) -> ImageBlob:
        fields: Dict[str, Any] = {"format": normalize_format(fmt)}
        extra: Dict[str, ImageBlob] = {}
        if isinstance(background, ColorBackground):
            fields["backgroundColor"] = background.color_hex
        elif isinstance(background, ImageBackground):
            extra["backgroundImg"] = background.image
            fields["bgScale"] = background.scale
            fields["bgOffsetX"] = background.offset_x
            fields["bgOffsetY"] = background.offset_y
        else:
            raise TypeError(f"Unsupported background {background!r}")
        return self.submit(PROCESS_PHOTO_PATH, image, fields, extra)

    def adjust(self, image: ImageBlob, params: AdjustmentParams, fmt: str) -> ImageBlob:
        fields = {
            "brightness": int(params.brightness),
            "contrast": params.contrast,
            "saturation": params.saturation,
            "format": normalize_format(fmt),
        }
        return self.submit(ADJUST_PHOTO_PATH, image, fields)
