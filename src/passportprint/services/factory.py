from __future__ import annotations

from passportprint.config import Settings
from passportprint.services.image_ops import ImageOps, RemoteImageOps
from passportprint.services.local_ops import LocalImageOps


def build_image_ops(settings: Settings) -> ImageOps:
    if settings.backend == "local":
        return LocalImageOps()
    return RemoteImageOps(settings.service_url, timeout=settings.request_timeout_s)
