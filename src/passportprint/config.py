from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration. Every field can be overridden with a
    PASSPORTPRINT_<FIELD> environment variable or a .env file.
    """

    backend: Literal["remote", "local"] = Field(
        default="remote", description="Where image operations run: the photo service or in-process."
    )
    service_url: str = Field(default="http://localhost:8080", description="Base URL of the photo service.")
    request_timeout_s: float = Field(default=60.0, gt=0, description="Per-call timeout for image operations.")
    adjust_debounce_ms: int = Field(default=300, ge=0, description="Coalescing window for slider changes.")
    dpi: int = Field(default=300, gt=0, description="Print resolution used for pixel targets.")
    default_size: str = Field(default="2x2", description="Photo-size catalog key selected at startup.")
    default_format: Literal["png", "jpeg"] = Field(default="png", description="Initial output format.")
    log_level: str = Field(default="INFO", description="Verbosity level for application logs.")

    model_config = SettingsConfigDict(env_prefix="PASSPORTPRINT_", env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
