"""
Configuration loader for the RMBG background-removal service.

Environment variables (prefixed with ``RMBG_``) are centralized here to keep
the rest of the code focused on business logic and to make operational tuning
clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

RESAMPLE_MODES = {"nearest", "bilinear", "bicubic"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RMBG_",
        env_file=".env",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model hub
    model_id: str = Field("briaai/RMBG-1.4")
    model_revision: Optional[str] = Field(None)
    model_cache_dir: Optional[Path] = Field(None)
    local_files_only: bool = Field(False)
    device: Optional[str] = Field(None)  # cuda | mps | cpu; auto-detected when unset
    preload_model: bool = Field(True)

    # Preprocessing, as published with the model
    input_size: int = Field(1024)
    image_mean: Tuple[float, float, float] = Field((0.5, 0.5, 0.5))
    image_std: Tuple[float, float, float] = Field((1.0, 1.0, 1.0))
    rescale_factor: float = Field(1.0 / 255.0)
    do_rescale: bool = Field(True)
    do_normalize: bool = Field(True)
    resample: str = Field("bilinear")

    # API
    request_timeout_seconds: int = Field(30)
    log_level: str = Field("INFO")
    download_filename: str = Field("removed-background.png")

    # Debugging
    debug: bool = Field(False)
    debug_output_dir: Path = Field(Path("/tmp/rmbg_debug"))

    @field_validator("resample")
    @classmethod
    def validate_resample(cls, v: str) -> str:
        v = v.lower()
        if v not in RESAMPLE_MODES:
            raise ValueError("RMBG_RESAMPLE must be one of nearest|bilinear|bicubic")
        return v

    @field_validator("input_size")
    @classmethod
    def validate_input_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("RMBG_INPUT_SIZE must be positive")
        return v

    @field_validator("image_std")
    @classmethod
    def validate_image_std(cls, v: Tuple[float, float, float]) -> Tuple[float, float, float]:
        if any(s == 0 for s in v):
            raise ValueError("RMBG_IMAGE_STD entries must be non-zero")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
