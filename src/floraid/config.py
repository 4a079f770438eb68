"""Environment-based configuration for FloraID."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FLORAID_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLORAID_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classifier_model: str = "oxford102_mobilenetv3"
    models_dir: str = "models"
    # Local artifact overrides (skip the Hub download / bundled label set)
    model_path: str | None = None
    labels_path: str | None = None
    preload_model: bool = True

    # Results below this top-1 confidence are reported as no detection
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)
    inference_timeout: float = Field(default=30.0, ge=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
