"""Environment-based configuration for SkyClf."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SKYCLF_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SKYCLF_",
        case_sensitive=False,
    )

    # Camera
    camera_url: str = "http://allskycam.local/current.jpg"
    poll_interval: float = Field(default=30.0, gt=0)
    fetch_timeout: float = Field(default=30.0, gt=0)

    # Storage
    images_dir: Path = Path("data/images")
    models_dir: Path = Path("data/models")

    # Retention (0 = disabled)
    max_unlabeled: int = Field(default=0, ge=0)

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Path to an alternative ONNX Runtime shared library. The Python package
    # always uses its bundled runtime, so this is accepted and ignored.
    ort_lib: Path | None = None

    # Custom operator library registered with every inference session
    custom_ops_lib: Path | None = None

    # Used when the model input has dynamic spatial dimensions
    input_size: int = Field(default=224, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (queue_timeout 0 = wait indefinitely)
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=0.0, ge=0)

    classify_new_images: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
