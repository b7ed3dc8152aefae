"""Shared fixtures for the SkyClf tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from PIL import Image

from skyclf.config import Settings

SKY_CLASSES = ["clear", "light_clouds", "heavy_clouds"]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "camera_url": "http://camera.test/current.jpg",
        "images_dir": "/tmp/skyclf_test_images",
        "models_dir": "/tmp/skyclf_test_models",
        "device": "cpu",
        "poll_interval": 1.0,
        "max_unlabeled": 0,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def write_image(path: Path, color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (64, 48)) -> Path:
    Image.new("RGB", size, color).save(path)
    return path


def write_model(models_dir: Path, version: str, classes: list[str] | None = None) -> Path:
    """Create a model version directory with a placeholder artifact and manifest."""
    version_dir = models_dir / version
    version_dir.mkdir(parents=True)
    (version_dir / "model.onnx").write_bytes(b"onnx")
    (version_dir / "classes.json").write_text(json.dumps(classes or SKY_CLASSES))
    return version_dir


@pytest.fixture()
def sky_image(tmp_path: Path) -> Path:
    return write_image(tmp_path / "sky.png", color=(40, 80, 160))
