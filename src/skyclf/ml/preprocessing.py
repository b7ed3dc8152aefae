"""Image preprocessing for the sky-state classifier.

Decodes a still image, resizes it to the model's square input with bilinear
interpolation and produces a planar (channel, row, column) float32 tensor
normalized with the ImageNet statistics the classifier was trained with.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray

DEFAULT_INPUT_SIZE: int = 224

# ImageNet normalization (matches training)
MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def load_rgb(image_path: str | Path) -> Image.Image:
    """Decode an image file into an RGB Pillow image.

    Raises:
        FileNotFoundError: If ``image_path`` does not exist.
        ValueError: If the file cannot be decoded as an image.
    """
    try:
        with Image.open(image_path) as img:
            return img.convert("RGB")
    except FileNotFoundError:
        raise
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image {image_path}: {exc}") from exc


def preprocess(image_path: str | Path, size: int = DEFAULT_INPUT_SIZE) -> NDArray[np.float32]:
    """Prepare an image file for the classifier.

    Args:
        image_path: Path to a still image in any Pillow-supported format.
        size: Side length of the model's square input.

    Returns:
        Normalized float32 array of shape (3, size, size): all red values,
        then all green, then all blue.

    Raises:
        FileNotFoundError: If ``image_path`` does not exist.
        ValueError: If the image cannot be decoded or the result has an
            unexpected shape.
    """
    img = load_rgb(image_path)
    resized = img.resize((size, size), Image.Resampling.BILINEAR)

    pixels = np.asarray(resized, dtype=np.float32) / 255.0  # HxWx3 in [0, 1]
    normalized = (pixels - MEAN) / STD
    tensor = np.ascontiguousarray(normalized.transpose(2, 0, 1), dtype=np.float32)

    if tensor.shape != (3, size, size):
        raise ValueError(f"Unexpected tensor shape: {tensor.shape}")
    return tensor
