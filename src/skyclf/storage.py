"""On-disk layout helpers.

Frames live in one flat directory and are named after their UTC capture time,
so a plain string sort of the names is also a chronological sort. The
directory listing is the only index.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".jpg"

# Fixed width: every field is zero padded, so lexicographic order == time order.
FILENAME_TIME_FORMAT = "%Y%m%d_%H%M%S_%f"


@dataclass(frozen=True)
class ImageInfo:
    """A saved frame as seen in a directory listing."""

    name: str
    path: Path
    size_bytes: int


def frame_filename(fetched_at: datetime) -> str:
    """Return the sortable filename for a frame captured at ``fetched_at`` (UTC)."""
    return fetched_at.strftime(FILENAME_TIME_FORMAT) + IMAGE_SUFFIX


def latest_name(names: Iterable[str]) -> str | None:
    """Return the lexicographically greatest name, or None for an empty input."""
    return max(names, default=None)


def latest_image(images_dir: Path) -> Path | None:
    """Return the most recent frame in ``images_dir``, or None if there is none."""
    if not images_dir.is_dir():
        return None
    name = latest_name(entry.name for entry in images_dir.iterdir() if _is_image(entry))
    if name is None:
        return None
    return images_dir / name


def list_images(images_dir: Path) -> list[ImageInfo]:
    """List saved frames, newest first."""
    if not images_dir.is_dir():
        return []

    images: list[ImageInfo] = []
    for entry in images_dir.iterdir():
        if not _is_image(entry):
            continue
        try:
            size = entry.stat().st_size
        except FileNotFoundError:
            # Removed between listing and stat.
            continue
        images.append(ImageInfo(name=entry.name, path=entry, size_bytes=size))

    images.sort(key=lambda info: info.name, reverse=True)
    return images


def remove_files(paths: Iterable[Path]) -> int:
    """Best-effort removal of ``paths``; return how many were actually removed."""
    removed = 0
    for path in paths:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
            continue
        removed += 1
    return removed


def _is_image(entry: Path) -> bool:
    return entry.is_file() and entry.suffix.lower() == IMAGE_SUFFIX
