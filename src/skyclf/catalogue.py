"""Image catalogue contract and an in-memory implementation.

The acquisition loop only needs two operations from a catalogue: record a new
frame, and evict the oldest unlabeled frames beyond a ceiling. Any object with
those two methods can be plugged in; ``MemoryCatalogue`` is the one the
service uses when nothing else is configured.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from skyclf.storage import FILENAME_TIME_FORMAT, list_images

logger = logging.getLogger(__name__)


class CatalogueError(Exception):
    """Raised by catalogue implementations when an operation cannot complete."""


@dataclass(frozen=True)
class ImageRecord:
    """A saved frame as recorded in the catalogue."""

    id: str
    path: Path
    sha256: str
    fetched_at: datetime
    size_bytes: int
    label: str | None = None


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of one retention pass."""

    deleted_count: int = 0
    freed_bytes: int = 0
    deleted_paths: list[Path] = field(default_factory=list)


class Catalogue(Protocol):
    """Protocol for the image catalogue consumed by the acquisition loop."""

    def insert_image(self, record: ImageRecord) -> None:
        """Record a newly saved frame."""
        ...

    def evict_oldest_unlabeled(self, max_unlabeled: int) -> CleanupResult:
        """Delete unlabeled records beyond ``max_unlabeled``, oldest first.

        Labeled records are never deleted. Only catalogue rows are removed;
        the returned paths are for the caller to delete from disk.
        """
        ...


class MemoryCatalogue:
    """Thread-safe in-process catalogue keyed by record id."""

    def __init__(self, records: list[ImageRecord] | None = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ImageRecord] = {}
        for record in records or []:
            self._records[record.id] = record

    @classmethod
    def from_directory(cls, images_dir: Path) -> MemoryCatalogue:
        """Rebuild unlabeled records for the frames already in ``images_dir``."""
        records: list[ImageRecord] = []
        for info in list_images(images_dir):
            try:
                data = info.path.read_bytes()
            except OSError as exc:
                logger.warning("Skipping unreadable frame %s: %s", info.path, exc)
                continue
            records.append(
                ImageRecord(
                    id=info.path.stem,
                    path=info.path,
                    sha256=hashlib.sha256(data).hexdigest(),
                    fetched_at=_capture_time(info.path),
                    size_bytes=len(data),
                )
            )
        logger.info("Catalogue rebuilt from %s (%d frames)", images_dir, len(records))
        return cls(records)

    # -- Catalogue protocol -------------------------------------------------

    def insert_image(self, record: ImageRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise CatalogueError(f"Duplicate image id: {record.id}")
            self._records[record.id] = record

    def evict_oldest_unlabeled(self, max_unlabeled: int) -> CleanupResult:
        if max_unlabeled < 0:
            raise ValueError("max_unlabeled must be >= 0")

        with self._lock:
            unlabeled = sorted(
                (r for r in self._records.values() if r.label is None),
                key=lambda r: (r.fetched_at, r.id),
            )
            excess = len(unlabeled) - max_unlabeled
            if excess <= 0:
                return CleanupResult()

            victims = unlabeled[:excess]
            for record in victims:
                del self._records[record.id]

        return CleanupResult(
            deleted_count=len(victims),
            freed_bytes=sum(r.size_bytes for r in victims),
            deleted_paths=[r.path for r in victims],
        )

    # -- Extras -------------------------------------------------------------

    def set_label(self, image_id: str, label: str | None) -> ImageRecord:
        """Attach (or clear) the label of an existing record."""
        with self._lock:
            try:
                record = self._records[image_id]
            except KeyError:
                raise KeyError(f"Unknown image: {image_id}") from None
            updated = replace(record, label=label)
            self._records[image_id] = updated
            return updated

    def get(self, image_id: str) -> ImageRecord | None:
        with self._lock:
            return self._records.get(image_id)

    def latest(self) -> ImageRecord | None:
        """Return the most recently captured record."""
        with self._lock:
            return max(self._records.values(), key=lambda r: (r.fetched_at, r.id), default=None)

    def count_unlabeled(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.label is None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _capture_time(path: Path) -> datetime:
    try:
        return datetime.strptime(path.stem, FILENAME_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
