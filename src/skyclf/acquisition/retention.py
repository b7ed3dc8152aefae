"""Retention policy: keep the number of unlabeled frames under a ceiling.

The catalogue delete and the file removals are not transactional. A crash in
between leaves orphan files on disk; rows are never resurrected.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from skyclf.catalogue import CatalogueError
from skyclf.storage import remove_files

if TYPE_CHECKING:
    from skyclf.catalogue import Catalogue, CleanupResult

logger = logging.getLogger(__name__)


class RetentionPolicy:
    """Evicts the oldest unlabeled frames beyond ``max_unlabeled``."""

    def __init__(self, catalogue: Catalogue, max_unlabeled: int) -> None:
        if max_unlabeled < 1:
            raise ValueError("max_unlabeled must be >= 1")
        self._catalogue = catalogue
        self._max_unlabeled = max_unlabeled

    @property
    def max_unlabeled(self) -> int:
        return self._max_unlabeled

    def evict(self) -> CleanupResult | None:
        """Run one retention pass.

        Returns:
            The cleanup result, or None when nothing was deleted or the
            catalogue failed.
        """
        try:
            result = self._catalogue.evict_oldest_unlabeled(self._max_unlabeled)
        except CatalogueError as exc:
            logger.warning("Auto-cleanup failed: %s", exc)
            return None

        if result.deleted_count == 0:
            return None

        removed = remove_files(result.deleted_paths)
        logger.info(
            "Auto-cleanup deleted %d images (%d from disk, freed %d bytes)",
            result.deleted_count,
            removed,
            result.freed_bytes,
        )
        return result
