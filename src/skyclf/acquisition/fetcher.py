"""Acquisition loop: poll the camera, keep changed frames, retire old ones.

Each tick downloads the camera's current frame, compares its SHA-256 with the
last saved frame and, if it changed, writes it under a sortable UTC filename
and notifies the observer. Cameras usually serve the same cached frame for a
while, so most ticks are no-ops.

The stop event is only checked between ticks. An in-flight request is left to
finish or hit its own timeout, so shutdown can take up to ``timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import httpx

from skyclf import storage
from skyclf.acquisition.retention import RetentionPolicy
from skyclf.catalogue import CatalogueError, ImageRecord

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from skyclf.catalogue import Catalogue, CleanupResult
    from skyclf.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS: float = 30.0

T = TypeVar("T")


class FetchError(Exception):
    """The camera frame could not be retrieved this tick."""


@dataclass(frozen=True)
class NewImageEvent:
    """A frame that was just written to disk."""

    filename: str
    path: Path
    sha256: str
    fetched_at: datetime
    size_bytes: int


def _utc_now() -> datetime:
    return datetime.now(UTC)


class Fetcher:
    """Periodically downloads frames from an all-sky camera URL."""

    def __init__(
        self,
        url: str,
        images_dir: Path,
        poll_interval: float,
        *,
        on_new_image: Callable[[NewImageEvent], None] | None = None,
        catalogue: Catalogue | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._url = url
        self._images_dir = Path(images_dir)
        self._poll_interval = poll_interval
        self._on_new_image = on_new_image
        self._catalogue = catalogue
        self._clock = clock

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

        # Digest of the last frame written by this instance; in memory only.
        self._last_hash: bytes | None = None

        self._retention: RetentionPolicy | None = None
        self._on_cleanup: Callable[[CleanupResult], None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: object) -> Fetcher:
        return cls(
            settings.camera_url,
            settings.images_dir,
            settings.poll_interval,
            timeout=settings.fetch_timeout,
            **kwargs,  # type: ignore[arg-type]
        )

    def set_auto_cleanup(
        self,
        catalogue: Catalogue,
        max_unlabeled: int,
        on_cleanup: Callable[[CleanupResult], None] | None = None,
    ) -> None:
        """Record frames in ``catalogue`` and keep at most ``max_unlabeled`` unlabeled ones.

        A ``max_unlabeled`` of 0 only records frames and never evicts.
        """
        self._catalogue = catalogue
        self._retention = RetentionPolicy(catalogue, max_unlabeled) if max_unlabeled > 0 else None
        self._on_cleanup = on_cleanup

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    # -- Loop ---------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set.

        Raises:
            OSError: If the images directory cannot be created.
        """
        self._images_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Fetching %s every %.1fs into %s", self._url, self._poll_interval, self._images_dir)

        await self._tick()

        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._poll_interval
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(0.0, next_tick - loop.time()))
            except TimeoutError:
                pass
            else:
                break

            await self._tick()

            # Slow ticks drop the missed slots instead of bursting.
            next_tick += self._poll_interval
            now = loop.time()
            while next_tick <= now:
                next_tick += self._poll_interval

        logger.info("Fetcher stopping")

    async def fetch_and_save(self) -> NewImageEvent | None:
        """Download the current frame and save it if it changed.

        Returns:
            The event for a newly saved frame, or None if the frame is unchanged.

        Raises:
            FetchError: On a transport error or a non-200 response.
            OSError: If the frame cannot be written.
        """
        try:
            response = await self._client.get(self._url)
        except httpx.HTTPError as exc:
            raise FetchError(f"fetch {self._url}: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise FetchError(f"fetch {self._url}: status {response.status_code}")

        data = response.content
        digest = hashlib.sha256(data).digest()
        if digest == self._last_hash:
            logger.debug("Image unchanged, skipping")
            return None

        fetched_at = self._clock()
        filename = storage.frame_filename(fetched_at)
        path = self._images_dir / filename
        await asyncio.to_thread(path.write_bytes, data)
        self._last_hash = digest

        logger.info("Saved %s (%d bytes)", filename, len(data))

        event = NewImageEvent(
            filename=filename,
            path=path,
            sha256=digest.hex(),
            fetched_at=fetched_at,
            size_bytes=len(data),
        )
        self._record(event)
        self._notify(self._on_new_image, event)

        if self._retention is not None:
            result = await asyncio.to_thread(self._retention.evict)
            if result is not None:
                self._notify(self._on_cleanup, result)

        return event

    def latest_image(self) -> Path | None:
        """Path of the most recent frame, or None if there is none."""
        return storage.latest_image(self._images_dir)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Fetcher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # -- Internal -----------------------------------------------------------

    async def _tick(self) -> None:
        try:
            await self.fetch_and_save()
        except FetchError as exc:
            logger.warning("%s", exc)
        except OSError as exc:
            logger.warning("Saving frame failed: %s", exc)

    def _record(self, event: NewImageEvent) -> None:
        if self._catalogue is None:
            return
        record = ImageRecord(
            id=event.path.stem,
            path=event.path,
            sha256=event.sha256,
            fetched_at=event.fetched_at,
            size_bytes=event.size_bytes,
        )
        try:
            self._catalogue.insert_image(record)
        except CatalogueError as exc:
            logger.warning("Could not record %s in catalogue: %s", event.filename, exc)

    @staticmethod
    def _notify(callback: Callable[[T], None] | None, payload: T) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            logger.exception("Observer %r failed", callback)
