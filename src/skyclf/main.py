"""Service entry point: run the acquisition loop and classify new frames."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from skyclf.acquisition.fetcher import Fetcher, NewImageEvent
from skyclf.catalogue import MemoryCatalogue
from skyclf.config import Settings, get_settings
from skyclf.ml.inference import InferencePool
from skyclf.ml.predictor import InferenceError, OnnxPredictor

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Everything the running service owns."""

    settings: Settings
    predictor: OnnxPredictor
    pool: InferencePool
    catalogue: MemoryCatalogue | None
    fetcher: Fetcher = field(init=False)
    pending: set[asyncio.Task[None]] = field(default_factory=set)

    def on_new_image(self, event: NewImageEvent) -> None:
        """Queue background classification of a new frame; never blocks the loop."""
        if not self.settings.classify_new_images or not self.predictor.available:
            return
        task = asyncio.get_running_loop().create_task(self._classify(event.path))
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)

    async def _classify(self, image_path: Path) -> None:
        try:
            prediction = await self.pool.classify(image_path)
        except (OSError, ValueError, InferenceError, TimeoutError) as exc:
            logger.warning("Classification of %s failed: %s", image_path, exc)
            return
        if prediction is not None:
            logger.info(
                "%s: %s (%.3f, model %s)",
                image_path.name,
                prediction.sky_state,
                prediction.confidence,
                prediction.model_version,
            )


@asynccontextmanager
async def lifespan(settings: Settings) -> AsyncIterator[Service]:
    """Service lifespan: initialize on startup, clean up on shutdown."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SkyClf (camera=%s, poll_interval=%.1fs, device=%s, max_unlabeled=%s)",
        settings.camera_url,
        settings.poll_interval,
        settings.device,
        settings.max_unlabeled,
    )

    predictor = OnnxPredictor(settings)
    if not predictor.available:
        logger.info("No model available, frames will not be classified")

    pool = InferencePool(settings, predictor)
    # Records are only read by retention.
    catalogue: MemoryCatalogue | None = None
    if settings.max_unlabeled > 0:
        catalogue = await asyncio.to_thread(MemoryCatalogue.from_directory, settings.images_dir)

    service = Service(settings=settings, predictor=predictor, pool=pool, catalogue=catalogue)
    fetcher = Fetcher.from_settings(settings, on_new_image=service.on_new_image)
    service.fetcher = fetcher
    if catalogue is not None:
        fetcher.set_auto_cleanup(catalogue, settings.max_unlabeled)

    logger.info("SkyClf ready")
    try:
        yield service
    finally:
        logger.info("Shutting down SkyClf")
        if service.pending:
            await asyncio.gather(*service.pending, return_exceptions=True)
        await fetcher.aclose()
        pool.shutdown()
        predictor.close()
        logger.info("SkyClf shutdown complete")


async def serve(settings: Settings) -> None:
    """Run until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with lifespan(settings) as service:
        await service.fetcher.run(stop)


def main() -> None:
    """Console script entry point."""
    try:
        asyncio.run(serve(get_settings()))
    except OSError as exc:
        logger.error("SkyClf failed to start: %s", exc)
        raise SystemExit(1) from exc
