"""Artifact cleanup loop — periodically purges artifacts past their retention."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cigate.pipeline.engine import PipelineEngine

logger = logging.getLogger(__name__)


class ArtifactCleanupLoop:
    """Periodic background cleanup task."""

    def __init__(self, engine: PipelineEngine, interval: int = 3600):
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="artifact-cleanup")
        logger.info("Artifact cleanup loop started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Artifact cleanup loop stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Artifact cleanup error")

    async def cleanup(self) -> int:
        """Run one cleanup pass. Returns the number of artifacts purged."""
        purged = await self.engine.purge_expired_artifacts()
        if purged:
            logger.info("Purged %d expired artifact(s)", purged)
        else:
            logger.debug("No expired artifacts")
        return purged
