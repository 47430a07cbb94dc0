import asyncio
import logging
from typing import Optional
from resumable_upload.services.upload_service import UploadService

logger = logging.getLogger(__name__)


class OrphanSweeper:
    """Background task that periodically reconciles staging with the registry."""

    def __init__(self, service: UploadService, interval_seconds: float):
        self.service = service
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.service.sweep_orphans()
            except Exception as e:
                logger.error(f"Orphan sweep failed: {str(e)}")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="orphan-sweeper")
        logger.info(f"Orphan sweep scheduled every {self.interval_seconds}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
