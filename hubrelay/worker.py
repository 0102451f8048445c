"""Background worker keeping the offline queue and job polling alive."""

import asyncio
import signal
from typing import Optional

from loguru import logger

from .context import RelayContext
from .models import SyncResult

log = logger.bind(component="worker")


class SyncWorker:
    """Probes connectivity, replays queued actions and resumes job polling."""

    def __init__(self, context: RelayContext, interval: Optional[float] = None):
        self.context = context
        self.interval = context.config.sync_interval if interval is None else interval
        self.running = False
        self._stopped = asyncio.Event()

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal gracefully."""
        log.info("Shutdown requested, finishing current sync")
        self.stop()

    def stop(self) -> None:
        self.running = False
        self._stopped.set()

    async def tick(self) -> Optional[SyncResult]:
        """One connectivity check and, when online, one sync pass."""
        online = await self.context.ping()
        self.context.offline.set_online(online)
        if not online or not len(self.context.offline):
            return None
        result = await self.context.offline.sync()
        if result.processed or result.failed or result.expired:
            log.info(
                f"Sync: {result.processed} processed, {result.failed} failed, "
                f"{len(result.expired)} expired"
            )
        return result

    async def run(self) -> None:
        """Run the worker loop until stop() or SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self._handle_shutdown)

        self.running = True
        self._stopped.clear()
        log.info("Worker started")
        self.context.orchestrator.resume()
        self.context.offline.start()
        try:
            while self.running:
                try:
                    await self.tick()
                except Exception as e:
                    log.error(f"Sync tick failed: {e}")
                try:
                    await asyncio.wait_for(self._stopped.wait(), self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(signum)
            await self.context.offline.stop()
        log.info("Worker stopped")
