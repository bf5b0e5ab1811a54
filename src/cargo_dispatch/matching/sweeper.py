import asyncio
import contextlib
import logging

from .dispatch_coordinator import DispatchCoordinator

logger = logging.getLogger(__name__)


class TimeoutSweeper:
    """Background task that expires lapsed offers and bookings.

    ``process_timeouts`` touches storage, so each sweep runs on a worker
    thread to keep the event loop free.
    """

    def __init__(self, coordinator: DispatchCoordinator, interval_seconds: float = 1.0) -> None:
        self._coordinator = coordinator
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="dispatch-timeout-sweeper")
        logger.info(f"Timeout sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Timeout sweeper stopped")

    async def sweep_once(self) -> dict[str, int]:
        return await asyncio.to_thread(self._coordinator.process_timeouts)

    async def _run(self) -> None:
        while True:
            try:
                summary = await self.sweep_once()
                if any(summary.values()):
                    logger.debug(f"Timeout sweep: {summary}")
            except Exception:
                logger.exception("Timeout sweep failed")
            await asyncio.sleep(self.interval_seconds)
