import asyncio

from loguru import logger

from himsog.domain.exceptions import StoreUnavailableError
from himsog.scheduling.lifecycle import AppointmentLifecycle

DEFAULT_INTERVAL_SECONDS: float = 300.0


class NoShowSweeper:
    """Runs ``AppointmentLifecycle.sweep_overdue`` on a fixed interval.

    The host owns the cadence and the lifetime:

        sweeper = NoShowSweeper(service.lifecycle, interval_seconds=60)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self, lifecycle: AppointmentLifecycle, interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._lifecycle = lifecycle
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("No-show sweeper started (every {}s)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("No-show sweeper stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self._lifecycle.sweep_overdue()
            except StoreUnavailableError:
                # Try again on the next tick.
                logger.exception("No-show sweep failed")
            await asyncio.sleep(self._interval)
