from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable, Optional

from mailgate.logging import get_logger

logger = get_logger(__name__)


class SweepSupervisor:
    """Own the periodic reclamation task for the lifetime of the process.

    Started after the services are wired and cancelled on shutdown. The
    sweep itself must be idempotent; a failed pass is logged and the loop
    waits for the next interval.
    """

    def __init__(
        self,
        sweep: Callable[[], Awaitable[object]],
        interval_seconds: float,
        *,
        name: str = "auth_sweep",
    ) -> None:
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info("sweep_supervisor_started", task=self.name, interval=self.interval_seconds)

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        """Background loop that reclaims expired auth state."""

        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    results = await self.sweep()
                    logger.info("sweep_completed", task=self.name, results=results)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "sweep_failed",
                        task=self.name,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
        except asyncio.CancelledError:
            logger.info("sweep_task_cancelled", task=self.name)
            raise
