from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

import structlog

from .session import OriginSession

logger = structlog.get_logger(__name__)


class SessionPoller:
    """Drives ``OriginSession.poll`` at a fixed cadence from the event loop."""

    def __init__(self, session: OriginSession, *, interval: float = 1.0) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be greater than zero")
        self._session = session
        self.interval = interval
        self.ticks = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def __aenter__(self) -> "SessionPoller":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="origin-session-poll")
        logger.info("origin.poll.started", interval=self.interval)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("origin.poll.stopped", ticks=self.ticks)

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self._session.poll)
            except Exception as exc:
                logger.error(
                    "origin.poll.tick_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            self.ticks += 1
            await asyncio.sleep(self.interval)


__all__ = ["SessionPoller"]
