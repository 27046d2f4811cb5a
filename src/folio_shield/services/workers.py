"""Background workers that run on a fixed interval."""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class IntervalWorker:
    """Runs :meth:`tick` every ``interval`` seconds until stopped.

    Errors raised by a tick are logged and the loop carries on with the next
    tick; nothing in here holds a lock over request handling.
    """

    name = "worker"

    def __init__(self, interval: float) -> None:
        self.interval = max(0.1, float(interval))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def tick(self) -> None:
        raise NotImplementedError

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            if self._stopping.is_set():
                return
            try:
                await self.tick()
            except (SQLAlchemyError, OSError, ConnectionError) as e:
                logger.warning("%s tick failed: %s", self.name, e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("%s tick failed: %s", self.name, e, exc_info=True)
            except Exception:
                logger.exception("%s tick failed unexpectedly", self.name)
