"""Background loop helper shared by the schedulers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

_logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Run *callback* every *interval* seconds until stopped.

    A failing callback is logged and the loop keeps going. :meth:`stop`
    wakes the loop immediately instead of waiting for the interval.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run(), name=self.name)
            _logger.debug("%s started (every %.0fs)", self.name, self.interval)

    async def _run(self) -> None:
        if not self._run_immediately and await self._sleep():
            return
        while not self._stop_event.is_set():
            try:
                await self._callback()
            except Exception:
                _logger.exception("%s tick failed", self.name)
            if await self._sleep():
                return

    async def _sleep(self) -> bool:
        """Wait one interval; ``True`` when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except TimeoutError:
            return False
        return True

    async def stop(self) -> None:
        if self._task is not None:
            self._stop_event.set()
            try:
                await self._task
            finally:
                self._task = None
                self._stop_event = asyncio.Event()
                _logger.debug("%s stopped", self.name)
