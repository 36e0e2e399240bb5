from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[None]]


class Poller:
    """Calls ``fetch`` every ``interval_s`` seconds until stopped.

    Failures are logged and retried on the next tick; they never end the loop.
    """

    def __init__(self, name: str, interval_s: float, fetch: Fetch, *, immediate: bool = True) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self.immediate = immediate
        self.runs = 0
        self.failures = 0
        self._fetch = fetch
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=f"poll:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def poll_once(self) -> bool:
        self.runs += 1
        try:
            await self._fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # network tolerance: next tick retries
            self.failures += 1
            logger.warning("poll %s failed: %s", self.name, exc)
            return False
        return True

    async def _loop(self) -> None:
        try:
            if not self.immediate:
                await asyncio.sleep(self.interval_s)
            while True:
                await self.poll_once()
                await asyncio.sleep(self.interval_s)
        except asyncio.CancelledError:
            return
