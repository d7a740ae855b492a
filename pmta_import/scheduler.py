"""Periodic latest-file refresh."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Set

from .logger import get_logger

DEFAULT_INTERVAL_SECONDS = 30.0


class ImportScheduler:
    """Run ``refresh`` every ``interval`` seconds while ``is_connected()`` holds.

    Each ``start`` creates a fresh loop with its own stop event, so a loop that
    is finishing an in-flight refresh after ``stop`` never re-arms.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[Any]],
        is_connected: Callable[[], bool],
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        self._refresh = refresh
        self._is_connected = is_connected
        self.interval = max(0.05, float(interval))
        self.logger = logger or get_logger()
        self.last_run: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._wake_event: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> bool:
        return self._stop_event is not None

    def start(self, interval: Optional[float] = None) -> None:
        """Start the loop, replacing any loop already running."""
        self.stop()
        if interval is not None:
            self.interval = max(0.05, float(interval))
        stop_event = asyncio.Event()
        wake_event = asyncio.Event()
        self._stop_event = stop_event
        self._wake_event = wake_event
        task = asyncio.create_task(self._loop(stop_event, wake_event), name="pmta-import-scheduler")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.logger.info("Starting periodic import every %s seconds", self.interval)

    def stop(self) -> None:
        """Stop re-arming the loop. Idempotent; an in-flight refresh completes."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        if self._wake_event is not None:
            self._wake_event.set()
        self._stop_event = None
        self._wake_event = None
        self.logger.info("Stopped periodic import")

    def run_now(self) -> bool:
        """Wake the loop for an immediate refresh."""
        if self._wake_event is None:
            return False
        self._wake_event.set()
        return True

    async def aclose(self) -> None:
        """Stop and wait for every loop, including one finishing a refresh."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _loop(self, stop_event: asyncio.Event, wake_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self._wait_for_wakeup(stop_event, wake_event)
            if stop_event.is_set():
                break
            await self.tick()

    async def _wait_for_wakeup(self, stop_event: asyncio.Event, wake_event: asyncio.Event) -> None:
        """Pause the loop while allowing wake-ups via :meth:`run_now`."""
        if stop_event.is_set():
            return
        try:
            async with asyncio.timeout(self.interval):
                await wake_event.wait()
        except asyncio.TimeoutError:
            return
        wake_event.clear()

    async def tick(self) -> bool:
        """Run one refresh cycle; failures are logged, never raised."""
        if not self._is_connected():
            self.logger.debug("Periodic import skipped: not connected")
            return False
        try:
            await self._refresh()
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            self.logger.error("Periodic import error: %s", self.last_error)
            return False
        self.last_run = datetime.now(timezone.utc)
        self.last_error = None
        return True
