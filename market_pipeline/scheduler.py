"""
Auto-refresh scheduler with a visible countdown.

A single asyncio task ticks once per ``tick_seconds`` and counts
``next_update_in`` down; reaching zero runs the refresh callback and restarts
the countdown. The callback runs as its own task so a slow or retrying
refresh never stalls the countdown.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from typing import Any, Callable, Optional, Set

from .logging_config import CORRELATION_ID_CTX
from .schemas import ScheduleState

logger = logging.getLogger(__name__)


class RefreshScheduler:

    def __init__(
        self,
        on_refresh: Optional[Callable[[], Any]] = None,
        interval_seconds: int = 60,
        tick_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        if interval_seconds < 1:
            raise ValueError('interval_seconds must be >= 1')
        self.on_refresh = on_refresh
        self.interval_seconds = int(interval_seconds)
        self.tick_seconds = tick_seconds
        self._clock = clock
        self.last_updated = clock()
        self.next_update_in = self.interval_seconds
        self.is_paused = False
        self._tick_task: Optional[asyncio.Task] = None
        self._callbacks: Set[asyncio.Task] = set()
        self._cycle = 0

    # ------------------------------------------------------------ countdown

    def tick(self) -> bool:
        """Advance the countdown by one step; True when it triggered a refresh."""
        if self.next_update_in <= 1:
            self._fire()
            return True
        self.next_update_in -= 1
        return False

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Refresh tick failed: {e}")

    def _fire(self) -> Optional[asyncio.Task]:
        self._cycle += 1
        self.last_updated = self._clock()
        self.next_update_in = self.interval_seconds
        if self.on_refresh is None:
            return None
        token = CORRELATION_ID_CTX.set(f"refresh-{self._cycle}")
        try:
            logger.info('scheduler.refresh', extra={'event': 'scheduler_refresh', 'cycle': self._cycle})
            result = self.on_refresh()
            if not inspect.isawaitable(result):
                return None
            # the task copies the current context, correlation id included
            task = asyncio.ensure_future(result)
        except Exception as e:
            logger.error(f"Refresh callback failed: {e}")
            return None
        finally:
            CORRELATION_ID_CTX.reset(token)
        self._callbacks.add(task)
        task.add_done_callback(self._callback_done)
        return task

    def _callback_done(self, task: asyncio.Task) -> None:
        self._callbacks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Refresh callback failed: {type(exc).__name__}: {exc}")

    # ------------------------------------------------------------- controls

    async def refresh(self) -> None:
        """Manual refresh: reset the countdown and run the callback now."""
        task = self._fire()
        if task is not None:
            await asyncio.wait([task])

    def start(self) -> None:
        if self.is_paused:
            return
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.create_task(self._run())

    def pause(self) -> None:
        self.is_paused = True
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    def resume(self) -> None:
        self.is_paused = False
        self.start()

    def set_interval(self, interval_seconds: int) -> None:
        if interval_seconds < 1:
            raise ValueError('interval_seconds must be >= 1')
        self.interval_seconds = int(interval_seconds)
        self.next_update_in = self.interval_seconds

    @property
    def is_running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    def state(self) -> ScheduleState:
        return ScheduleState(
            last_updated=self.last_updated,
            next_update_in=self.next_update_in,
            is_paused=self.is_paused,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for t in list(self._callbacks):
            t.cancel()
        if self._callbacks:
            await asyncio.gather(*self._callbacks, return_exceptions=True)
        self._callbacks.clear()


__all__ = ['RefreshScheduler']
