"""Debounced coin search.

Each ``submit`` cancels the pending timer, so only the last query typed
within ``delay_seconds`` reaches the API.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .errors import PipelineError
from .schemas import SearchHit

logger = logging.getLogger(__name__)


class SearchDebouncer:

    def __init__(
        self,
        search_fn: Callable[[str], Awaitable[List[SearchHit]]],
        delay_seconds: float = 0.3,
        max_results: int = 5,
    ):
        self.search_fn = search_fn
        self.delay_seconds = delay_seconds
        self.max_results = max_results
        self.query = ''
        self.results: List[SearchHit] = []
        self.is_loading = False
        self._pending: Optional[asyncio.Task] = None

    def submit(self, query: str) -> asyncio.Task:
        """Schedule a search for ``query``, superseding any pending one."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self.query = query
        self._pending = asyncio.create_task(self._run(query))
        return self._pending

    async def _run(self, query: str) -> List[SearchHit]:
        await asyncio.sleep(self.delay_seconds)
        query = query.strip()
        results: List[SearchHit] = []
        if query:
            self.is_loading = True
            try:
                hits = await self.search_fn(query)
                results = list(hits)[: self.max_results]
            except PipelineError as e:
                logger.warning(f"Search failed ({e.kind}); clearing results")
            finally:
                self.is_loading = False
        self.results = results
        return results

    async def wait(self) -> List[SearchHit]:
        """Wait for the pending search (if any) and return the current results."""
        task = self._pending
        if task is not None:
            # asyncio.wait lets a cancelled caller raise without cancelling the task
            await asyncio.wait([task])
        return self.results

    async def search(self, query: str) -> List[SearchHit]:
        """Results for ``query`` itself; [] when a newer query superseded it."""
        task = self.submit(query)
        await asyncio.wait([task])
        if task.cancelled():
            return []
        return task.result()

    async def aclose(self) -> None:
        task, self._pending = self._pending, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])


__all__ = ['SearchDebouncer']
