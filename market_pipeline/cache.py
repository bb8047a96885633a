"""
Query cache with Stale-While-Revalidate (SWR) semantics.

One instance lives for the whole dashboard session and is shared by every
consumer (listing feed, filter resolver, chart loader).

Entry lifecycle per key:
  fresh (age < fresh_seconds): served from memory, no fetch
  stale (age < retain_seconds): served from memory + background refresh
  expired / missing / invalidated: caller awaits the fetch

Concurrent readers of a key share the single in-flight fetch and all observe
the same value or the same exception.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')
Key = Tuple[Hashable, ...]


@dataclass(frozen=True)
class CachePolicy:
    """
    Cache behavior for one family of keys.

    - fresh_seconds: how long a value is served without refetching
    - retain_seconds: how long a value is kept (served stale while refreshing)
    """
    fresh_seconds: float = 60.0
    retain_seconds: float = 300.0


@dataclass
class CacheEntry(Generic[T]):
    value: T
    fetched_at: float
    fresh_until: float
    discard_after: float
    last_accessed: float


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    value: T
    is_stale: bool
    fetched_at: float


@dataclass(frozen=True)
class CacheFailure:
    """Last failed fetch for a key; ignored once ``retry_after`` has passed."""
    error: BaseException
    failed_at: float
    retry_after: float


@dataclass(frozen=True)
class CacheEvent:
    """Delivered to subscribers whenever a fetch for ``key`` settles."""
    key: Key
    value: Any = None
    error: Optional[BaseException] = None


Listener = Callable[[CacheEvent], None]


class QueryCache:

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[Key, CacheEntry] = {}
        self._inflight: Dict[Key, asyncio.Task] = {}
        self._generations: Dict[Key, int] = {}
        self._errors: Dict[Key, CacheFailure] = {}
        self._listeners: Dict[Key, List[Listener]] = {}
        self._stats: Dict[str, Any] = {
            'total_calls': 0,
            'served_cached': 0,
            'served_fresh': 0,
            'background_refreshes': 0,
            'deduplicated': 0,
            'evictions': 0,
            'last_refresh_duration_sec': None,
        }

    # ------------------------------------------------------------------ reads

    async def get(
        self,
        key: Key,
        fetcher: Callable[[], Awaitable[T]],
        policy: CachePolicy,
    ) -> CacheResult[T]:
        now = self._clock()
        self._stats['total_calls'] += 1
        self.evict_expired(now)

        entry = self._entries.get(key)
        if entry is not None:
            age = now - entry.fetched_at
            if age < policy.retain_seconds:
                entry.last_accessed = now
                entry.discard_after = now + policy.retain_seconds
                self._stats['served_cached'] += 1
                if age < policy.fresh_seconds:
                    return CacheResult(entry.value, False, entry.fetched_at)
                if key not in self._inflight:
                    self._stats['background_refreshes'] += 1
                    logger.debug(f"Cache stale, refreshing in background: {key}")
                    self._start_fetch(key, fetcher, policy)
                return CacheResult(entry.value, True, entry.fetched_at)
            self._entries.pop(key, None)

        task = self._inflight.get(key)
        if task is not None:
            self._stats['deduplicated'] += 1
            logger.debug(f"Cache joined in-flight fetch: {key}")
        else:
            task = self._start_fetch(key, fetcher, policy)
        # shield: a cancelled reader must not cancel the fetch other readers share
        value = await asyncio.shield(task)
        self._stats['served_fresh'] += 1
        entry = self._entries.get(key)
        return CacheResult(value, False, entry.fetched_at if entry else self._clock())

    def peek(self, key: Key) -> Optional[CacheResult]:
        """Current entry for ``key`` without fetching (None when absent)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return CacheResult(entry.value, self._clock() >= entry.fresh_until, entry.fetched_at)

    def is_fetching(self, key: Key) -> bool:
        return key in self._inflight

    def error_for(self, key: Key) -> Optional[BaseException]:
        """Failure of the most recent settled fetch for ``key``, if it failed.

        A failure is only reported for the fresh window of the policy it was
        fetched under; after that the key counts as never fetched again.
        """
        failure = self._errors.get(key)
        if failure is None:
            return None
        if self._clock() >= failure.retry_after:
            self._errors.pop(key, None)
            return None
        return failure.error

    async def wait(self, key: Key) -> None:
        """Wait for an in-flight fetch of ``key`` to settle (errors swallowed)."""
        task = self._inflight.get(key)
        if task is not None:
            await asyncio.wait([task])

    # ---------------------------------------------------------------- fetches

    def _start_fetch(self, key: Key, fetcher: Callable[[], Awaitable[T]], policy: CachePolicy) -> asyncio.Task:
        generation = self._generations.get(key, 0)

        async def _run():
            t0 = self._clock()
            try:
                value = await fetcher()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._generations.get(key, 0) == generation:
                    failed_at = self._clock()
                    self._errors[key] = CacheFailure(e, failed_at, failed_at + policy.fresh_seconds)
                self._emit(CacheEvent(key, error=e))
                raise
            done = self._clock()
            self._stats['last_refresh_duration_sec'] = done - t0
            if self._generations.get(key, 0) == generation:
                self._entries[key] = CacheEntry(
                    value=value,
                    fetched_at=done,
                    fresh_until=done + policy.fresh_seconds,
                    discard_after=done + policy.retain_seconds,
                    last_accessed=done,
                )
                self._errors.pop(key, None)
                self._emit(CacheEvent(key, value=value))
            else:
                logger.debug(f"Cache dropped result for invalidated key: {key}")
            return value

        task = asyncio.create_task(_run())
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._settled(key, t))
        return task

    def _settled(self, key: Key, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)
        if task.cancelled():
            return
        exc = task.exception()  # marks the exception as retrieved
        if exc is not None:
            logger.warning(
                'cache.refresh_error',
                extra={'event': 'cache_refresh_error', 'key': str(key), 'error': type(exc).__name__},
            )

    # ---------------------------------------------------------- subscriptions

    def subscribe(self, key: Key, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for settled fetches of ``key``; returns an unsubscribe callable."""
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe():
            listeners = self._listeners.get(key, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(key, None)

        return _unsubscribe

    def _emit(self, event: CacheEvent) -> None:
        for listener in list(self._listeners.get(event.key, [])):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Cache listener failed for {event.key}: {e}")

    # ----------------------------------------------------------- invalidation

    def invalidate(self, key: Key) -> None:
        """Next ``get`` treats ``key`` as absent, whatever its age."""
        self._generations[key] = self._generations.get(key, 0) + 1
        self._entries.pop(key, None)
        self._errors.pop(key, None)
        # an older in-flight fetch keeps serving its current waiters, but can
        # no longer repopulate the entry
        self._inflight.pop(key, None)
        logger.debug(f"Cache invalidated: {key}")

    def invalidate_matching(self, prefix: Key) -> int:
        n = len(prefix)
        keys = {k for k in list(self._entries) + list(self._inflight) + list(self._errors) if k[:n] == prefix}
        for k in keys:
            self.invalidate(k)
        return len(keys)

    def evict_expired(self, now: Optional[float] = None) -> int:
        """Drop entries not accessed within their retain window."""
        now = self._clock() if now is None else now
        expired = [k for k, e in self._entries.items() if now >= e.discard_after and k not in self._inflight]
        for k in expired:
            self._entries.pop(k, None)
        for k in [k for k, f in self._errors.items() if now >= f.retry_after]:
            self._errors.pop(k, None)
        if expired:
            self._stats['evictions'] += len(expired)
            logger.debug(f"Cache evicted {len(expired)} entries")
        return len(expired)

    # ------------------------------------------------------------- lifecycle

    def stats(self) -> Dict[str, Any]:
        data = dict(self._stats)
        data['entries'] = len(self._entries)
        data['inflight'] = len(self._inflight)
        return data

    def __len__(self) -> int:
        return len(self._entries)

    async def aclose(self) -> None:
        tasks = list(self._inflight.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


__all__ = ['CachePolicy', 'CacheEntry', 'CacheFailure', 'CacheResult', 'CacheEvent', 'QueryCache']
