"""
Two-stage filtering of the market listing.

Stage 1 filters the locally held snapshot against a dynamic (percentile)
threshold. When that leaves fewer than ``min_results_threshold`` records,
Stage 2 fetches a page twice the default size through the query cache and
applies the same predicate there. Until Stage 2 lands, the Stage 1 result is
served so the table is never empty; a Stage 2 failure is reported alongside
the Stage 1 records rather than replacing them.
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, List, Optional, Sequence, Set, Tuple, Union

from .cache import CacheEvent, CachePolicy, QueryCache
from .config import STALE_MARGIN_SECONDS, PipelineConfig
from .errors import PipelineError, as_pipeline_error
from .reliability import BackoffPolicy, with_retry
from .schemas import ErrorPayload, FilterResolution, FilterSpec, FilterType, MarketRecord

logger = logging.getLogger(__name__)


def _change(record: MarketRecord) -> float:
    return record.price_change_percentage_24h or 0.0


def _volume(record: MarketRecord) -> float:
    return record.total_volume or 0.0


def apply_local_filter(
    records: Sequence[MarketRecord],
    filter_type: FilterType,
    percentage: float = 0.10,
) -> Tuple[List[MarketRecord], float]:
    """Stage 1: returns ``(filtered, threshold)``.

    The threshold is the sort-field value at index ``ceil(len * percentage)``
    of the sorted snapshot, 0 when that index is past the end.
    """
    if not records:
        return [], 0.0
    if filter_type == FilterType.ALL:
        return list(records), 0.0

    idx = math.ceil(len(records) * percentage)
    if filter_type == FilterType.WINNERS:
        ranked = sorted(records, key=_change, reverse=True)
        threshold = _change(ranked[idx]) if idx < len(ranked) else 0.0
        filtered = [r for r in records if _change(r) >= threshold and _change(r) > 0]
    elif filter_type == FilterType.LOSERS:
        ranked = sorted(records, key=_change)
        threshold = _change(ranked[idx]) if idx < len(ranked) else 0.0
        filtered = [r for r in records if _change(r) <= threshold and _change(r) < 0]
    elif filter_type == FilterType.VOLUME:
        ranked = sorted(records, key=_volume, reverse=True)
        threshold = _volume(ranked[idx]) if idx < len(ranked) else 0.0
        filtered = [r for r in records if _volume(r) >= threshold]
    else:
        return list(records), 0.0
    return filtered, threshold


def apply_remote_filter(records: Sequence[MarketRecord], filter_type: FilterType) -> List[MarketRecord]:
    """Stage 2 predicate: sign filter and sort, no percentile cutoff."""
    if filter_type == FilterType.WINNERS:
        return sorted((r for r in records if _change(r) > 0), key=_change, reverse=True)
    if filter_type == FilterType.LOSERS:
        return sorted((r for r in records if _change(r) < 0), key=_change)
    if filter_type == FilterType.VOLUME:
        return sorted(records, key=_volume, reverse=True)
    return list(records)


def needs_escalation(filter_type: FilterType, local_count: int, min_results: int) -> bool:
    if filter_type == FilterType.ALL:
        return False
    return local_count < min_results


class FilterResolver:
    """Resolves a filter selection against the snapshot, escalating when needed."""

    def __init__(
        self,
        client,
        cache: QueryCache,
        config: Optional[PipelineConfig] = None,
        sleep=asyncio.sleep,
    ):
        self.client = client
        self.cache = cache
        self.config = config or PipelineConfig()
        self.policy = CachePolicy(
            fresh_seconds=max(0.0, self.config.cache_time_seconds - STALE_MARGIN_SECONDS),
            retain_seconds=self.config.cache_time_seconds,
        )
        self.backoff = BackoffPolicy.from_config(self.config)
        self._sleep = sleep
        self._background: Set[asyncio.Task] = set()

    @staticmethod
    def cache_key(filter_type: FilterType):
        return ('filtered', FilterType(filter_type).value)

    def _fetcher(self, filter_type: FilterType):
        cfg = self.config

        async def _fetch_expanded() -> List[MarketRecord]:
            expanded = await with_retry(
                lambda: self.client.fetch_listing(1, cfg.default_per_page * 2, cfg.default_currency),
                max_attempts=cfg.max_retries,
                policy=self.backoff,
                sleep=self._sleep,
            )
            filtered = apply_remote_filter(expanded, filter_type)
            logger.info(
                f"Filter {filter_type.value}: remote page of {len(expanded)} -> {len(filtered)} records"
            )
            return filtered

        return _fetch_expanded

    def _schedule_remote(self, filter_type: FilterType) -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop; remote filter fetch for {filter_type.value} deferred")
            return False
        key = self.cache_key(filter_type)
        task = asyncio.create_task(self.cache.get(key, self._fetcher(filter_type), self.policy))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return True

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled():
            # failures are logged and recorded by the cache
            task.exception()

    def resolve(
        self,
        snapshot: Sequence[MarketRecord],
        filter_type: Union[FilterType, str] = FilterType.ALL,
    ) -> FilterResolution:
        """Current resolution; starts Stage 2 in the background when needed."""
        filter_type = FilterType(filter_type)
        local, threshold = apply_local_filter(snapshot, filter_type, self.config.dynamic_threshold_percentage)
        needs_api_call = needs_escalation(filter_type, len(local), self.config.min_results_threshold)

        remote: Optional[List[MarketRecord]] = None
        error: Optional[ErrorPayload] = None
        is_loading = False
        scheduled = False
        if needs_api_call:
            key = self.cache_key(filter_type)
            cached = self.cache.peek(key)
            failure = self.cache.error_for(key)
            if cached is not None:
                remote = cached.value
            # a failure blocks re-polling for one fresh window, or until refresh()
            if (cached is None or cached.is_stale) and failure is None and not self.cache.is_fetching(key):
                scheduled = self._schedule_remote(filter_type)
            if failure is not None:
                error = ErrorPayload(**as_pipeline_error(failure).to_payload())
            is_loading = remote is None and (scheduled or self.cache.is_fetching(key))

        if needs_api_call and remote:
            records, from_local = remote, False
        else:
            records, from_local = local, True

        return FilterResolution(
            records=records,
            spec=FilterSpec(filter_type=filter_type, threshold=threshold),
            is_client_filtering=from_local,
            needs_api_call=needs_api_call,
            result_count=len(records),
            threshold=threshold,
            is_loading=is_loading,
            error=error,
            client_result_count=len(local),
            api_result_count=len(remote or []),
        )

    def resolve_client_only(
        self,
        snapshot: Sequence[MarketRecord],
        filter_type: Union[FilterType, str] = FilterType.ALL,
    ) -> FilterResolution:
        """Stage 1 only, for callers that always hold the full data locally."""
        filter_type = FilterType(filter_type)
        local, threshold = apply_local_filter(snapshot, filter_type, self.config.dynamic_threshold_percentage)
        return FilterResolution(
            records=local,
            spec=FilterSpec(filter_type=filter_type, threshold=threshold),
            is_client_filtering=True,
            needs_api_call=False,
            result_count=len(local),
            threshold=threshold,
            client_result_count=len(local),
        )

    async def settle(
        self,
        snapshot: Sequence[MarketRecord],
        filter_type: Union[FilterType, str] = FilterType.ALL,
    ) -> FilterResolution:
        """Like ``resolve`` but waits for Stage 2 when it is required."""
        filter_type = FilterType(filter_type)
        local, _ = apply_local_filter(snapshot, filter_type, self.config.dynamic_threshold_percentage)
        if needs_escalation(filter_type, len(local), self.config.min_results_threshold):
            key = self.cache_key(filter_type)
            try:
                await self.cache.get(key, self._fetcher(filter_type), self.policy)
            except PipelineError as e:
                logger.warning(f"Remote filter {filter_type.value} failed: {e.kind}")
        return self.resolve(snapshot, filter_type)

    async def refresh(
        self,
        snapshot: Sequence[MarketRecord],
        filter_type: Union[FilterType, str] = FilterType.ALL,
    ) -> FilterResolution:
        """Manual refresh: drop the cached Stage 2 result and fetch again."""
        filter_type = FilterType(filter_type)
        local, _ = apply_local_filter(snapshot, filter_type, self.config.dynamic_threshold_percentage)
        if needs_escalation(filter_type, len(local), self.config.min_results_threshold):
            self.cache.invalidate(self.cache_key(filter_type))
        return await self.settle(snapshot, filter_type)

    def subscribe(self, filter_type: Union[FilterType, str], listener: Callable[[CacheEvent], None]):
        return self.cache.subscribe(self.cache_key(FilterType(filter_type)), listener)

    async def aclose(self) -> None:
        for t in list(self._background):
            t.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()


__all__ = [
    'apply_local_filter', 'apply_remote_filter', 'needs_escalation', 'FilterResolver',
]
