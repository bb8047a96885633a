"""
Dashboard session: wires the pipeline components for one running session.

The cache, scheduler and friends are created once here and passed by
reference; nothing in the pipeline reaches for module-level state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Union

from .cache import CacheEvent, CachePolicy, QueryCache
from .charts import ChartLoader
from .config import DEFAULT_TIMEFRAME, LISTING_RETAIN_SECONDS, STALE_MARGIN_SECONDS, PipelineConfig, load_config
from .errors import PipelineError, as_pipeline_error
from .filtering import FilterResolver
from .reliability import BackoffPolicy, with_retry
from .scheduler import RefreshScheduler
from .schemas import (
    ChartState,
    ErrorPayload,
    FilterResolution,
    FilterType,
    ListingState,
    MarketRecord,
    ScheduleState,
    SearchHit,
)
from .search import SearchDebouncer
from .transport import CoinGeckoClient

logger = logging.getLogger(__name__)


class Dashboard:

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        client=None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
        tick_seconds: float = 1.0,
        search_delay_seconds: float = 0.3,
    ):
        self.config = config or load_config()
        self.client = client or CoinGeckoClient(self.config.base_url, self.config.request_timeout_seconds)
        self.cache = QueryCache(clock=clock)
        self.backoff = BackoffPolicy.from_config(self.config)
        self._sleep = sleep
        self.filters = FilterResolver(self.client, self.cache, self.config, sleep=sleep)
        self.charts = ChartLoader(self.client, self.cache, self.config, sleep=sleep)
        self.scheduler = RefreshScheduler(
            self.refresh,
            interval_seconds=self.config.refresh_interval_seconds,
            tick_seconds=tick_seconds,
        )
        self.searcher = SearchDebouncer(self._search, delay_seconds=search_delay_seconds)
        self.listing_policy = CachePolicy(
            fresh_seconds=max(0.0, self.config.refresh_interval_seconds - STALE_MARGIN_SECONDS),
            retain_seconds=LISTING_RETAIN_SECONDS,
        )
        self.snapshot: List[MarketRecord] = []
        self.listing_error: Optional[PipelineError] = None
        self.started_at = time.time()
        # background revalidations of the listing land here
        self._unsubscribe = self.cache.subscribe(self.listing_key, self._on_listing_event)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    # -------------------------------------------------------------- listing

    @property
    def listing_key(self):
        return ('listing', 1, self.config.default_per_page)

    def _on_listing_event(self, event: CacheEvent) -> None:
        if event.error is not None:
            self.listing_error = as_pipeline_error(event.error)
            return
        self.snapshot = list(event.value)
        self.listing_error = None

    async def _fetch_listing(self) -> List[MarketRecord]:
        cfg = self.config
        return await with_retry(
            lambda: self.client.fetch_listing(1, cfg.default_per_page, cfg.default_currency),
            max_attempts=cfg.max_retries,
            policy=self.backoff,
            sleep=self._sleep,
        )

    async def load_listing(self) -> List[MarketRecord]:
        """Snapshot of the listing page; failures are kept in ``listing_error``."""
        try:
            result = await self.cache.get(self.listing_key, self._fetch_listing, self.listing_policy)
        except PipelineError as e:
            logger.warning(f"Listing load failed: {e.kind}")
            self.listing_error = e
            return self.snapshot
        self.snapshot = list(result.value)
        self.listing_error = None
        return self.snapshot

    def _snapshot_is_stale(self) -> bool:
        cached = self.cache.peek(self.listing_key)
        return cached is None or cached.is_stale

    def listing_state(self, filter_type: Union[FilterType, str] = FilterType.ALL) -> ListingState:
        filter_type = FilterType(filter_type)
        if not self.snapshot:
            if self.listing_error is not None:
                return ListingState(
                    records=[],
                    status='error',
                    error=ErrorPayload(**self.listing_error.to_payload()),
                )
            return ListingState(records=[], status='loading')
        resolution = self.filters.resolve(self.snapshot, filter_type)
        return self._to_listing_state(resolution)

    def _to_listing_state(self, resolution: FilterResolution) -> ListingState:
        error = resolution.error
        if error is None and self.listing_error is not None:
            error = ErrorPayload(**self.listing_error.to_payload())
        if error is not None:
            status = 'error'
        elif resolution.needs_api_call and resolution.is_client_filtering:
            status = 'stale-local'
        elif not resolution.needs_api_call and self._snapshot_is_stale():
            status = 'stale-local'
        else:
            status = 'fresh-remote'
        return ListingState(records=resolution.records, filtering=resolution, status=status, error=error)

    async def settle_listing(self, filter_type: Union[FilterType, str] = FilterType.ALL) -> ListingState:
        """Load the snapshot if needed and wait for any remote filter stage."""
        if not self.snapshot:
            await self.load_listing()
        if not self.snapshot:
            return self.listing_state(filter_type)
        resolution = await self.filters.settle(self.snapshot, filter_type)
        return self._to_listing_state(resolution)

    async def refresh(self) -> None:
        """Scheduler callback and manual refresh: refetch the listing snapshot."""
        self.cache.invalidate_matching(('listing',))
        await self.load_listing()

    async def refresh_filter(self, filter_type: Union[FilterType, str]) -> ListingState:
        resolution = await self.filters.refresh(self.snapshot, filter_type)
        return self._to_listing_state(resolution)

    # --------------------------------------------------------------- charts

    async def select_chart(self, coin_id: Optional[str], timeframe: str = DEFAULT_TIMEFRAME) -> ChartState:
        if not coin_id:
            self.charts.select(None, timeframe)
            return self.charts.state
        return await self.charts.load(coin_id, timeframe)

    @property
    def chart_state(self) -> ChartState:
        return self.charts.state

    # --------------------------------------------------------------- search

    async def _search(self, query: str) -> List[SearchHit]:
        return await with_retry(
            lambda: self.client.search(query),
            max_attempts=self.config.max_retries,
            policy=self.backoff,
            sleep=self._sleep,
        )

    async def search(self, query: str) -> List[SearchHit]:
        return await self.searcher.search(query)

    # ------------------------------------------------------------- schedule

    def schedule_state(self) -> ScheduleState:
        return self.scheduler.state()

    def set_refresh_interval(self, seconds: int) -> None:
        self.scheduler.set_interval(seconds)

    # ------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        open_client = getattr(self.client, 'open', None)
        if open_client is not None:
            await open_client()
        await self.load_listing()
        self.scheduler.start()
        logger.info(f"Dashboard started with {len(self.snapshot)} records")

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.searcher.aclose()
        await self.filters.aclose()
        await self.cache.aclose()
        self._unsubscribe()
        close_client = getattr(self.client, 'close', None)
        if close_client is not None:
            await close_client()
        logger.info("Dashboard closed")


__all__ = ['Dashboard']
