"""Price chart loading: fetch, validate, downsample, and track the selected coin."""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Tuple

from .cache import CachePolicy, QueryCache
from .chart_utils import (
    calculate_series_stats,
    clean_series,
    downsample,
    get_optimal_points,
    get_timeframe_stale_seconds,
    to_series,
    validate_series,
)
from .config import CHART_RETAIN_SECONDS, DEFAULT_TIMEFRAME, TIMEFRAMES, PipelineConfig
from .errors import ConfigurationError, InvalidData, PipelineError
from .reliability import BackoffPolicy, with_retry
from .schemas import ChartState, ErrorPayload, SeriesPoint

logger = logging.getLogger(__name__)


class ChartLoader:
    """
    Loads the downsampled price series for the selected (coin, timeframe).

    Results are cached per key. When the selection changes while a load is
    in flight, the late result is still cached but never replaces the state
    of the newer selection.
    """

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
        self.backoff = BackoffPolicy.from_config(self.config)
        self._sleep = sleep
        self._current: Optional[Tuple[str, str]] = None
        self.state = ChartState(timeframe=DEFAULT_TIMEFRAME)

    @staticmethod
    def cache_key(coin_id: str, timeframe: str):
        return ('chart', coin_id, timeframe)

    @property
    def current_key(self) -> Optional[Tuple[str, str]]:
        return self._current

    def select(self, coin_id: Optional[str], timeframe: str = DEFAULT_TIMEFRAME) -> None:
        """Make (coin_id, timeframe) the displayed selection; None clears it."""
        if timeframe not in TIMEFRAMES:
            raise ConfigurationError(f"Invalid timeframe: {timeframe}")
        if not coin_id:
            self._current = None
            self.state = ChartState(timeframe=timeframe)
            return
        self._current = (coin_id, timeframe)
        # keep the previous points on screen while the new ones load
        self.state = self.state.model_copy(update={
            'coin_id': coin_id,
            'timeframe': timeframe,
            'is_loading': True,
            'error': None,
        })

    def _fetcher(self, coin_id: str, timeframe: str):
        cfg = self.config

        async def _fetch() -> List[SeriesPoint]:
            raw = await with_retry(
                lambda: self.client.fetch_series(coin_id, timeframe, cfg.default_currency),
                max_attempts=cfg.max_retries,
                policy=self.backoff,
                sleep=self._sleep,
            )
            series = to_series(raw)
            if not validate_series(series):
                raise InvalidData(f"chart {coin_id}/{timeframe}: no valid points")
            points = downsample(clean_series(series), get_optimal_points(timeframe))
            logger.debug(f"Chart {coin_id}/{timeframe}: {len(series)} -> {len(points)} points")
            return points

        return _fetch

    async def fetch_points(self, coin_id: str, timeframe: str) -> List[SeriesPoint]:
        if timeframe not in TIMEFRAMES:
            raise ConfigurationError(f"Invalid timeframe: {timeframe}")
        policy = CachePolicy(
            fresh_seconds=get_timeframe_stale_seconds(timeframe),
            retain_seconds=max(CHART_RETAIN_SECONDS, get_timeframe_stale_seconds(timeframe)),
        )
        result = await self.cache.get(self.cache_key(coin_id, timeframe), self._fetcher(coin_id, timeframe), policy)
        return result.value

    async def load(self, coin_id: str, timeframe: str = DEFAULT_TIMEFRAME) -> ChartState:
        """Select and load (coin_id, timeframe); returns the state for that key."""
        self.select(coin_id, timeframe)
        key = (coin_id, timeframe)
        try:
            points = await self.fetch_points(coin_id, timeframe)
            state = ChartState(
                coin_id=coin_id,
                timeframe=timeframe,
                points=points,
                stats=calculate_series_stats(points),
            )
        except PipelineError as e:
            logger.warning(f"Chart {coin_id}/{timeframe} failed: {e.kind}")
            state = ChartState(coin_id=coin_id, timeframe=timeframe, error=ErrorPayload(**e.to_payload()))
        if self._current == key:
            self.state = state
        else:
            logger.debug(f"Discarding superseded chart result for {coin_id}/{timeframe}")
        return state

    async def retry(self) -> Optional[ChartState]:
        """Reload the current selection, bypassing a failed or stale entry."""
        if self._current is None:
            return None
        coin_id, timeframe = self._current
        self.cache.invalidate(self.cache_key(coin_id, timeframe))
        return await self.load(coin_id, timeframe)


__all__ = ['ChartLoader']
