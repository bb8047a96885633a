"""Pydantic models for the records that flow through the pipeline.

Upstream payloads (listing rows, market_chart bodies, search hits) are
validated at the transport boundary; everything downstream of it works on
these typed, immutable records.
"""
from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MarketRecord(BaseModel):
    """One row of the /coins/markets listing."""

    model_config = ConfigDict(extra='allow', frozen=True)

    id: str
    symbol: str
    name: str
    image: Optional[str] = None
    current_price: Optional[float] = None
    price_change_24h: Optional[float] = None
    price_change_percentage_24h: Optional[float] = None
    market_cap: Optional[float] = None
    total_volume: Optional[float] = None
    market_cap_rank: Optional[int] = None
    high_24h: Optional[float] = None
    low_24h: Optional[float] = None
    last_updated: Optional[str] = None


class SeriesPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    value: float


class RawSeries(BaseModel):
    """Body of /coins/{id}/market_chart: [timestamp_ms, value] pairs."""

    model_config = ConfigDict(extra='allow')

    prices: List[List[Optional[float]]] = Field(default_factory=list)
    market_caps: List[List[Optional[float]]] = Field(default_factory=list)
    total_volumes: List[List[Optional[float]]] = Field(default_factory=list)


class SearchHit(BaseModel):
    model_config = ConfigDict(extra='allow', frozen=True)

    id: str
    name: str
    symbol: str
    market_cap_rank: Optional[int] = None
    thumb: Optional[str] = None
    large: Optional[str] = None


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra='allow')

    coins: List[SearchHit] = Field(default_factory=list)


class FilterType(str, Enum):
    ALL = 'all'
    WINNERS = 'winners'
    LOSERS = 'losers'
    VOLUME = 'volume'


class ErrorPayload(BaseModel):
    kind: str
    status: int
    message: str


class FilterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    filter_type: FilterType
    threshold: float = 0.0


class FilterResolution(BaseModel):
    records: List[MarketRecord]
    spec: FilterSpec
    is_client_filtering: bool
    needs_api_call: bool
    result_count: int
    threshold: float
    is_loading: bool = False
    error: Optional[ErrorPayload] = None
    client_result_count: int = 0
    api_result_count: int = 0


class ScheduleState(BaseModel):
    last_updated: float
    next_update_in: int
    is_paused: bool
    interval_seconds: int


class ChartStats(BaseModel):
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    first: float = 0.0
    last: float = 0.0
    change: float = 0.0
    is_positive: bool = False
    change_formatted: str = '0.00%'


class ChartState(BaseModel):
    coin_id: Optional[str] = None
    timeframe: str
    points: List[SeriesPoint] = Field(default_factory=list)
    stats: ChartStats = Field(default_factory=ChartStats)
    is_loading: bool = False
    error: Optional[ErrorPayload] = None


ListingStatus = Literal['loading', 'error', 'stale-local', 'fresh-remote']


class ListingState(BaseModel):
    records: List[MarketRecord]
    filtering: Optional[FilterResolution] = None
    status: ListingStatus
    error: Optional[ErrorPayload] = None


class HealthResponse(BaseModel):
    status: str = Field(pattern='^ok$')
    uptime_seconds: float
    cache: dict


__all__ = [
    'MarketRecord', 'SeriesPoint', 'RawSeries', 'SearchHit', 'SearchResponse',
    'FilterType', 'ErrorPayload', 'FilterSpec', 'FilterResolution',
    'ScheduleState', 'ChartStats', 'ChartState', 'ListingStatus',
    'ListingState', 'HealthResponse',
]
