"""Series helpers for the price chart: downsampling, validation and stats."""
from __future__ import annotations

import math
from typing import Any, List, Sequence

from .errors import ConfigurationError
from .schemas import ChartStats, RawSeries, SeriesPoint

DEFAULT_MAX_POINTS = 200

# render density per timeframe
OPTIMAL_POINTS = {
    '1h': 60,     # one point per minute
    '24h': 96,    # one point per 15 min
    '7d': 168,    # one point per hour
    '30d': 180,   # one point per 4 hours
    '1y': 365,    # one point per day
}

# how long a fetched series counts as fresh; older ranges move slower
TIMEFRAME_STALE_SECONDS = {
    '1h': 2 * 60,
    '24h': 5 * 60,
    '7d': 10 * 60,
    '30d': 30 * 60,
    '1y': 60 * 60,
}
DEFAULT_STALE_SECONDS = 5 * 60


def downsample(series: List[SeriesPoint], max_points: int = DEFAULT_MAX_POINTS) -> List[SeriesPoint]:
    """Reduce ``series`` to at most ``max_points`` points, keeping its shape.

    The first and last points are always kept. Each interior bucket
    contributes the point that deviates most from the bucket mean, so spikes
    and dips survive where stride sampling would skip them.
    """
    if len(series) <= max_points:
        return series
    if max_points < 2:
        raise ConfigurationError(f"max_points must be >= 2 to downsample, got {max_points}")

    bucket_size = len(series) // max_points
    result = [series[0]]
    for i in range(1, max_points - 1):
        start = i * bucket_size
        end = min(start + bucket_size, len(series))
        bucket = series[start:end]
        if not bucket:
            break
        avg = sum(p.value for p in bucket) / bucket_size
        best = bucket[0]
        max_diff = -math.inf
        for point in bucket:
            diff = abs(point.value - avg)
            if diff > max_diff:
                max_diff = diff
                best = point
        result.append(best)
    result.append(series[-1])
    return result


def get_optimal_points(timeframe: str) -> int:
    return OPTIMAL_POINTS.get(timeframe, DEFAULT_MAX_POINTS)


def get_timeframe_stale_seconds(timeframe: str) -> int:
    return TIMEFRAME_STALE_SECONDS.get(timeframe, DEFAULT_STALE_SECONDS)


def _is_valid_point(point: Any) -> bool:
    ts = getattr(point, 'timestamp', None)
    value = getattr(point, 'value', None)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not isinstance(ts, (int, float)) or ts <= 0:
        return False
    return math.isfinite(value)


def validate_series(series: Any) -> bool:
    """True when ``series`` is a non-empty list with at least one usable point."""
    if not isinstance(series, list) or not series:
        return False
    return any(_is_valid_point(p) for p in series)


def clean_series(series: Sequence[SeriesPoint]) -> List[SeriesPoint]:
    return [p for p in series if _is_valid_point(p)]


def to_series(raw: RawSeries) -> List[SeriesPoint]:
    """Convert market_chart ``prices`` pairs into SeriesPoints.

    Malformed pairs are mapped to NaN values so ``validate_series`` decides
    whether enough of the series survived.
    """
    points: List[SeriesPoint] = []
    for pair in raw.prices:
        if len(pair) < 2 or pair[0] is None or not math.isfinite(pair[0]):
            continue
        value = pair[1] if pair[1] is not None else math.nan
        points.append(SeriesPoint(timestamp=int(pair[0]), value=float(value)))
    points.sort(key=lambda p: p.timestamp)
    return points


def calculate_series_stats(series: Sequence[SeriesPoint]) -> ChartStats:
    if not series:
        return ChartStats()
    values = [p.value for p in series]
    first = values[0]
    last = values[-1]
    change = ((last - first) / first) * 100 if first > 0 else 0.0
    is_positive = change >= 0
    return ChartStats(
        min=min(values),
        max=max(values),
        avg=sum(values) / len(values),
        first=first,
        last=last,
        change=change,
        is_positive=is_positive,
        change_formatted=f"{'+' if is_positive else ''}{change:.2f}%",
    )


__all__ = [
    'downsample', 'get_optimal_points', 'get_timeframe_stale_seconds',
    'validate_series', 'clean_series', 'to_series', 'calculate_series_stats',
    'OPTIMAL_POINTS', 'TIMEFRAME_STALE_SECONDS', 'DEFAULT_MAX_POINTS',
]
