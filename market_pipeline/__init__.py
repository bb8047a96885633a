"""Data pipeline behind the crypto market dashboard."""

from .cache import CachePolicy, CacheResult, QueryCache
from .chart_utils import downsample, get_optimal_points, validate_series
from .config import PipelineConfig, load_config
from .dashboard import Dashboard
from .errors import (
    ClientRejected,
    ConfigurationError,
    InvalidData,
    NetworkUnavailable,
    PipelineError,
    RateLimited,
    ServerFailure,
)
from .filtering import FilterResolver
from .reliability import BackoffPolicy, with_retry
from .scheduler import RefreshScheduler
from .schemas import FilterType, MarketRecord, SeriesPoint
from .transport import CoinGeckoClient

__version__ = '0.1.0'
