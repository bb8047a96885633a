"""Pipeline configuration.

Defaults live on ``PipelineConfig``; an optional YAML file and ``MARKET_*``
environment variables override them. The model is validated once when the
session is created and passed by reference afterwards.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

COINGECKO_BASE_URL = 'https://api.coingecko.com/api/v3'

# CoinGecko takes a ``days`` parameter for the market_chart range
TIMEFRAMES: Dict[str, Dict[str, Any]] = {
    '1h': {'label': '1H', 'days': 0.04},
    '24h': {'label': '24H', 'days': 1},
    '7d': {'label': '7D', 'days': 7},
    '30d': {'label': '30D', 'days': 30},
    '1y': {'label': '1Y', 'days': 365},
}
DEFAULT_TIMEFRAME = '24h'

LISTING_RETAIN_SECONDS = 5 * 60
CHART_RETAIN_SECONDS = 10 * 60
# Cached entries go stale this long before their nominal window ends
STALE_MARGIN_SECONDS = 5

ENV_PREFIX = 'MARKET_'


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    # filtering
    min_results_threshold: int = Field(5, ge=0)
    cache_time_ms: int = Field(120_000, gt=STALE_MARGIN_SECONDS * 1000)
    dynamic_threshold_percentage: float = Field(0.10, gt=0.0, le=1.0)
    # polling
    refresh_interval_ms: int = Field(60_000, ge=1000)
    # retry / backoff
    max_retries: int = Field(3, ge=1)
    initial_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(10_000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    # upstream
    base_url: str = COINGECKO_BASE_URL
    default_currency: str = 'usd'
    default_per_page: int = Field(50, ge=1, le=250)
    request_timeout_seconds: float = Field(10.0, gt=0)

    @property
    def cache_time_seconds(self) -> float:
        return self.cache_time_ms / 1000.0

    @property
    def refresh_interval_seconds(self) -> int:
        return max(1, self.refresh_interval_ms // 1000)


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f'config file {path} must hold a mapping')
    # allow either a flat file or one nested under "pipeline:"
    return data.get('pipeline', data)


def _env_overrides(environ) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in PipelineConfig.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw.strip() != '':
            out[name] = raw.strip()
    return out


def load_config(path: Optional[str] = None, environ=None, **overrides: Any) -> PipelineConfig:
    """Build the session configuration.

    Precedence, lowest first: model defaults, YAML file (``path`` or
    ``MARKET_CONFIG_FILE``), ``MARKET_<FIELD>`` environment variables,
    keyword overrides.
    """
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    path = path or environ.get('MARKET_CONFIG_FILE')
    if path:
        if not os.path.exists(path):
            raise ConfigurationError(f'config file not found: {path}')
        values.update(_read_yaml(path))
        logger.info(f'Loaded pipeline config from: {path}')
    values.update(_env_overrides(environ))
    values.update(overrides)
    try:
        return PipelineConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f'invalid pipeline config: {e}') from e


__all__ = [
    'PipelineConfig', 'load_config', 'TIMEFRAMES', 'DEFAULT_TIMEFRAME',
    'COINGECKO_BASE_URL', 'LISTING_RETAIN_SECONDS', 'CHART_RETAIN_SECONDS',
    'STALE_MARGIN_SECONDS',
]
