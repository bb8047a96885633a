import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import TypeAdapter, ValidationError

from .config import COINGECKO_BASE_URL, TIMEFRAMES
from .errors import (
    ConfigurationError,
    NetworkUnavailable,
    PipelineError,
    ServerFailure,
    classify_status,
)
from .schemas import MarketRecord, RawSeries, SearchHit, SearchResponse

logger = logging.getLogger(__name__)

_LISTING = TypeAdapter(List[MarketRecord])


class CoinGeckoClient:
    """
    Client for the public CoinGecko v3 API.
    No API key required; the free tier is rate limited per minute (HTTP 429).

    Each call issues exactly one request and either returns validated records
    or raises a classified ``PipelineError``. Retrying is left to
    ``reliability.with_retry``.
    """

    def __init__(
        self,
        base_url: str = COINGECKO_BASE_URL,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={'Accept': 'application/json'},
            )
            self._owns_session = True

    async def close(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self.session is None:
            await self.open()
        url = f"{self.base_url}{path}"
        start_time = time.time()
        try:
            async with self.session.get(url, params=params, timeout=self.timeout) as response:
                if response.status < 200 or response.status >= 300:
                    logger.warning(f"CoinGecko error {response.status} for {path}")
                    raise classify_status(response.status, f"{path} -> HTTP {response.status}")
                try:
                    data = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as e:
                    raise ServerFailure(f"{path} -> malformed body: {e}") from e
        except PipelineError:
            raise
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"CoinGecko unreachable for {path}: {type(e).__name__}")
            raise NetworkUnavailable(f"{path} -> {type(e).__name__}: {e}") from e
        except aiohttp.ClientError as e:
            raise ServerFailure(f"{path} -> {type(e).__name__}: {e}") from e
        elapsed = (time.time() - start_time) * 1000
        logger.debug(f"CoinGecko {path} [fetched in {elapsed:.0f}ms]")
        return data

    async def fetch_listing(
        self,
        page: int = 1,
        per_page: int = 50,
        currency: str = 'usd',
    ) -> List[MarketRecord]:
        """Markets page ordered by market cap, with 24h change."""
        data = await self._get_json('/coins/markets', {
            'vs_currency': currency,
            'order': 'market_cap_desc',
            'per_page': per_page,
            'page': page,
            'sparkline': 'false',
            'price_change_percentage': '24h',
        })
        return _parse_listing(data, '/coins/markets')

    async def fetch_series(self, coin_id: str, timeframe: str, currency: str = 'usd') -> RawSeries:
        tf = TIMEFRAMES.get(timeframe)
        if not tf:
            raise ConfigurationError(f"Invalid timeframe: {timeframe}")
        data = await self._get_json(f"/coins/{coin_id}/market_chart", {
            'vs_currency': currency,
            'days': tf['days'],
        })
        try:
            return RawSeries.model_validate(data)
        except ValidationError as e:
            raise ServerFailure(f"market_chart {coin_id}: unexpected shape") from e

    async def search(self, query: str) -> List[SearchHit]:
        query = (query or '').strip()
        if not query:
            return []
        data = await self._get_json('/search', {'query': query})
        try:
            return SearchResponse.model_validate(data).coins
        except ValidationError as e:
            raise ServerFailure("search: unexpected shape") from e

    async def fetch_details(self, coin_id: str, currency: str = 'usd') -> MarketRecord:
        """Single coin with its market data flattened into a MarketRecord."""
        data = await self._get_json(f"/coins/{coin_id}", {
            'localization': 'false',
            'tickers': 'false',
            'market_data': 'true',
            'community_data': 'false',
            'developer_data': 'false',
        })
        if not isinstance(data, dict):
            raise ServerFailure(f"coin {coin_id}: unexpected shape")
        md = data.get('market_data', {}) or {}
        currency = currency.lower()

        def _pick(field):
            val = md.get(field)
            return val.get(currency) if isinstance(val, dict) else val

        try:
            return MarketRecord(
                id=data.get('id'),
                symbol=data.get('symbol'),
                name=data.get('name'),
                image=(data.get('image') or {}).get('large'),
                current_price=_pick('current_price'),
                price_change_24h=_pick('price_change_24h'),
                price_change_percentage_24h=md.get('price_change_percentage_24h'),
                market_cap=_pick('market_cap'),
                total_volume=_pick('total_volume'),
                market_cap_rank=data.get('market_cap_rank'),
                high_24h=_pick('high_24h'),
                low_24h=_pick('low_24h'),
                last_updated=data.get('last_updated'),
            )
        except ValidationError as e:
            raise ServerFailure(f"coin {coin_id}: unexpected shape") from e

    async def fetch_multiple(self, coin_ids: Sequence[str], currency: str = 'usd') -> List[MarketRecord]:
        if not coin_ids:
            return []
        data = await self._get_json('/coins/markets', {
            'vs_currency': currency,
            'ids': ','.join(coin_ids),
            'sparkline': 'false',
            'price_change_percentage': '24h',
        })
        return _parse_listing(data, '/coins/markets?ids')


def _parse_listing(data: Any, where: str) -> List[MarketRecord]:
    try:
        return _LISTING.validate_python(data)
    except ValidationError as e:
        raise ServerFailure(f"{where}: unexpected shape ({e.error_count()} errors)") from e


__all__ = ['CoinGeckoClient']
