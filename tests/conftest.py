"""
Shared pytest fixtures for the market pipeline tests.
"""

import asyncio
from typing import Dict, List, Optional

import pytest

from market_pipeline.config import PipelineConfig
from market_pipeline.schemas import MarketRecord, RawSeries, SearchHit


# ============================================================================
# Mock Data Fixtures
# ============================================================================

def make_record(i: int, change: Optional[float] = 0.0, volume: Optional[float] = None) -> MarketRecord:
    return MarketRecord(
        id=f"coin-{i}",
        symbol=f"c{i}",
        name=f"Coin {i}",
        current_price=100.0 + i,
        price_change_percentage_24h=change,
        total_volume=float(1000 * (i + 1)) if volume is None else volume,
        market_cap=1e9 - i,
        market_cap_rank=i + 1,
    )


@pytest.fixture
def mock_markets_response():
    """Mock CoinGecko /coins/markets response."""
    return [
        {
            "id": "bitcoin",
            "symbol": "btc",
            "name": "Bitcoin",
            "image": "https://assets.coingecko.com/coins/images/1/large/bitcoin.png",
            "current_price": 43250.5,
            "market_cap": 845000000000,
            "market_cap_rank": 1,
            "fully_diluted_valuation": None,
            "total_volume": 25000000000,
            "high_24h": 44000.0,
            "low_24h": 42000.0,
            "price_change_24h": 1300.2,
            "price_change_percentage_24h": 3.2,
            "roi": None,
            "last_updated": "2025-12-22T10:00:00.000Z",
        },
        {
            "id": "ethereum",
            "symbol": "eth",
            "name": "Ethereum",
            "current_price": 2250.1,
            "market_cap": 270000000000,
            "market_cap_rank": 2,
            "total_volume": 12000000000,
            "price_change_24h": -40.5,
            "price_change_percentage_24h": -1.8,
        },
    ]


@pytest.fixture
def mock_market_chart_response():
    """Mock CoinGecko /coins/{id}/market_chart response."""
    base = 1703232000000
    return {
        "prices": [[base + i * 60_000, 43000.0 + (i % 7) * 10] for i in range(300)],
        "market_caps": [[base, 845000000000]],
        "total_volumes": [[base, 25000000000]],
    }


@pytest.fixture
def mock_search_response():
    return {
        "coins": [
            {"id": f"bit-{i}", "name": f"Bit {i}", "symbol": f"B{i}", "market_cap_rank": i,
             "thumb": "t.png", "large": "l.png"}
            for i in range(8)
        ],
        "exchanges": [],
        "icos": [],
        "categories": [],
        "nfts": [],
    }


@pytest.fixture
def snapshot_three_winners() -> List[MarketRecord]:
    """50 listing rows, only 3 of them up over 24h."""
    changes = [5.0, 2.5, 0.7] + [-(i + 1) * 0.5 for i in range(47)]
    return [make_record(i, c) for i, c in enumerate(changes)]


# ============================================================================
# Fakes
# ============================================================================

class FakeResponse:
    def __init__(self, status: int = 200, payload=None, enter_error: Optional[BaseException] = None,
                 json_error: Optional[BaseException] = None):
        self.status = status
        self._payload = payload
        self._enter_error = enter_error
        self._json_error = json_error

    async def json(self, content_type=None):
        if self._json_error is not None:
            raise self._json_error
        return self._payload

    async def __aenter__(self):
        if self._enter_error is not None:
            raise self._enter_error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; replays queued responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


class FakeClient:
    """In-memory CoinGecko client with call counting, failures and gates."""

    def __init__(self, listing=None, expanded=None, series: Optional[Dict[str, RawSeries]] = None,
                 hits: Optional[List[SearchHit]] = None, default_per_page: int = 50):
        self.listing = list(listing or [])
        self.expanded = list(expanded) if expanded is not None else list(self.listing)
        self.series = series or {}
        self.hits = hits or []
        self.default_per_page = default_per_page
        self.calls = []
        self.failures: Dict[str, list] = {}
        self.gates: Dict[str, asyncio.Event] = {}

    async def _step(self, name: str):
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        queued = self.failures.get(name)
        if queued:
            raise queued.pop(0)

    async def fetch_listing(self, page=1, per_page=50, currency='usd'):
        name = 'expanded' if per_page > self.default_per_page else 'listing'
        self.calls.append((name, page, per_page))
        await self._step(name)
        return list(self.expanded if name == 'expanded' else self.listing)

    async def fetch_series(self, coin_id, timeframe, currency='usd'):
        self.calls.append(('series', coin_id, timeframe))
        await self._step(f"series:{coin_id}")
        return self.series[coin_id]

    async def search(self, query):
        self.calls.append(('search', query))
        await self._step('search')
        return list(self.hits)

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)


async def no_sleep(_delay):
    await asyncio.sleep(0)


@pytest.fixture
def fast_config():
    return PipelineConfig(initial_delay_ms=0, max_delay_ms=0)


@pytest.fixture
def fake_client(snapshot_three_winners):
    expanded = snapshot_three_winners + [make_record(100 + i, 1.0 + i) for i in range(10)]
    return FakeClient(listing=snapshot_three_winners, expanded=expanded)


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()
