"""Tests for the debounced coin search."""

import asyncio

import pytest

from market_pipeline.errors import RateLimited
from market_pipeline.schemas import SearchHit
from market_pipeline.search import SearchDebouncer


def _hits(n):
    return [SearchHit(id=f"coin-{i}", name=f"Coin {i}", symbol=f"C{i}") for i in range(n)]


class FakeSearch:
    def __init__(self, hits=None, error=None):
        self.queries = []
        self.hits = hits or []
        self.error = error

    async def __call__(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.hits


@pytest.mark.unit
class TestSearchDebouncer:

    async def test_only_last_query_is_sent(self):
        fake = FakeSearch(_hits(2))
        debouncer = SearchDebouncer(fake, delay_seconds=0.01)
        debouncer.submit('b')
        debouncer.submit('bi')
        debouncer.submit('bit')
        results = await debouncer.wait()
        assert fake.queries == ['bit']
        assert len(results) == 2

    async def test_results_capped_at_five(self):
        debouncer = SearchDebouncer(FakeSearch(_hits(8)), delay_seconds=0)
        results = await debouncer.search('coin')
        assert [h.id for h in results] == [f"coin-{i}" for i in range(5)]

    async def test_blank_query_clears_results(self):
        fake = FakeSearch(_hits(3))
        debouncer = SearchDebouncer(fake, delay_seconds=0)
        await debouncer.search('coin')
        assert await debouncer.search('   ') == []
        assert fake.queries == ['coin']

    async def test_failure_clears_results(self):
        debouncer = SearchDebouncer(FakeSearch(error=RateLimited()), delay_seconds=0)
        assert await debouncer.search('coin') == []
        assert debouncer.is_loading is False

    async def test_aclose_cancels_pending(self):
        fake = FakeSearch(_hits(1))
        debouncer = SearchDebouncer(fake, delay_seconds=10)
        task = debouncer.submit('coin')
        await debouncer.aclose()
        assert task.cancelled()
        await asyncio.sleep(0)
        assert fake.queries == []

    async def test_overlapping_callers_get_their_own_answer(self):
        async def echo(query):
            return [SearchHit(id=query, name=query.title(), symbol=query[:3].upper())]

        debouncer = SearchDebouncer(echo, delay_seconds=0.01)
        first = asyncio.create_task(debouncer.search('bitcoin'))
        await asyncio.sleep(0)
        second = asyncio.create_task(debouncer.search('ethereum'))
        # the superseded caller never receives the newer query's hits
        assert await first == []
        assert [h.id for h in await second] == ['ethereum']
        assert [h.id for h in debouncer.results] == ['ethereum']

    async def test_cancelled_caller_raises(self):
        fake = FakeSearch(_hits(1))
        debouncer = SearchDebouncer(fake, delay_seconds=10)
        caller = asyncio.create_task(debouncer.search('btc'))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await debouncer.aclose()
        assert fake.queries == []
