"""Tests for the dashboard session wiring."""

import pytest

from market_pipeline.dashboard import Dashboard
from market_pipeline.errors import ServerFailure
from market_pipeline.schemas import FilterType, RawSeries, SearchHit

from conftest import make_record, no_sleep


@pytest.fixture
def make_dashboard(fake_client, fast_config, clock):
    def _make(**kwargs):
        kwargs.setdefault('config', fast_config)
        kwargs.setdefault('client', fake_client)
        return Dashboard(sleep=no_sleep, clock=clock, search_delay_seconds=0, **kwargs)
    return _make


@pytest.mark.unit
class TestListing:

    async def test_initial_state_is_loading(self, make_dashboard):
        dashboard = make_dashboard()
        state = dashboard.listing_state()
        assert state.status == 'loading'
        assert state.records == []

    async def test_start_loads_snapshot(self, make_dashboard, fake_client):
        async with make_dashboard() as dashboard:
            state = dashboard.listing_state()
            assert state.status == 'fresh-remote'
            assert len(state.records) == 50
            assert dashboard.scheduler.is_running
            assert fake_client.calls == [('listing', 1, 50)]
        assert not dashboard.scheduler.is_running

    async def test_snapshot_goes_stale(self, make_dashboard, clock):
        async with make_dashboard() as dashboard:
            clock.advance(56)
            assert dashboard.listing_state().status == 'stale-local'

    async def test_winners_escalate_then_settle(self, make_dashboard, fake_client):
        async with make_dashboard() as dashboard:
            interim = dashboard.listing_state(FilterType.WINNERS)
            assert interim.status == 'stale-local'
            assert interim.filtering.is_client_filtering is True
            assert len(interim.records) == 3

            settled = await dashboard.settle_listing('winners')
            assert settled.status == 'fresh-remote'
            assert len(settled.records) == 13
            assert fake_client.count('expanded') == 1

    async def test_failed_initial_load_reports_error(self, make_dashboard, fake_client):
        fake_client.failures['listing'] = [ServerFailure('down')] * 3
        async with make_dashboard() as dashboard:
            state = dashboard.listing_state()
            assert state.status == 'error'
            assert state.error.kind == 'server_failure'
            assert state.error.message == 'Service temporarily unavailable. Try again in a few moments.'

            await dashboard.refresh()
            assert dashboard.listing_state().status == 'fresh-remote'

    async def test_background_revalidation_updates_snapshot(self, make_dashboard, fake_client, clock):
        async with make_dashboard() as dashboard:
            fake_client.listing = [make_record(i, 9.0) for i in range(50)]
            clock.advance(56)
            stale = await dashboard.load_listing()
            assert stale[0].price_change_percentage_24h == 5.0
            await dashboard.cache.wait(dashboard.listing_key)
            assert all(r.price_change_percentage_24h == 9.0 for r in dashboard.snapshot)

    async def test_scheduled_refresh_refetches(self, make_dashboard, fake_client):
        async with make_dashboard() as dashboard:
            await dashboard.scheduler.refresh()
            assert fake_client.count('listing') == 2
            assert dashboard.schedule_state().next_update_in == 60

    async def test_refresh_failure_keeps_previous_snapshot(self, make_dashboard, fake_client):
        async with make_dashboard() as dashboard:
            fake_client.failures['listing'] = [ServerFailure('down')] * 3
            await dashboard.refresh()
            state = dashboard.listing_state()
            assert len(state.records) == 50
            assert state.status == 'error'


@pytest.mark.unit
class TestSession:

    async def test_chart_selection(self, make_dashboard, fake_client):
        fake_client.series['bitcoin'] = RawSeries(prices=[[1_700_000_000_000 + i, 1.0 + i] for i in range(500)])
        async with make_dashboard() as dashboard:
            state = await dashboard.select_chart('bitcoin', '1h')
            assert len(state.points) <= 60
            assert dashboard.chart_state == state
            cleared = await dashboard.select_chart(None)
            assert cleared.coin_id is None

    async def test_search(self, make_dashboard, fake_client):
        fake_client.hits = [SearchHit(id=f"c{i}", name=f"C{i}", symbol=f"C{i}") for i in range(7)]
        async with make_dashboard() as dashboard:
            hits = await dashboard.search('c')
            assert len(hits) == 5

    async def test_set_refresh_interval(self, make_dashboard):
        async with make_dashboard() as dashboard:
            dashboard.set_refresh_interval(15)
            assert dashboard.schedule_state().interval_seconds == 15
