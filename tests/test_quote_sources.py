"""
Tests for individual quote sources with mocked HTTP responses.
"""

import random
from unittest.mock import MagicMock

import pytest
import respx
from httpx import Response

from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog import resolve_symbol
from arena_engine.errors import UpstreamUnavailable
from arena_engine.market_data.models import LastQuoteCache, QuoteTick
from arena_engine.market_data.sources import (
    BackendSnapshotSource,
    LiveQuoteSource,
    SyntheticSource,
    quote_from_price_row,
)
from arena_engine.market_data.synthetic import (
    MAX_DRIFT_FRACTION,
    RandomWalk,
    generate_synthetic_bars,
)

LIVE_URL = "https://quotes.test/v2/cryptocurrency/quotes/latest"


def cmc_payload(**prices: float) -> dict:
    """Create a CoinMarketCap-style quotes/latest payload."""
    return {
        "data": {
            base: [{"symbol": base, "quote": {"USD": {"price": price}}}]
            for base, price in prices.items()
        }
    }


# =============================================================================
# Live source
# =============================================================================


class TestLiveQuoteSource:
    """Tests for the live crypto source."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_one_request_prices_all_symbols(self) -> None:
        """A single call fills the cache for every crypto symbol."""
        route = respx.get(LIVE_URL).mock(
            return_value=Response(200, json=cmc_payload(BTC=95000.0, ETH=3300.0, SOL=150.0))
        )
        source = LiveQuoteSource(LIVE_URL, api_key="k", min_gap_s=60)

        btc = await source.get_quote(resolve_symbol("BTCUSD"))
        eth = await source.get_quote(resolve_symbol("ETHUSD"))

        assert route.call_count == 1
        assert btc is not None and btc.mid == pytest.approx(95000.0)
        assert btc.bid < btc.mid < btc.ask
        assert eth is not None and eth.mid == pytest.approx(3300.0)
        request = route.calls.last.request
        assert request.headers["X-CMC_PRO_API_KEY"] == "k"
        assert request.url.params["symbol"] == "BTC,ETH,SOL"

    @respx.mock
    @pytest.mark.asyncio
    async def test_min_gap_reuses_cache(self) -> None:
        route = respx.get(LIVE_URL).mock(
            return_value=Response(200, json=cmc_payload(BTC=95000.0))
        )
        source = LiveQuoteSource(LIVE_URL, min_gap_s=60)
        info = resolve_symbol("BTCUSD")

        first = await source.get_quote(info)
        second = await source.get_quote(info)

        assert route.call_count == 1
        assert first == second
        assert source.stats["cache_reuses"] == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limited_returns_cached(self) -> None:
        """A 429 after a successful fetch serves the cached quote."""
        respx.get(LIVE_URL).mock(
            side_effect=[
                Response(200, json=cmc_payload(BTC=95000.0)),
                Response(429, json={"status": {"error_message": "rate limited"}}),
            ]
        )
        source = LiveQuoteSource(LIVE_URL, min_gap_s=0)
        info = resolve_symbol("BTCUSD")

        first = await source.get_quote(info)
        second = await source.get_quote(info)

        assert second == first
        assert source.stats["rate_limited"] == 1

    @respx.mock
    @pytest.mark.asyncio
    async def test_rate_limited_without_cache_raises(self) -> None:
        respx.get(LIVE_URL).mock(return_value=Response(429))
        source = LiveQuoteSource(LIVE_URL, min_gap_s=0)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await source.get_quote(resolve_symbol("BTCUSD"))
        assert exc_info.value.status_code == 429

    @respx.mock
    @pytest.mark.asyncio
    async def test_missing_symbol_returns_none(self) -> None:
        respx.get(LIVE_URL).mock(return_value=Response(200, json=cmc_payload(ETH=3300.0)))
        source = LiveQuoteSource(LIVE_URL, min_gap_s=0)

        assert await source.get_quote(resolve_symbol("BTCUSD")) is None

    def test_supports_only_crypto(self) -> None:
        source = LiveQuoteSource(LIVE_URL)
        assert source.supports(resolve_symbol("BTCUSD"))
        assert not source.supports(resolve_symbol("EURUSD"))


# =============================================================================
# Backend snapshot source
# =============================================================================


class TestBackendSnapshotSource:
    """Tests for market_prices_latest reads."""

    @pytest.mark.asyncio
    async def test_price_row_to_quote(self, mock_client: MagicMock) -> None:
        mock_client.select.return_value = [{"instrument_id": "i-1", "bid": 1.1, "ask": 1.2}]
        directory = InstrumentDirectory(mock_client, preset={"EURUSD": "i-1"})
        source = BackendSnapshotSource(mock_client, directory, min_gap_s=0)

        tick = await source.get_quote(resolve_symbol("EURUSD"))

        assert tick is not None
        assert tick.bid == 1.1 and tick.ask == 1.2
        assert tick.source == "snapshot"
        table, filters = mock_client.select.call_args.args
        assert table == "market_prices_latest"
        assert filters == {"instrument_id": "eq.i-1"}

    @pytest.mark.asyncio
    async def test_unknown_instrument_returns_none(self, mock_client: MagicMock) -> None:
        directory = InstrumentDirectory(mock_client)
        source = BackendSnapshotSource(mock_client, directory)

        assert await source.get_quote(resolve_symbol("EURUSD")) is None

    def test_price_only_row_gets_spread(self) -> None:
        tick = quote_from_price_row(resolve_symbol("AAPL"), {"price": "200"}, source="snapshot")
        assert tick is not None
        assert tick.mid == pytest.approx(200.0)
        assert tick.bid < 200.0 < tick.ask

    def test_unpriced_row_is_none(self) -> None:
        assert quote_from_price_row(resolve_symbol("AAPL"), {"price": None}, source="x") is None


# =============================================================================
# Synthetic source
# =============================================================================


class TestSyntheticSource:
    """Tests for the random-walk source."""

    @pytest.mark.asyncio
    async def test_always_prices_catalogued_symbol(self) -> None:
        source = SyntheticSource(RandomWalk(seed=1))
        info = resolve_symbol("XAUUSD")

        tick = await source.get_quote(info)

        assert tick is not None
        assert tick.source == "synthetic"
        assert tick.bid < tick.ask
        assert abs(tick.mid - info.base_price) <= info.base_price * 0.01

    @pytest.mark.asyncio
    async def test_walk_starts_from_last_real_quote(self) -> None:
        cache = LastQuoteCache()
        cache.update(QuoteTick.from_bid_ask("BTCUSD", 60000.0, 60010.0, timestamp=1, source="live"))
        source = SyntheticSource(RandomWalk(seed=1), quote_cache=cache)

        tick = await source.get_quote(resolve_symbol("BTCUSD"))

        assert tick is not None
        assert tick.mid == pytest.approx(60005.0, rel=0.01)

    def test_walk_stays_in_band(self) -> None:
        walk = RandomWalk(seed=5)
        for _ in range(5000):
            price = walk.step("EURUSD", 1.0)
            assert 1.0 * (1 - MAX_DRIFT_FRACTION) <= price <= 1.0 * (1 + MAX_DRIFT_FRACTION)


class TestSyntheticBars:
    """Tests for synthetic history."""

    def test_bars_cover_range(self) -> None:
        bars = generate_synthetic_bars(100.0, 60, 0, 600, rng=random.Random(1))
        assert bars[0].time == 0
        assert bars[-1].time <= 600
        assert len(bars) == 11

    def test_bar_invariants(self) -> None:
        for bar in generate_synthetic_bars(100.0, 60, 0, 60 * 300, rng=random.Random(2)):
            assert bar.high >= max(bar.open, bar.close)
            assert bar.low <= min(bar.open, bar.close)

    def test_capped_and_spanning(self) -> None:
        """Long ranges are capped and the step widens to span the range."""
        end = 60 * 10_000
        bars = generate_synthetic_bars(100.0, 60, 0, end, max_bars=500, rng=random.Random(3))
        assert 0 < len(bars) <= 500
        assert bars[-1].time > end // 2

    def test_empty_range(self) -> None:
        assert generate_synthetic_bars(100.0, 60, 100, 50) == []

    def test_single_point_range(self) -> None:
        assert len(generate_synthetic_bars(100.0, 60, 30, 30)) == 1
