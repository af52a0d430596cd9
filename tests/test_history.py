"""
Tests for historical bar retrieval and its fallback chain.
"""

import json

import pytest
import respx
from httpx import Response

from arena_engine.backend.client import BackendClient
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog import resolve_symbol
from arena_engine.config import Settings
from arena_engine.errors import ValidationError
from arena_engine.market_data.history import HistoricalBarService, parse_bar_time
from arena_engine.market_data.models import LastQuoteCache, QuoteTick
from tests.conftest import FUNCTIONS_URL, REST_URL

DAY = 86400
START = 1_700_000_000 - (1_700_000_000 % 3600)


def make_service(client: BackendClient, cache: LastQuoteCache | None = None) -> HistoricalBarService:
    return HistoricalBarService(
        client,
        InstrumentDirectory(client),
        cache or LastQuoteCache(),
        max_bars=500,
        seed=1,
    )


def candle(ts: int, price: float) -> dict:
    return {"open": price, "high": price + 1, "low": price - 1, "close": price, "volume": 10, "ts_open": ts}


class TestStore:
    """Bars from the pre-computed store."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_store_rows(self, backend_client: BackendClient) -> None:
        respx.get(f"{REST_URL}/instruments").mock(return_value=Response(200, json=[{"id": "i-btc"}]))
        candles = respx.get(f"{REST_URL}/market_candles").mock(
            return_value=Response(
                200,
                json=[
                    {**candle(0, 100), "ts_open": "2023-11-14T22:00:00+00:00"},
                    {**candle(0, 101), "ts_open": "2023-11-14T23:00:00+00:00"},
                ],
            )
        )

        result = await make_service(backend_client).get_bars(
            resolve_symbol("BTCUSD"), "60", START, START + DAY
        )

        assert result.no_data is False
        assert result.source == "store"
        assert [bar.close for bar in result.bars] == [100, 101]
        assert result.bars[1].time - result.bars[0].time == 3600
        params = candles.calls.last.request.url.params
        assert params["instrument_id"] == "eq.i-btc"
        assert params["timeframe"] == "eq.1h"
        assert params["order"] == "ts_open.asc"


class TestCompute:
    """Bars from the candles-engine edge function."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_compute_when_store_empty(self, backend_client: BackendClient) -> None:
        respx.get(f"{REST_URL}/instruments").mock(return_value=Response(200, json=[{"id": "i-1"}]))
        respx.get(f"{REST_URL}/market_candles").mock(return_value=Response(200, json=[]))
        compute = respx.post(f"{FUNCTIONS_URL}/candles-engine").mock(
            return_value=Response(
                200,
                json={
                    "candles": [
                        candle(START + 7200, 3),
                        candle(START, 1),
                        candle(START + 3600, 2),
                        candle(START + 10 * DAY, 99),  # outside the window
                    ]
                },
            )
        )

        result = await make_service(backend_client).get_bars(
            resolve_symbol("ETHUSD"), "60", START, START + DAY
        )

        assert result.source == "compute"
        assert [bar.close for bar in result.bars] == [1, 2, 3]
        body = json.loads(compute.calls.last.request.content)
        assert body["symbol"] == "ETHUSD"
        assert body["interval"] == "1h"
        assert len(body["start_date"]) == 10


class TestSyntheticFallback:
    """Bars when the backend has nothing."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_backend_down_gives_synthetic(self, backend_client: BackendClient) -> None:
        respx.get(f"{REST_URL}/instruments").mock(return_value=Response(503))
        respx.post(f"{FUNCTIONS_URL}/candles-engine").mock(return_value=Response(500))

        result = await make_service(backend_client).get_bars(
            resolve_symbol("EURUSD"), "1", START, START + 3600
        )

        assert result.source == "synthetic"
        assert 0 < len(result.bars) <= 500

    @pytest.mark.asyncio
    async def test_offline_capped(self, offline_settings: Settings) -> None:
        """A year of minute bars with no backend is non-empty and capped."""
        service = make_service(BackendClient(offline_settings))

        result = await service.get_bars(resolve_symbol("AAPL"), "1", START, START + 365 * DAY)

        assert result.no_data is False
        assert 0 < len(result.bars) <= 500
        times = [bar.time for bar in result.bars]
        assert times == sorted(times)
        assert result.bars[0].open == pytest.approx(resolve_symbol("AAPL").base_price)

    @pytest.mark.asyncio
    async def test_seeded_from_last_quote(self, offline_settings: Settings) -> None:
        cache = LastQuoteCache()
        cache.update(QuoteTick.from_bid_ask("BTCUSD", 50000.0, 50000.0, timestamp=1))
        service = make_service(BackendClient(offline_settings), cache)

        result = await service.get_bars(resolve_symbol("BTCUSD"), "D", START, START + 30 * DAY)

        assert result.bars[0].open == 50000.0


class TestRangeValidation:
    """Edge cases on the request itself."""

    @pytest.mark.asyncio
    async def test_inverted_range_no_data(self, offline_settings: Settings) -> None:
        service = make_service(BackendClient(offline_settings))
        result = await service.get_bars(resolve_symbol("AAPL"), "1", START + 100, START)
        assert result.no_data is True
        assert result.bars == []

    @pytest.mark.asyncio
    async def test_bad_resolution(self, offline_settings: Settings) -> None:
        service = make_service(BackendClient(offline_settings))
        with pytest.raises(ValidationError):
            await service.get_bars(resolve_symbol("AAPL"), "3", START, START + 100)


class TestParseBarTime:
    """Candle timestamp parsing."""

    def test_forms(self) -> None:
        assert parse_bar_time(1_700_000_000) == 1_700_000_000
        assert parse_bar_time(1_700_000_000_000) == 1_700_000_000
        assert parse_bar_time("1700000000") == 1_700_000_000
        assert parse_bar_time("2023-11-14T22:13:20+00:00") == 1_700_000_000
        assert parse_bar_time("2023-11-14T22:13:20") == 1_700_000_000

    def test_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_bar_time(None)
