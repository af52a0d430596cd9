"""
Historical bar retrieval.

Stateless per request. Fallback chain:
1. Pre-computed bars from the backend `market_candles` store
2. Raw aggregation from the `candles-engine` edge function
3. Synthetic random-walk bars, capped in count
"""

import random
from datetime import UTC, datetime
from typing import Any

from arena_engine.backend.client import BackendClient, eq
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog.models import SymbolInfo
from arena_engine.errors import UpstreamUnavailable
from arena_engine.logging import get_logger
from arena_engine.market_data.models import (
    Bar,
    HistoryResult,
    LastQuoteCache,
    bucket_start,
    resolution_seconds,
    resolution_timeframe,
)
from arena_engine.market_data.synthetic import generate_synthetic_bars

logger = get_logger(__name__)

CANDLES_FUNCTION = "candles-engine"


def parse_bar_time(value: Any) -> int:
    """
    Convert a candle timestamp to epoch seconds.

    Accepts ISO-8601 strings and numeric epoch values in seconds or milliseconds.
    """
    if isinstance(value, int | float):
        return int(value / 1000) if value > 1e11 else int(value)
    if isinstance(value, str):
        if value.replace(".", "", 1).isdigit():
            return parse_bar_time(float(value))
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return int(parsed.timestamp())
    raise ValueError(f"Unrecognised candle timestamp: {value!r}")


def bar_from_row(row: dict[str, Any]) -> Bar:
    return Bar(
        time=parse_bar_time(row.get("ts_open") or row.get("datetime") or row.get("time")),
        open=float(row["open"]),
        high=float(row["high"]),
        low=float(row["low"]),
        close=float(row["close"]),
        volume=float(row.get("volume") or 0),
    )


def _iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


def _date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).date().isoformat()


class HistoricalBarService:
    """Serves `getBars` for a closed time range."""

    def __init__(
        self,
        client: BackendClient,
        directory: InstrumentDirectory,
        quote_cache: LastQuoteCache,
        max_bars: int = 500,
        store_limit: int = 1000,
        seed: int | None = None,
    ) -> None:
        self._client = client
        self._directory = directory
        self._quote_cache = quote_cache
        self._max_bars = max_bars
        self._store_limit = store_limit
        self._rng = random.Random(seed)

    @property
    def max_bars(self) -> int:
        return self._max_bars

    async def get_bars(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        start: int,
        end: int,
    ) -> HistoryResult:
        """
        Get bars for [start, end] (epoch seconds).

        Never raises for upstream trouble; an unsupported resolution raises
        ValidationError.
        """
        width = resolution_seconds(resolution)
        timeframe = resolution_timeframe(resolution)
        if end < start:
            return HistoryResult(bars=[], no_data=True)

        bars = await self._from_store(symbol_info, timeframe, start, end)
        source = "store"
        if not bars:
            bars = await self._from_compute(symbol_info, timeframe, width, start, end)
            source = "compute"
        if not bars:
            bars = self._synthetic(symbol_info, width, start, end)
            source = "synthetic"

        logger.info(
            "getBars %s %s [%d, %d]: %d bars from %s",
            symbol_info.symbol,
            resolution,
            start,
            end,
            len(bars),
            source,
        )
        if not bars:
            return HistoryResult(bars=[], no_data=True)
        return HistoryResult(bars=bars, no_data=False, source=source)

    async def _from_store(
        self,
        symbol_info: SymbolInfo,
        timeframe: str,
        start: int,
        end: int,
    ) -> list[Bar]:
        instrument_id = await self._directory.get_id(symbol_info.symbol)
        if instrument_id is None:
            return []
        try:
            rows = await self._client.select(
                "market_candles",
                {
                    "instrument_id": eq(instrument_id),
                    "timeframe": eq(timeframe),
                    "and": f"(ts_open.gte.{_iso(start)},ts_open.lte.{_iso(end)})",
                },
                order="ts_open.asc",
                limit=self._store_limit,
            )
            return [bar_from_row(row) for row in rows]
        except UpstreamUnavailable as e:
            logger.warning("Bar store read failed for %s: %s", symbol_info.symbol, e)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Bad bar store row for %s: %s", symbol_info.symbol, e)
        return []

    async def _from_compute(
        self,
        symbol_info: SymbolInfo,
        timeframe: str,
        width: int,
        start: int,
        end: int,
    ) -> list[Bar]:
        if not self._client.is_configured:
            return []
        try:
            data = await self._client.invoke(
                CANDLES_FUNCTION,
                {
                    "symbol": symbol_info.symbol,
                    "interval": timeframe,
                    "start_date": _date(start),
                    "end_date": _date(end),
                },
            )
            bars = [bar_from_row(row) for row in data.get("candles") or []]
        except UpstreamUnavailable as e:
            logger.warning("candles-engine failed for %s: %s", symbol_info.symbol, e)
            return []
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Bad candles-engine payload for %s: %s", symbol_info.symbol, e)
            return []

        # The function works in whole days; trim to the requested window
        first = bucket_start(start, width)
        bars = [bar for bar in bars if first <= bar.time <= end]
        bars.sort(key=lambda bar: bar.time)
        return bars

    def _synthetic(self, symbol_info: SymbolInfo, width: int, start: int, end: int) -> list[Bar]:
        last = self._quote_cache.get(symbol_info.symbol)
        base_price = last.mid if last is not None else symbol_info.base_price
        return generate_synthetic_bars(
            base_price,
            width,
            start,
            end,
            max_bars=self._max_bars,
            rng=self._rng,
        )
