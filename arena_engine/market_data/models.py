"""
Market data models: quotes, bars and resolutions.
"""

import math
import time
from typing import Any

from pydantic import BaseModel, Field, model_validator

from arena_engine.errors import ValidationError

# Chart resolution -> bucket width in seconds
RESOLUTION_SECONDS: dict[str, int] = {
    "1": 60,
    "5": 300,
    "15": 900,
    "30": 1800,
    "60": 3600,
    "240": 14400,
    "D": 86400,
    "1D": 86400,
    "W": 604800,
    "1W": 604800,
}

# Chart resolution -> backend bar store timeframe
RESOLUTION_TIMEFRAME: dict[str, str] = {
    "1": "1min",
    "5": "5min",
    "15": "15min",
    "30": "30min",
    "60": "1h",
    "240": "4h",
    "D": "1day",
    "1D": "1day",
    "W": "1week",
    "1W": "1week",
}


def resolution_seconds(resolution: str) -> int:
    """
    Get bucket width for a chart resolution.

    Raises:
        ValidationError: If the resolution is not supported
    """
    try:
        return RESOLUTION_SECONDS[resolution.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported resolution: {resolution}") from None


def resolution_timeframe(resolution: str) -> str:
    """Get the backend timeframe label for a chart resolution."""
    try:
        return RESOLUTION_TIMEFRAME[resolution.upper()]
    except KeyError:
        raise ValidationError(f"Unsupported resolution: {resolution}") from None


def bucket_start(timestamp: float, width_s: int) -> int:
    """Start of the fixed-width bucket containing timestamp (epoch seconds)."""
    return int(math.floor(timestamp / width_s)) * width_s


class QuoteTick(BaseModel):
    """
    A single bid/ask observation for a symbol.

    `mid` is always derived from bid/ask; build via `from_bid_ask`.
    """

    symbol: str = Field(..., description="Canonical symbol (e.g., EURUSD)")
    bid: float = Field(..., description="Bid price")
    ask: float = Field(..., description="Ask price")
    mid: float = Field(..., description="Mid price ((bid+ask)/2)")
    bid_size: float | None = Field(default=None, description="Size at bid, if the source reports it")
    ask_size: float | None = Field(default=None, description="Size at ask, if the source reports it")
    timestamp: float = Field(..., description="Epoch seconds")
    source: str = Field(default="unknown", description="Name of the producing quote source")

    @model_validator(mode="after")
    def check_mid(self) -> "QuoteTick":
        expected = (self.bid + self.ask) / 2
        if not math.isclose(self.mid, expected, rel_tol=1e-12, abs_tol=1e-12):
            raise ValueError(f"mid {self.mid} does not match (bid+ask)/2 = {expected}")
        return self

    @classmethod
    def from_bid_ask(
        cls,
        symbol: str,
        bid: float,
        ask: float,
        timestamp: float | None = None,
        bid_size: float | None = None,
        ask_size: float | None = None,
        source: str = "unknown",
    ) -> "QuoteTick":
        """Create QuoteTick from bid/ask, computing mid price."""
        return cls(
            symbol=symbol,
            bid=bid,
            ask=ask,
            mid=(bid + ask) / 2,
            bid_size=bid_size,
            ask_size=ask_size,
            timestamp=time.time() if timestamp is None else timestamp,
            source=source,
        )

    @property
    def spread(self) -> float:
        return self.ask - self.bid


class Bar(BaseModel):
    """
    An OHLCV bar.

    `time` is the bucket start in epoch seconds.
    """

    time: int = Field(..., description="Bucket start (epoch seconds)")
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_chart_payload(self) -> dict[str, Any]:
        """Charting front-ends expect bar time in milliseconds."""
        return {
            "time": self.time * 1000,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


class BarUpdate(BaseModel):
    """Result of feeding one tick into the aggregator."""

    subscription_id: str
    symbol: str
    resolution: str
    bar: Bar
    is_new_bar: bool


class ExchangeDescriptor(BaseModel):
    value: str
    name: str
    desc: str


class SymbolTypeDescriptor(BaseModel):
    name: str
    value: str


class DatafeedConfiguration(BaseModel):
    """Capabilities reported to the chart on startup."""

    supported_resolutions: list[str]
    exchanges: list[ExchangeDescriptor]
    symbols_types: list[SymbolTypeDescriptor]
    supports_marks: bool = False
    supports_timescale_marks: bool = False
    supports_time: bool = True


class HistoryResult(BaseModel):
    """Response of a historical bar request."""

    bars: list[Bar] = Field(default_factory=list)
    no_data: bool = False
    source: str = Field(default="none", description="store, compute, synthetic or none")


class QuoteSnapshot(BaseModel):
    """Per-symbol quote entry returned by getQuotes."""

    s: str = Field(..., description="ok or error")
    n: str = Field(..., description="Symbol name")
    v: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_tick(cls, tick: QuoteTick) -> "QuoteSnapshot":
        return cls(
            s="ok",
            n=tick.symbol,
            v={
                "bid": tick.bid,
                "ask": tick.ask,
                "lp": tick.mid,
                "spread": tick.spread,
                "bid_size": tick.bid_size,
                "ask_size": tick.ask_size,
                "ch": 0,
                "chp": 0,
                "source": tick.source,
            },
        )

    @classmethod
    def error(cls, symbol: str, message: str) -> "QuoteSnapshot":
        return cls(s="error", n=symbol, v={"error": message})


class LastQuoteCache:
    """
    Process-wide last known quote per symbol.

    Writers replace whole records, so readers never see a partial update.
    """

    def __init__(self) -> None:
        self._quotes: dict[str, QuoteTick] = {}

    def update(self, tick: QuoteTick) -> None:
        self._quotes[tick.symbol] = tick

    def get(self, symbol: str) -> QuoteTick | None:
        return self._quotes.get(symbol)

    def symbols(self) -> list[str]:
        return list(self._quotes.keys())

    def snapshot(self) -> dict[str, QuoteTick]:
        return dict(self._quotes)

    def clear(self) -> None:
        self._quotes.clear()

    def __len__(self) -> int:
        return len(self._quotes)


_quote_cache: LastQuoteCache | None = None


def get_quote_cache() -> LastQuoteCache:
    """Get the process-wide last-quote cache."""
    global _quote_cache
    if _quote_cache is None:
        _quote_cache = LastQuoteCache()
    return _quote_cache


def reset_quote_cache() -> None:
    """Reset the last-quote cache (for testing)."""
    global _quote_cache
    _quote_cache = None
