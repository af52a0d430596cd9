"""
Synthetic price generation.

Bounded random walk from a seeded base price. Used as the last quote source
and as the last historical bar source, so charts and order pricing always
have a plausible number even when every live source is down.
"""

import math
import random
import time

from arena_engine.catalog.models import SymbolInfo, SymbolType
from arena_engine.market_data.models import Bar, QuoteTick, bucket_start

# Half-spread as a fraction of price, per instrument type
SPREAD_FRACTION: dict[SymbolType, float] = {
    SymbolType.CRYPTO: 0.0005,
    SymbolType.STOCK: 0.0002,
    SymbolType.FOREX: 0.0001,
    SymbolType.COMMODITY: 0.0001,
}

MAX_STEP_FRACTION = 0.001  # +/-0.1% per tick
MAX_DRIFT_FRACTION = 0.5  # walk stays within +/-50% of base


class RandomWalk:
    """
    Per-symbol bounded random walk.

    Each step moves the price by at most MAX_STEP_FRACTION, clamped to
    [base * (1 - MAX_DRIFT_FRACTION), base * (1 + MAX_DRIFT_FRACTION)].
    """

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)
        self._prices: dict[str, float] = {}
        self._bases: dict[str, float] = {}

    @property
    def rng(self) -> random.Random:
        return self._rng

    def reseed(self, symbol: str, price: float) -> None:
        """Restart the walk for symbol at price."""
        self._bases[symbol] = price
        self._prices[symbol] = price

    def current(self, symbol: str) -> float | None:
        return self._prices.get(symbol)

    def step(self, symbol: str, base_price: float) -> float:
        if symbol not in self._prices:
            self.reseed(symbol, base_price)
        base = self._bases[symbol]
        price = self._prices[symbol]
        price += price * self._rng.uniform(-MAX_STEP_FRACTION, MAX_STEP_FRACTION)
        price = min(max(price, base * (1 - MAX_DRIFT_FRACTION)), base * (1 + MAX_DRIFT_FRACTION))
        self._prices[symbol] = price
        return price


def synthetic_quote(
    info: SymbolInfo,
    price: float,
    timestamp: float | None = None,
    rng: random.Random | None = None,
) -> QuoteTick:
    """Build a quote around price with the fixed spread for the symbol type."""
    rng = rng or random.Random()
    half_spread = price * SPREAD_FRACTION.get(info.type, 0.0002)
    return QuoteTick.from_bid_ask(
        symbol=info.symbol,
        bid=price - half_spread,
        ask=price + half_spread,
        timestamp=time.time() if timestamp is None else timestamp,
        bid_size=float(rng.randint(10, 110)),
        ask_size=float(rng.randint(10, 110)),
        source="synthetic",
    )


def generate_synthetic_bars(
    base_price: float,
    width_s: int,
    start: int,
    end: int,
    max_bars: int = 500,
    rng: random.Random | None = None,
) -> list[Bar]:
    """
    Generate random-walk bars covering [start, end].

    The first bar is the bucket containing start. When the range holds more
    than max_bars buckets, the step widens to a multiple of the bucket width so
    the whole range is still spanned.

    Returns:
        Bars in ascending time; non-empty whenever end >= start
    """
    if end < start or base_price <= 0 or max_bars < 1:
        return []

    rng = rng or random.Random()
    first = bucket_start(start, width_s)
    total = (end - first) // width_s + 1
    step = width_s
    if total > max_bars:
        step = math.ceil(total / max_bars) * width_s

    price = base_price
    floor_price = base_price * (1 - MAX_DRIFT_FRACTION)
    volatility = base_price * MAX_STEP_FRACTION
    bars: list[Bar] = []
    t = first
    while t <= end and len(bars) < max_bars:
        open_ = price
        close = max(floor_price, open_ + rng.uniform(-1.0, 1.0) * volatility)
        high = max(open_, close) + rng.random() * volatility * 0.5
        low = min(open_, close) - rng.random() * volatility * 0.5
        bars.append(
            Bar(
                time=t,
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=float(rng.randint(100, 1000)),
            )
        )
        price = close
        t += step
    return bars
