"""
Quote sources.

Each source fetches a quote for a symbol and keeps its own cache, reusing the
cached value while its minimum re-fetch gap has not elapsed.

- LiveQuoteSource: CoinMarketCap-compatible `quotes/latest` HTTP endpoint (crypto)
- BackendSnapshotSource: `market_prices_latest` rows from the backend ledger
- SyntheticSource: bounded random walk, available for every catalogued symbol
"""

import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from arena_engine.backend.client import BackendClient, eq
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog.models import SymbolInfo, SymbolType
from arena_engine.errors import UpstreamUnavailable
from arena_engine.logging import get_logger
from arena_engine.market_data.models import LastQuoteCache, QuoteTick
from arena_engine.market_data.synthetic import SPREAD_FRACTION, RandomWalk, synthetic_quote

logger = get_logger(__name__)


class QuoteSource(ABC):
    """
    Base class for a single upstream price source.

    Subclasses implement `_fetch`; `get_quote` applies the re-fetch gap and
    reuses the cached value when the upstream answers 429.
    """

    name: str = "source"

    def __init__(self, min_gap_s: float = 0.0, refresh_interval_s: float = 1.0) -> None:
        """
        Args:
            min_gap_s: Minimum seconds between upstream fetches per symbol
            refresh_interval_s: Poll cadence suggested to subscribers of this source
        """
        self.min_gap_s = min_gap_s
        self.refresh_interval_s = refresh_interval_s
        self._cache: dict[str, QuoteTick] = {}
        self._last_fetch: dict[str, float] = {}
        self._stats = {"fetches": 0, "cache_reuses": 0, "empty": 0, "rate_limited": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def cached(self, symbol: str) -> QuoteTick | None:
        return self._cache.get(symbol)

    @abstractmethod
    def supports(self, info: SymbolInfo) -> bool:
        """Whether this source can price the symbol at all."""
        ...

    @abstractmethod
    async def _fetch(self, info: SymbolInfo) -> QuoteTick | None:
        """Fetch a fresh quote from upstream. Raise or return None on failure."""
        ...

    async def get_quote(self, info: SymbolInfo) -> QuoteTick | None:
        symbol = info.symbol
        now = time.monotonic()
        cached = self._cache.get(symbol)
        last = self._last_fetch.get(symbol)
        if cached is not None and last is not None and now - last < self.min_gap_s:
            self._stats["cache_reuses"] += 1
            return cached

        self._last_fetch[symbol] = now
        try:
            tick = await self._fetch(info)
        except UpstreamUnavailable as e:
            if e.status_code == 429 and cached is not None:
                self._stats["rate_limited"] += 1
                logger.warning("%s rate limited for %s, reusing cached quote", self.name, symbol)
                return cached
            raise

        if tick is None:
            self._stats["empty"] += 1
            return None

        self._stats["fetches"] += 1
        self._cache[symbol] = tick
        return tick

    async def close(self) -> None:
        """Release any network resources."""
        return None


class LiveQuoteSource(QuoteSource):
    """
    Live crypto quotes from a CoinMarketCap-compatible endpoint.

    One request prices every supported symbol; the gap applies to the whole
    endpoint because the provider's free tier limits total calls.
    """

    name = "live"

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        symbols: list[str] | None = None,
        min_gap_s: float = 60.0,
        refresh_interval_s: float = 1.0,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(min_gap_s=min_gap_s, refresh_interval_s=refresh_interval_s)
        self._url = url
        self._api_key = api_key
        self._symbols = symbols or ["BTCUSD", "ETHUSD", "SOLUSD"]
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def supports(self, info: SymbolInfo) -> bool:
        return info.type == SymbolType.CRYPTO and info.symbol in self._symbols

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, info: SymbolInfo) -> QuoteTick | None:
        bases = {symbol.removesuffix("USD"): symbol for symbol in self._symbols}
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-CMC_PRO_API_KEY"] = self._api_key

        client = await self._get_client()
        try:
            response = await client.get(
                self._url,
                params={"symbol": ",".join(bases)},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Live quote request failed: {e}", source=self.name) from e

        if response.status_code != 200:
            raise UpstreamUnavailable(
                f"Live quote endpoint returned {response.status_code}",
                status_code=response.status_code,
                source=self.name,
            )

        payload: dict[str, Any] = response.json().get("data") or {}
        now = time.time()
        fetched_at = time.monotonic()
        updated: set[str] = set()
        for base, symbol in bases.items():
            price = _extract_usd_price(payload.get(base))
            if price is None:
                continue
            half_spread = price * SPREAD_FRACTION[SymbolType.CRYPTO]
            tick = QuoteTick.from_bid_ask(
                symbol=symbol,
                bid=price - half_spread,
                ask=price + half_spread,
                timestamp=now,
                source=self.name,
            )
            self._cache[symbol] = tick
            self._last_fetch[symbol] = fetched_at
            updated.add(symbol)

        logger.debug("Live quotes updated for %d symbols", len(updated))
        return self._cache[info.symbol] if info.symbol in updated else None


def _extract_usd_price(entry: Any) -> float | None:
    # CMC returns either an object or a list of objects per base symbol
    if isinstance(entry, list):
        entry = entry[0] if entry else None
    if not isinstance(entry, dict):
        return None
    try:
        price = float(entry["quote"]["USD"]["price"])
    except (KeyError, TypeError, ValueError):
        return None
    return price if price > 0 else None


class BackendSnapshotSource(QuoteSource):
    """Latest price rows from the backend `market_prices_latest` table."""

    name = "snapshot"

    def __init__(
        self,
        client: BackendClient,
        directory: InstrumentDirectory,
        min_gap_s: float = 1.0,
        refresh_interval_s: float = 1.0,
    ) -> None:
        super().__init__(min_gap_s=min_gap_s, refresh_interval_s=refresh_interval_s)
        self._client = client
        self._directory = directory

    def supports(self, info: SymbolInfo) -> bool:
        return self._client.is_configured

    async def _fetch(self, info: SymbolInfo) -> QuoteTick | None:
        instrument_id = await self._directory.get_id(info.symbol)
        if instrument_id is None:
            return None
        rows = await self._client.select(
            "market_prices_latest",
            {"instrument_id": eq(instrument_id)},
            limit=1,
        )
        if not rows:
            return None
        return quote_from_price_row(info, rows[0], source=self.name)


def quote_from_price_row(
    info: SymbolInfo,
    row: dict[str, Any],
    source: str,
    timestamp: float | None = None,
) -> QuoteTick | None:
    """
    Build a quote from a `market_prices_latest` row.

    Rows carry bid/ask when the price engine has them, otherwise a single
    `price`, in which case the symbol's fixed spread is applied.
    """
    bid = _as_float(row.get("bid"))
    ask = _as_float(row.get("ask"))
    if bid is None or ask is None or bid <= 0 or ask <= 0:
        price = _as_float(row.get("price") or row.get("mid"))
        if price is None or price <= 0:
            return None
        half_spread = price * SPREAD_FRACTION.get(info.type, 0.0002)
        bid, ask = price - half_spread, price + half_spread
    return QuoteTick.from_bid_ask(
        symbol=info.symbol,
        bid=bid,
        ask=ask,
        timestamp=time.time() if timestamp is None else timestamp,
        bid_size=_as_float(row.get("bid_size")),
        ask_size=_as_float(row.get("ask_size")),
        source=source,
    )


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class SyntheticSource(QuoteSource):
    """
    Random-walk quotes for any catalogued symbol.

    A walk that has not started yet begins at the last real quote in the
    shared cache when there is one, else at the catalogue base price.
    """

    name = "synthetic"

    def __init__(
        self,
        walk: RandomWalk | None = None,
        quote_cache: LastQuoteCache | None = None,
        refresh_interval_s: float = 1.0,
    ) -> None:
        super().__init__(min_gap_s=0.0, refresh_interval_s=refresh_interval_s)
        self._walk = walk or RandomWalk()
        self._quote_cache = quote_cache

    @property
    def walk(self) -> RandomWalk:
        return self._walk

    def supports(self, info: SymbolInfo) -> bool:
        return True

    async def _fetch(self, info: SymbolInfo) -> QuoteTick | None:
        if self._walk.current(info.symbol) is None and self._quote_cache is not None:
            last = self._quote_cache.get(info.symbol)
            if last is not None and last.source != self.name:
                self._walk.reseed(info.symbol, last.mid)
        price = self._walk.step(info.symbol, info.base_price)
        return synthetic_quote(info, price, rng=self._walk.rng)
