"""
Quote source multiplexer.

Walks a priority-ordered chain of quote sources per symbol type and returns
the first price it gets. Failures fall through silently; the synthetic source
at the end of every chain means a catalogued symbol always gets a quote.
"""

from typing import Any

from arena_engine.backend.client import BackendClient
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog.models import SymbolType
from arena_engine.catalog.symbols import get_symbol
from arena_engine.config import Settings
from arena_engine.logging import get_logger
from arena_engine.market_data.models import LastQuoteCache, QuoteTick
from arena_engine.market_data.sources import (
    BackendSnapshotSource,
    LiveQuoteSource,
    QuoteSource,
    SyntheticSource,
)
from arena_engine.market_data.synthetic import RandomWalk

logger = get_logger(__name__)


class QuoteMultiplexer:
    """
    Best-effort quote per symbol.

    Every quote it returns is also written to the shared last-quote cache,
    which order pricing and the history fallback read.
    """

    def __init__(
        self,
        chains: dict[SymbolType, list[QuoteSource]],
        quote_cache: LastQuoteCache,
        default_poll_interval_s: float = 1.0,
    ) -> None:
        """
        Args:
            chains: Symbol type -> sources in priority order
            quote_cache: Shared last-quote cache
            default_poll_interval_s: Cadence when a chain gives no better hint
        """
        self._chains = chains
        self._quote_cache = quote_cache
        self._default_poll_interval_s = default_poll_interval_s
        self._failures: dict[str, int] = {}
        self._served: dict[str, int] = {}

    @property
    def quote_cache(self) -> LastQuoteCache:
        return self._quote_cache

    def sources_for(self, symbol_type: SymbolType) -> list[QuoteSource]:
        return list(self._chains.get(symbol_type, []))

    async def get_quote(self, symbol: str) -> QuoteTick | None:
        """
        Get the best available quote.

        Returns:
            A quote from the highest-priority source that answered, else the
            last known quote; None only for a symbol nobody can price
        """
        info = get_symbol(symbol)
        if info is None:
            return self._quote_cache.get(symbol)

        for source in self._chains.get(info.type, []):
            if not source.supports(info):
                continue
            try:
                tick = await source.get_quote(info)
            except Exception as e:
                self._failures[source.name] = self._failures.get(source.name, 0) + 1
                logger.warning("Quote source %s failed for %s: %s", source.name, info.symbol, e)
                continue
            if tick is None:
                logger.debug("Quote source %s had no price for %s", source.name, info.symbol)
                continue
            self._served[source.name] = self._served.get(source.name, 0) + 1
            self._quote_cache.update(tick)
            return tick

        return self._quote_cache.get(info.symbol)

    def poll_interval(self, symbol: str) -> float:
        """Refresh interval of the first source able to price symbol."""
        info = get_symbol(symbol)
        if info is None:
            return self._default_poll_interval_s
        for source in self._chains.get(info.type, []):
            if source.supports(info):
                return max(source.refresh_interval_s, 0.1)
        return self._default_poll_interval_s

    @property
    def stats(self) -> dict[str, Any]:
        sources: dict[str, Any] = {}
        for chain in self._chains.values():
            for source in chain:
                sources[source.name] = source.stats
        return {
            "served": dict(self._served),
            "failures": dict(self._failures),
            "sources": sources,
            "cached_symbols": len(self._quote_cache),
        }

    async def close(self) -> None:
        seen: set[int] = set()
        for chain in self._chains.values():
            for source in chain:
                if id(source) not in seen:
                    seen.add(id(source))
                    await source.close()


def build_multiplexer(
    settings: Settings,
    client: BackendClient,
    directory: InstrumentDirectory,
    quote_cache: LastQuoteCache,
) -> QuoteMultiplexer:
    """
    Assemble the default source chains.

    crypto: live -> snapshot -> synthetic; everything else: snapshot -> synthetic.
    """
    interval = settings.quote_poll_interval_s
    snapshot = BackendSnapshotSource(
        client,
        directory,
        min_gap_s=settings.snapshot_min_gap_s,
        refresh_interval_s=interval,
    )
    synthetic = SyntheticSource(
        RandomWalk(settings.synthetic_seed),
        quote_cache=quote_cache,
        refresh_interval_s=interval,
    )

    crypto_chain: list[QuoteSource] = []
    if settings.live_quote_url:
        crypto_chain.append(
            LiveQuoteSource(
                settings.live_quote_url,
                api_key=(
                    settings.live_quote_api_key.get_secret_value()
                    if settings.live_quote_api_key
                    else None
                ),
                min_gap_s=settings.live_quote_min_gap_s,
                refresh_interval_s=interval,
                timeout=settings.backend_request_timeout,
            )
        )
    crypto_chain.extend([snapshot, synthetic])

    chains: dict[SymbolType, list[QuoteSource]] = {
        SymbolType.CRYPTO: crypto_chain,
        SymbolType.FOREX: [snapshot, synthetic],
        SymbolType.COMMODITY: [snapshot, synthetic],
        SymbolType.STOCK: [snapshot, synthetic],
    }
    return QuoteMultiplexer(chains, quote_cache, default_poll_interval_s=interval)
