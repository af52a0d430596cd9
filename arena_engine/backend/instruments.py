"""
Backend instrument id lookup.

The ledger keys candles, prices, orders and positions by instrument id; the
front-end speaks tickers. Ids are fetched lazily and cached for the process.
"""

from arena_engine.backend.client import BackendClient, eq
from arena_engine.errors import UpstreamUnavailable
from arena_engine.logging import get_logger

logger = get_logger(__name__)


class InstrumentDirectory:
    """Ticker <-> backend instrument id cache."""

    def __init__(self, client: BackendClient, preset: dict[str, str] | None = None) -> None:
        self._client = client
        self._ids: dict[str, str] = dict(preset or {})

    def cached(self, symbol: str) -> str | None:
        return self._ids.get(symbol)

    def symbol_for(self, instrument_id: str) -> str | None:
        for symbol, known_id in self._ids.items():
            if known_id == instrument_id:
                return symbol
        return None

    async def get_id(self, symbol: str) -> str | None:
        """
        Resolve a ticker to its backend instrument id.

        Returns None when the backend has no such instrument or is unreachable;
        callers decide whether that is fatal.
        """
        if symbol in self._ids:
            return self._ids[symbol]
        if not self._client.is_configured:
            return None
        try:
            rows = await self._client.select(
                "instruments",
                {"symbol": eq(symbol)},
                columns="id",
                limit=1,
            )
        except UpstreamUnavailable as e:
            logger.warning("Instrument lookup failed for %s: %s", symbol, e)
            return None
        if not rows:
            logger.info("No backend instrument for %s", symbol)
            return None
        instrument_id = str(rows[0]["id"])
        self._ids[symbol] = instrument_id
        return instrument_id
