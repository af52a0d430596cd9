"""
Chart datafeed.

Implements ChartDatafeed on top of:
- the catalogue (search / resolve)
- HistoricalBarService (getBars)
- QuoteMultiplexer + SubscriptionRegistry (realtime bars and quotes)
- PriceChannelHub (push updates for instruments the backend knows)

Each realtime subscription owns one feed handle: a poll task, plus a price
channel listener when the symbol has a backend instrument id. Cancelling the
handle stops both.
"""

import asyncio
import time
from typing import Any

from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.catalog.models import SymbolInfo, SymbolSearchResult, SymbolType
from arena_engine.catalog.symbols import (
    SUPPORTED_RESOLUTIONS,
    get_symbol,
    normalize_symbol,
    resolve_symbol,
    search_symbols,
)
from arena_engine.interfaces.datafeed import ChartDatafeed
from arena_engine.logging import get_logger
from arena_engine.market_data.channel import ChannelListener, PriceChannelHub
from arena_engine.market_data.history import HistoricalBarService
from arena_engine.market_data.models import (
    DatafeedConfiguration,
    ExchangeDescriptor,
    HistoryResult,
    QuoteSnapshot,
    QuoteTick,
    SymbolTypeDescriptor,
    resolution_seconds,
)
from arena_engine.market_data.multiplexer import QuoteMultiplexer
from arena_engine.market_data.registry import (
    BarCallback,
    QuoteCallback,
    QuoteSubscriptionRegistry,
    SubscriptionRegistry,
)
from arena_engine.market_data.sources import quote_from_price_row

logger = get_logger(__name__)

# Last-resort quote for a catalogued symbol nothing could price
FALLBACK_BID = 99.95
FALLBACK_ASK = 100.05

# Non-fast quote symbols refresh once every this many poll cycles
SLOW_QUOTE_EVERY = 5

EXCHANGES = [
    ExchangeDescriptor(value="", name="All Exchanges", desc=""),
    ExchangeDescriptor(value="FOREX", name="Forex", desc="Foreign Exchange"),
    ExchangeDescriptor(value="CRYPTO", name="Crypto", desc="Cryptocurrency"),
    ExchangeDescriptor(value="COMMODITY", name="Commodities", desc="Commodities"),
    ExchangeDescriptor(value="NASDAQ", name="NASDAQ", desc="NASDAQ"),
    ExchangeDescriptor(value="NYSE", name="NYSE", desc="New York Stock Exchange"),
]

SYMBOL_TYPES = [SymbolTypeDescriptor(name="All types", value="")] + [
    SymbolTypeDescriptor(name=symbol_type.value.capitalize(), value=symbol_type.value)
    for symbol_type in SymbolType
]


class FeedHandle:
    """Cleanup handle owning a poll task and an optional channel listener."""

    def __init__(self, task: "asyncio.Task[None]", listener: ChannelListener | None = None) -> None:
        self.task = task
        self.listener = listener

    def cancel(self) -> None:
        if self.listener is not None:
            self.listener.cancel()
        self.task.cancel()


class ArenaDatafeed(ChartDatafeed):
    """Datafeed serving the trading chart."""

    def __init__(
        self,
        multiplexer: QuoteMultiplexer,
        history: HistoricalBarService,
        hub: PriceChannelHub,
        directory: InstrumentDirectory,
        bar_registry: SubscriptionRegistry | None = None,
        quote_registry: QuoteSubscriptionRegistry | None = None,
    ) -> None:
        self._multiplexer = multiplexer
        self._history = history
        self._hub = hub
        self._directory = directory
        self._bars = bar_registry or SubscriptionRegistry()
        self._quotes = quote_registry or QuoteSubscriptionRegistry()

    @property
    def bar_registry(self) -> SubscriptionRegistry:
        return self._bars

    @property
    def quote_registry(self) -> QuoteSubscriptionRegistry:
        return self._quotes

    @property
    def multiplexer(self) -> QuoteMultiplexer:
        return self._multiplexer

    # =========================================================================
    # Symbols
    # =========================================================================

    async def on_ready(self) -> DatafeedConfiguration:
        return DatafeedConfiguration(
            supported_resolutions=list(SUPPORTED_RESOLUTIONS),
            exchanges=EXCHANGES,
            symbols_types=SYMBOL_TYPES,
        )

    async def search_symbols(
        self,
        query: str,
        exchange: str = "",
        symbol_type: str = "",
    ) -> list[SymbolSearchResult]:
        return search_symbols(query, exchange, symbol_type)

    async def resolve_symbol(self, name: str) -> SymbolInfo:
        return resolve_symbol(name)

    # =========================================================================
    # Bars
    # =========================================================================

    async def get_bars(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        start: int,
        end: int,
    ) -> HistoryResult:
        return await self._history.get_bars(symbol_info, resolution, start, end)

    async def subscribe_bars(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        on_realtime_bar: BarCallback,
        subscriber_id: str,
    ) -> str:
        """
        Start realtime bars for one chart.

        Everything that awaits happens before the subscription is registered;
        registering, wiring the feed and attaching its handle then run without
        yielding, so concurrent calls for one id replace each other whole.

        Raises:
            ValidationError: Unsupported resolution
        """
        resolution_seconds(resolution)
        instrument_id = await self._directory.get_id(symbol_info.symbol)

        subscription_id = self._bars.subscribe(
            symbol_info,
            resolution,
            on_realtime_bar,
            subscription_id=subscriber_id,
        )

        listener = None
        if instrument_id is not None:
            listener = self._hub.listen(
                instrument_id,
                self._channel_handler(subscription_id, symbol_info),
            )

        task = asyncio.create_task(self._poll_bars(subscription_id, symbol_info.symbol))
        handle = FeedHandle(task, listener)
        try:
            self._bars.attach(subscription_id, handle)
        except ValueError:
            handle.cancel()
            raise
        return subscription_id

    async def unsubscribe_bars(self, subscriber_id: str) -> None:
        self._bars.unsubscribe(subscriber_id)

    async def _poll_bars(self, subscription_id: str, symbol: str) -> None:
        """Feed multiplexer quotes into one subscription until cancelled."""
        while subscription_id in self._bars:
            try:
                tick = await self._multiplexer.get_quote(symbol)
                if tick is not None:
                    await self._bars.deliver(subscription_id, tick)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Bar poll for %s failed: %s", subscription_id, e)

            await asyncio.sleep(self._multiplexer.poll_interval(symbol))

    def _channel_handler(self, subscription_id: str, symbol_info: SymbolInfo) -> Any:
        async def handle(row: dict[str, Any]) -> None:
            # Receipt time, so pushes and polls share one monotonic clock
            tick = quote_from_price_row(symbol_info, row, source="channel", timestamp=time.time())
            if tick is None:
                return
            self._multiplexer.quote_cache.update(tick)
            await self._bars.deliver(subscription_id, tick)

        return handle

    # =========================================================================
    # Quotes
    # =========================================================================

    async def get_quotes(self, symbols: list[str]) -> list[QuoteSnapshot]:
        """
        One snapshot per symbol.

        A catalogued symbol always gets an `ok` entry; an unknown one gets an
        `error` entry.
        """
        return [await self._quote_snapshot(symbol) for symbol in symbols]

    async def _quote_snapshot(self, symbol: str) -> QuoteSnapshot:
        info = get_symbol(symbol)
        if info is None:
            return QuoteSnapshot.error(symbol, f"Unknown symbol: {symbol}")
        tick = await self._multiplexer.get_quote(info.symbol)
        if tick is None:
            tick = QuoteTick.from_bid_ask(info.symbol, FALLBACK_BID, FALLBACK_ASK, source="fallback")
        return QuoteSnapshot.from_tick(tick)

    async def subscribe_quotes(
        self,
        symbols: list[str],
        fast_symbols: list[str],
        on_update: QuoteCallback,
        listener_id: str,
    ) -> str:
        listener_id = self._quotes.subscribe(
            [normalize_symbol(s) for s in symbols],
            [normalize_symbol(s) for s in fast_symbols],
            on_update,
            listener_id=listener_id,
        )
        task = asyncio.create_task(self._poll_quotes(listener_id))
        self._quotes.attach(listener_id, FeedHandle(task))
        return listener_id

    async def unsubscribe_quotes(self, listener_id: str) -> None:
        self._quotes.unsubscribe(listener_id)

    async def _poll_quotes(self, listener_id: str) -> None:
        cycle = 0
        while listener_id in self._quotes:
            subscription = self._quotes.get(listener_id)
            if subscription is None:
                break
            if cycle % SLOW_QUOTE_EVERY == 0:
                symbols = list(subscription.all_symbols)
            else:
                symbols = list(subscription.fast_symbols)
            cycle += 1

            interval = self._multiplexer.poll_interval(symbols[0]) if symbols else 1.0
            try:
                if symbols:
                    await self._quotes.deliver(listener_id, await self.get_quotes(symbols))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Quote poll for %s failed: %s", listener_id, e)

            await asyncio.sleep(interval)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self) -> None:
        """Cancel every realtime subscription."""
        self._bars.close()
        self._quotes.close()
        logger.info("Datafeed subscriptions closed")
