"""
ChartDatafeed interface.

Defines the contract the charting front-end drives for symbols, history and
realtime updates.
"""

from abc import ABC, abstractmethod

from arena_engine.catalog.models import SymbolInfo, SymbolSearchResult
from arena_engine.market_data.models import DatafeedConfiguration, HistoryResult, QuoteSnapshot
from arena_engine.market_data.registry import BarCallback, QuoteCallback


class ChartDatafeed(ABC):
    """
    Abstract base class for chart datafeeds.

    Results are returned from coroutines; failures are raised as exceptions.
    """

    # =========================================================================
    # Symbols
    # =========================================================================

    @abstractmethod
    async def on_ready(self) -> DatafeedConfiguration:
        """Get the datafeed configuration."""
        pass

    @abstractmethod
    async def search_symbols(
        self,
        query: str,
        exchange: str = "",
        symbol_type: str = "",
    ) -> list[SymbolSearchResult]:
        """
        Search the catalogue.

        Args:
            query: Case-insensitive substring of ticker or description
            exchange: Exchange filter (empty = any)
            symbol_type: Type filter (empty = any)
        """
        pass

    @abstractmethod
    async def resolve_symbol(self, name: str) -> SymbolInfo:
        """
        Resolve a symbol name.

        Raises:
            ValidationError: Unknown symbol
        """
        pass

    # =========================================================================
    # Bars
    # =========================================================================

    @abstractmethod
    async def get_bars(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        start: int,
        end: int,
    ) -> HistoryResult:
        """
        Get historical bars for [start, end] in epoch seconds.

        Returns:
            HistoryResult, oldest bar first
        """
        pass

    @abstractmethod
    async def subscribe_bars(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        on_realtime_bar: BarCallback,
        subscriber_id: str,
    ) -> str:
        """Start realtime bar updates; returns the subscription id."""
        pass

    @abstractmethod
    async def unsubscribe_bars(self, subscriber_id: str) -> None:
        """Stop realtime bar updates. Unknown ids are ignored."""
        pass

    # =========================================================================
    # Quotes
    # =========================================================================

    @abstractmethod
    async def get_quotes(self, symbols: list[str]) -> list[QuoteSnapshot]:
        """Get one quote snapshot per requested symbol."""
        pass

    @abstractmethod
    async def subscribe_quotes(
        self,
        symbols: list[str],
        fast_symbols: list[str],
        on_update: QuoteCallback,
        listener_id: str,
    ) -> str:
        """Start realtime quote updates; returns the listener id."""
        pass

    @abstractmethod
    async def unsubscribe_quotes(self, listener_id: str) -> None:
        """Stop realtime quote updates. Unknown ids are ignored."""
        pass
