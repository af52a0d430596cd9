"""
Market data: quotes, historical bars and realtime bar aggregation.
"""

from arena_engine.market_data.models import (
    Bar,
    BarUpdate,
    HistoryResult,
    LastQuoteCache,
    QuoteSnapshot,
    QuoteTick,
)

__all__ = [
    "Bar",
    "BarUpdate",
    "HistoryResult",
    "LastQuoteCache",
    "QuoteSnapshot",
    "QuoteTick",
]
