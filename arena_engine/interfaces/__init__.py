"""
Interfaces (abstract base classes) for the arena engine.

These define the contracts implemented by:
- ChartDatafeed: Symbols, history and realtime updates for the chart
- TradingBroker: Account state and order commands for the trading panel
"""

from arena_engine.interfaces.broker import TradingBroker
from arena_engine.interfaces.datafeed import ChartDatafeed

__all__ = [
    "ChartDatafeed",
    "TradingBroker",
]
