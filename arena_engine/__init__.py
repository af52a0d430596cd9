"""
Arena Engine

Market-data and broker bridge for a charting trading terminal:
- Quote multiplexing with fallback to synthetic prices
- Realtime OHLC bar aggregation per subscriber
- Canonical order/position/account views over a PostgREST ledger
- Idempotent trading command gateway
"""

__version__ = "0.4.0"
__author__ = "Arena Development Team"

from arena_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
