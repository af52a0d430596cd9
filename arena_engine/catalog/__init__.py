"""
Instrument catalogue.

Symbol metadata, search and resolution for the datafeed and order gateway.
"""

from arena_engine.catalog.models import SymbolInfo, SymbolSearchResult, SymbolType
from arena_engine.catalog.symbols import (
    SUPPORTED_RESOLUTIONS,
    get_symbol,
    list_symbols,
    resolve_symbol,
    search_symbols,
)

__all__ = [
    "SUPPORTED_RESOLUTIONS",
    "SymbolInfo",
    "SymbolSearchResult",
    "SymbolType",
    "get_symbol",
    "list_symbols",
    "resolve_symbol",
    "search_symbols",
]
