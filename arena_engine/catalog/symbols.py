"""
Symbol table, search and resolution.

The catalogue is static: every tradable symbol has metadata and a seed price,
so the synthetic quote generator can always produce a price for it.
"""

from arena_engine.catalog.models import SymbolInfo, SymbolSearchResult, SymbolType
from arena_engine.errors import ValidationError

SUPPORTED_RESOLUTIONS: tuple[str, ...] = ("1", "5", "15", "30", "60", "240", "D", "W")

_STOCK_SESSION = "0930-1600"
_STOCK_TIMEZONE = "America/New_York"
_WEEKDAY_SESSION = "0000-2400:23456"


def _fx(symbol: str, description: str, pricescale: int, base_price: float) -> SymbolInfo:
    return SymbolInfo(
        symbol=symbol,
        description=description,
        type=SymbolType.FOREX,
        exchange="FOREX",
        pricescale=pricescale,
        session=_WEEKDAY_SESSION,
        supported_resolutions=SUPPORTED_RESOLUTIONS,
        base_price=base_price,
        contract_size=100000.0,
        has_no_volume=True,
    )


def _crypto(symbol: str, description: str, base_price: float) -> SymbolInfo:
    return SymbolInfo(
        symbol=symbol,
        description=description,
        type=SymbolType.CRYPTO,
        exchange="CRYPTO",
        pricescale=100,
        supported_resolutions=SUPPORTED_RESOLUTIONS,
        base_price=base_price,
    )


def _commodity(symbol: str, description: str, pricescale: int, base_price: float) -> SymbolInfo:
    return SymbolInfo(
        symbol=symbol,
        description=description,
        type=SymbolType.COMMODITY,
        exchange="COMMODITY",
        pricescale=pricescale,
        session=_WEEKDAY_SESSION,
        supported_resolutions=SUPPORTED_RESOLUTIONS,
        base_price=base_price,
        has_no_volume=True,
    )


def _stock(symbol: str, description: str, exchange: str, base_price: float) -> SymbolInfo:
    return SymbolInfo(
        symbol=symbol,
        description=description,
        type=SymbolType.STOCK,
        exchange=exchange,
        pricescale=100,
        session=_STOCK_SESSION,
        timezone=_STOCK_TIMEZONE,
        supported_resolutions=SUPPORTED_RESOLUTIONS,
        base_price=base_price,
    )


_CATALOGUE: dict[str, SymbolInfo] = {
    info.symbol: info
    for info in [
        # Forex
        _fx("EURUSD", "EUR/USD", 100000, 1.08),
        _fx("GBPUSD", "GBP/USD", 100000, 1.27),
        _fx("USDJPY", "USD/JPY", 1000, 149.5),
        _fx("USDCHF", "USD/CHF", 100000, 0.88),
        _fx("AUDUSD", "AUD/USD", 100000, 0.65),
        _fx("USDCAD", "USD/CAD", 100000, 1.36),
        # Crypto
        _crypto("BTCUSD", "Bitcoin / USD", 94000.0),
        _crypto("ETHUSD", "Ethereum / USD", 3200.0),
        _crypto("SOLUSD", "Solana / USD", 143.0),
        # Commodities
        _commodity("XAUUSD", "XAU/USD", 100, 2020.0),
        _commodity("XAGUSD", "XAG/USD", 1000, 23.5),
        # US equities
        _stock("AAPL", "Apple Inc.", "NASDAQ", 250.0),
        _stock("MSFT", "Microsoft Corp.", "NASDAQ", 420.0),
        _stock("GOOGL", "Alphabet Inc.", "NASDAQ", 175.0),
        _stock("AMZN", "Amazon.com Inc.", "NASDAQ", 200.0),
        _stock("NVDA", "NVIDIA Corp.", "NASDAQ", 850.0),
        _stock("META", "Meta Platforms Inc.", "NASDAQ", 550.0),
        _stock("TSLA", "Tesla Inc.", "NASDAQ", 250.0),
        _stock("NFLX", "Netflix Inc.", "NASDAQ", 700.0),
        _stock("AMD", "AMD Inc.", "NASDAQ", 150.0),
        _stock("INTC", "Intel Corp.", "NASDAQ", 45.0),
        _stock("JPM", "JPMorgan Chase & Co.", "NYSE", 200.0),
        _stock("V", "Visa Inc.", "NYSE", 280.0),
        _stock("WMT", "Walmart Inc.", "NYSE", 165.0),
        _stock("DIS", "Walt Disney Co.", "NYSE", 110.0),
        _stock("BA", "Boeing Co.", "NYSE", 180.0),
    ]
}


def normalize_symbol(name: str) -> str:
    """Strip an `EXCHANGE:` prefix and upper-case."""
    if ":" in name:
        name = name.split(":", 1)[1]
    return name.strip().upper()


def get_symbol(name: str) -> SymbolInfo | None:
    """Look up a symbol, returning None when unknown."""
    return _CATALOGUE.get(normalize_symbol(name))


def resolve_symbol(name: str) -> SymbolInfo:
    """
    Resolve a symbol name to its metadata.

    Args:
        name: Ticker, optionally prefixed with an exchange (e.g. "CRYPTO:BTCUSD")

    Returns:
        SymbolInfo for the symbol

    Raises:
        ValidationError: If the symbol is not in the catalogue
    """
    info = get_symbol(name)
    if info is None:
        raise ValidationError(f"Unknown symbol: {name}")
    return info


def list_symbols() -> list[SymbolInfo]:
    return list(_CATALOGUE.values())


def search_symbols(
    query: str,
    exchange: str = "",
    symbol_type: str = "",
) -> list[SymbolSearchResult]:
    """
    Case-insensitive substring search over ticker and description.

    Empty exchange or type means no filter.
    """
    needle = query.strip().lower()
    results: list[SymbolSearchResult] = []
    for info in _CATALOGUE.values():
        if needle and needle not in info.symbol.lower() and needle not in info.description.lower():
            continue
        if exchange and info.exchange.upper() != exchange.upper():
            continue
        if symbol_type and info.type.value != symbol_type.lower():
            continue
        results.append(
            SymbolSearchResult(
                symbol=info.symbol,
                full_name=f"{info.exchange}:{info.symbol}",
                description=info.description,
                exchange=info.exchange,
                type=info.type,
            )
        )
    return results
