"""
Backend row -> canonical model mapping.

All enum mappings are total: an unrecognised backend string lands on a safe
default instead of raising, so one odd row never blanks the trading panel.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from arena_engine.broker.models import (
    CanonicalOrder,
    CanonicalPosition,
    OrderStatus,
    OrderType,
    Side,
)

SymbolLookup = Callable[[str], str | None]

ORDER_STATUS_MAP: dict[str, OrderStatus] = {
    "pending": OrderStatus.PENDING,
    "placing": OrderStatus.PENDING,
    "new": OrderStatus.WORKING,
    "open": OrderStatus.WORKING,
    "working": OrderStatus.WORKING,
    "submitted": OrderStatus.WORKING,
    "accepted": OrderStatus.WORKING,
    "partial": OrderStatus.PARTIAL,
    "partially_filled": OrderStatus.PARTIAL,
    "partiallyfilled": OrderStatus.PARTIAL,
    "filled": OrderStatus.FILLED,
    "executed": OrderStatus.FILLED,
    "closed": OrderStatus.FILLED,
    "cancelled": OrderStatus.CANCELED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.CANCELED,
    "rejected": OrderStatus.REJECTED,
    "failed": OrderStatus.REJECTED,
}

# Spellings a still-working order can carry; write guards match on these
ACTIVE_BACKEND_STATUSES: tuple[str, ...] = tuple(
    status for status, mapped in ORDER_STATUS_MAP.items() if mapped.is_active
)

ORDER_TYPE_MAP: dict[str, OrderType] = {
    "market": OrderType.MARKET,
    "limit": OrderType.LIMIT,
    "stop": OrderType.STOP,
    "stop_limit": OrderType.STOP_LIMIT,
    "stoplimit": OrderType.STOP_LIMIT,
    # Charting library numeric codes
    "1": OrderType.MARKET,
    "2": OrderType.LIMIT,
    "3": OrderType.STOP,
    "4": OrderType.STOP_LIMIT,
}

BUY_SIDES = {"buy", "long", "1", "b"}


def _key(value: Any) -> str:
    return str(value).strip().lower().replace("-", "_").replace(" ", "_")


def map_order_status(value: Any) -> OrderStatus:
    """Backend status string -> OrderStatus; unknown values map to WORKING."""
    if value is None:
        return OrderStatus.WORKING
    return ORDER_STATUS_MAP.get(_key(value), OrderStatus.WORKING)


def map_order_type(value: Any) -> OrderType:
    """Backend order type -> OrderType; unknown values map to MARKET."""
    if value is None:
        return OrderType.MARKET
    return ORDER_TYPE_MAP.get(_key(value), OrderType.MARKET)


def map_side(value: Any) -> Side:
    if value is None:
        return Side.SELL
    return Side.BUY if _key(value) in BUY_SIDES else Side.SELL


def order_status_to_backend(status: OrderStatus) -> str:
    """Canonical status -> the spelling the ledger stores."""
    if status == OrderStatus.CANCELED:
        return "cancelled"
    return status.value


def _float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def row_symbol(row: dict[str, Any], symbol_lookup: SymbolLookup | None = None) -> str:
    """Ticker for a row: embedded instrument, explicit symbol, id lookup, raw id."""
    instrument = row.get("instruments")
    if isinstance(instrument, list):
        instrument = instrument[0] if instrument else None
    if isinstance(instrument, dict) and instrument.get("symbol"):
        return str(instrument["symbol"])
    if row.get("symbol"):
        return str(row["symbol"])
    instrument_id = row.get("instrument_id")
    if instrument_id is not None and symbol_lookup is not None:
        symbol = symbol_lookup(str(instrument_id))
        if symbol:
            return symbol
    return str(instrument_id) if instrument_id is not None else "UNKNOWN"


def unrealized_pnl(side: Side, qty: float, avg_open_price: float, current_price: float) -> float:
    if side == Side.BUY:
        return qty * (current_price - avg_open_price)
    return qty * (avg_open_price - current_price)


def position_from_row(
    row: dict[str, Any],
    current_price: float | None = None,
    symbol_lookup: SymbolLookup | None = None,
    default_leverage: float = 1.0,
) -> CanonicalPosition:
    """
    Map a `positions` row.

    P&L is recomputed from current_price (live quote) or the row's stored
    current price; with neither, the row's stored unrealized P&L is kept.
    """
    side = map_side(row.get("side"))
    qty = abs(_float(row.get("quantity", row.get("qty"))))
    avg_open = _float(row.get("entry_price", row.get("avg_price", row.get("average_price"))))
    price = current_price if current_price is not None else _optional_float(row.get("current_price"))

    if price is not None:
        pnl = unrealized_pnl(side, qty, avg_open, price)
    else:
        price = avg_open
        pnl = _float(row.get("unrealized_pnl"))

    leverage = _optional_float(row.get("leverage")) or default_leverage
    return CanonicalPosition(
        id=str(row["id"]),
        symbol=row_symbol(row, symbol_lookup),
        side=side,
        qty=qty,
        avg_open_price=avg_open,
        current_price=price,
        unrealized_pnl=pnl,
        realized_pnl=_float(row.get("realized_pnl")),
        leverage=leverage if leverage > 0 else default_leverage,
        # Zero means "no bracket" in the ledger
        stop_loss=_optional_float(row.get("stop_loss")) or None,
        take_profit=_optional_float(row.get("take_profit")) or None,
    )


def order_from_row(
    row: dict[str, Any],
    symbol_lookup: SymbolLookup | None = None,
) -> CanonicalOrder:
    """Map an `orders` row."""
    order_type = map_order_type(row.get("order_type", row.get("type")))
    requested = _optional_float(row.get("requested_price", row.get("price")))
    stop_price = _optional_float(row.get("stop_price"))

    limit_price = None
    if order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT):
        limit_price = requested
    if order_type == OrderType.STOP and stop_price is None:
        stop_price = requested

    now = datetime.now(UTC)
    created = row.get("created_at") or now
    return CanonicalOrder(
        id=str(row["id"]),
        symbol=row_symbol(row, symbol_lookup),
        side=map_side(row.get("side")),
        qty=abs(_float(row.get("quantity", row.get("qty")))),
        type=order_type,
        status=map_order_status(row.get("status")),
        limit_price=limit_price,
        stop_price=stop_price,
        filled_qty=abs(_float(row.get("filled_quantity", row.get("filled_qty")))),
        avg_fill_price=_float(row.get("avg_fill_price", row.get("filled_price"))),
        created_at=created,
        updated_at=row.get("updated_at") or created,
    )
