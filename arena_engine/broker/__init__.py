"""
Broker state and order commands.
"""

from arena_engine.broker.models import (
    AccountMeta,
    AccountState,
    CanonicalOrder,
    CanonicalPosition,
    OrderStatus,
    OrderType,
    PlaceOrderResult,
    PreOrder,
    Side,
)

__all__ = [
    "AccountMeta",
    "AccountState",
    "CanonicalOrder",
    "CanonicalPosition",
    "OrderStatus",
    "OrderType",
    "PlaceOrderResult",
    "PreOrder",
    "Side",
]
