"""
Canonical broker models.

The front-end renders and acts on these shapes only; backend rows are mapped
into them by `arena_engine.broker.mapping`.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from arena_engine.errors import StateConflict


class Side(str, Enum):
    """Order/position side."""

    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self == Side.BUY else Side.BUY


class ConnectionStatus(int, Enum):
    """Broker connection state, numbered as the trading terminal expects."""

    CONNECTED = 1
    CONNECTING = 2
    DISCONNECTED = 3
    ERROR = 4


class OrderType(str, Enum):
    """Order type."""

    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"  # Accepted locally, not yet working at the backend
    WORKING = "working"  # Live at the backend
    PARTIAL = "partial"  # Some quantity filled
    FILLED = "filled"
    CANCELED = "canceled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state."""
        return self in (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.REJECTED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


# Valid order state transitions
ORDER_STATE_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.WORKING,
        OrderStatus.CANCELED,
        OrderStatus.REJECTED,
    },
    OrderStatus.WORKING: {
        OrderStatus.PARTIAL,
        OrderStatus.FILLED,  # Market orders fill in one step
        OrderStatus.CANCELED,
        OrderStatus.REJECTED,
    },
    OrderStatus.PARTIAL: {
        OrderStatus.PARTIAL,  # Further partial fills
        OrderStatus.FILLED,
        OrderStatus.CANCELED,
        OrderStatus.REJECTED,
    },
    # Terminal states have no valid transitions
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELED: set(),
    OrderStatus.REJECTED: set(),
}


def validate_order_transition(
    from_status: OrderStatus,
    to_status: OrderStatus,
    strict: bool = False,
) -> bool:
    """
    Validate if a state transition is allowed.

    Args:
        from_status: Current order status
        to_status: Proposed new status
        strict: Raise StateConflict instead of returning False

    Returns:
        True if transition is valid, False otherwise.
    """
    allowed = to_status in ORDER_STATE_TRANSITIONS.get(from_status, set())
    if not allowed and strict:
        raise StateConflict(f"Invalid order transition: {from_status.value} -> {to_status.value}")
    return allowed


def _now() -> datetime:
    return datetime.now(UTC)


class CanonicalOrder(BaseModel):
    """A working or historical order in canonical form."""

    id: str
    symbol: str
    side: Side
    qty: float = Field(..., gt=0)
    type: OrderType = OrderType.MARKET
    status: OrderStatus = OrderStatus.WORKING
    limit_price: float | None = None
    stop_price: float | None = None
    filled_qty: float = Field(default=0.0, ge=0)
    avg_fill_price: float = 0.0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class CanonicalPosition(BaseModel):
    """An open position in canonical form."""

    id: str
    symbol: str
    side: Side
    qty: float = Field(..., gt=0)
    avg_open_price: float
    current_price: float
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    leverage: float = Field(default=1.0, gt=0)
    stop_loss: float | None = None
    take_profit: float | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def pnl_percent(self) -> float:
        cost = self.avg_open_price * self.qty
        if cost == 0:
            return 0.0
        return self.unrealized_pnl / cost * 100


class AccountState(BaseModel):
    """
    Account summary.

    Build via `compute` so the derived fields always satisfy
    equity = balance + unrealized_pnl and free_margin = equity - used_margin.
    """

    balance: float
    equity: float
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    used_margin: float = 0.0
    free_margin: float
    margin_level: float

    @classmethod
    def compute(
        cls,
        balance: float,
        unrealized_pnl: float = 0.0,
        used_margin: float = 0.0,
        realized_pnl: float = 0.0,
        margin_level_sentinel: float = 100.0,
    ) -> "AccountState":
        equity = balance + unrealized_pnl
        margin_level = equity / used_margin * 100 if used_margin > 0 else margin_level_sentinel
        return cls(
            balance=balance,
            equity=equity,
            realized_pnl=realized_pnl,
            unrealized_pnl=unrealized_pnl,
            used_margin=used_margin,
            free_margin=equity - used_margin,
            margin_level=margin_level,
        )

    @classmethod
    def default(cls, balance: float = 100000.0, margin_level_sentinel: float = 100.0) -> "AccountState":
        """Deterministic fallback shown when the backend cannot be read."""
        return cls.compute(balance, margin_level_sentinel=margin_level_sentinel)


class AccountMeta(BaseModel):
    """Account descriptor for the account picker."""

    id: str
    name: str
    currency: str = "USD"
    currency_sign: str = "$"


class PreOrder(BaseModel):
    """Order ticket as submitted by the front-end."""

    symbol: str
    side: Side
    qty: float
    type: OrderType = OrderType.MARKET
    limit_price: float | None = None
    stop_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    leverage: float = Field(default=1.0, gt=0)


class PlaceOrderResult(BaseModel):
    """Outcome of a place/modify command."""

    order_id: str
    status: OrderStatus
    reference_price: float | None = Field(
        default=None,
        description="Quote used for optimistic display (ask for buy, bid for sell)",
    )
