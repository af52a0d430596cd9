"""
Broker API routes.

Provides endpoints for:
- Account list and state
- Positions and orders
- Place / modify / cancel orders
- Close / reverse positions
- Connection status and tradability
"""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from arena_engine.api.services import get_broker, http_error
from arena_engine.broker.models import (
    AccountMeta,
    AccountState,
    CanonicalOrder,
    CanonicalPosition,
    ConnectionStatus,
    PlaceOrderResult,
    PreOrder,
)
from arena_engine.errors import ArenaError
from arena_engine.logging import get_logger

router = APIRouter(prefix="/broker", tags=["Broker"])
logger = get_logger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================


class PlaceOrderRequest(PreOrder):
    """Order ticket plus optional parent for bracket legs."""

    parent_id: str | None = None


class BrokerStatusResponse(BaseModel):
    connection_status: ConnectionStatus
    connected: bool


class TradableResponse(BaseModel):
    symbol: str
    tradable: bool


class CommandResponse(BaseModel):
    ok: bool = True
    detail: str | None = Field(default=None)


# =============================================================================
# Reads
# =============================================================================


@router.get("/accounts", response_model=list[AccountMeta])
async def list_accounts() -> list[AccountMeta]:
    return await get_broker().accounts_metainfo()


@router.get("/accounts/{account_id}/state", response_model=AccountState)
async def account_state(account_id: str) -> AccountState:
    """Balance, equity and margin. Falls back to the default state on outage."""
    return await get_broker().get_account_state(account_id)


@router.get("/accounts/{account_id}/positions", response_model=list[CanonicalPosition])
async def positions(account_id: str) -> list[CanonicalPosition]:
    return await get_broker().get_positions(account_id)


@router.get("/accounts/{account_id}/orders", response_model=list[CanonicalOrder])
async def orders(account_id: str) -> list[CanonicalOrder]:
    return await get_broker().get_orders(account_id)


# =============================================================================
# Commands
# =============================================================================


@router.post("/accounts/{account_id}/orders", response_model=PlaceOrderResult)
async def place_order(account_id: str, request: PlaceOrderRequest) -> PlaceOrderResult:
    """
    Place an order.

    422 for a bad ticket, 502 when the backend rejects or is unreachable.
    """
    pre_order = PreOrder.model_validate(request.model_dump(exclude={"parent_id"}))
    try:
        return await get_broker().place_order(account_id, pre_order, request.parent_id)
    except ArenaError as e:
        raise http_error(e) from e


@router.put("/accounts/{account_id}/orders/{order_id}", response_model=PlaceOrderResult)
async def modify_order(account_id: str, order_id: str, request: PreOrder) -> PlaceOrderResult:
    """
    Replace qty and prices of a working order with a new ticket.

    404 for an unknown order, 409 when the backend refuses the change.
    """
    try:
        return await get_broker().modify_order(account_id, order_id, request)
    except ArenaError as e:
        raise http_error(e) from e


@router.delete("/accounts/{account_id}/orders/{order_id}", response_model=CommandResponse)
async def cancel_order(account_id: str, order_id: str) -> CommandResponse:
    try:
        return CommandResponse(ok=await get_broker().cancel_order(account_id, order_id))
    except ArenaError as e:
        raise http_error(e) from e


@router.post(
    "/accounts/{account_id}/positions/{position_id}/close",
    response_model=CommandResponse,
)
async def close_position(account_id: str, position_id: str) -> CommandResponse:
    try:
        return CommandResponse(ok=await get_broker().close_position(account_id, position_id))
    except ArenaError as e:
        raise http_error(e) from e


@router.post(
    "/accounts/{account_id}/positions/{position_id}/reverse",
    response_model=CommandResponse,
)
async def reverse_position(account_id: str, position_id: str) -> CommandResponse:
    """Close the position, then open the opposite side for the same qty."""
    try:
        return CommandResponse(ok=await get_broker().reverse_position(account_id, position_id))
    except ArenaError as e:
        raise http_error(e) from e


# =============================================================================
# Terminal Status
# =============================================================================


@router.get("/status", response_model=BrokerStatusResponse)
async def broker_status() -> BrokerStatusResponse:
    status = get_broker().connection_status()
    return BrokerStatusResponse(connection_status=status, connected=status == ConnectionStatus.CONNECTED)


@router.get("/symbols/{symbol}/tradable", response_model=TradableResponse)
async def tradable(symbol: str) -> TradableResponse:
    return TradableResponse(symbol=symbol, tradable=await get_broker().is_tradable(symbol))
