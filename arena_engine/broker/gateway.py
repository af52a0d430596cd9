"""
Order Command Gateway.

Validates trading commands and forwards them to the backend write paths:
- place: `place-order` edge function, sent once with a client order id
- modify / cancel: PATCH on `orders`, guarded on the order still working
- close: `close-position` edge function
- reverse: close, then an opposite-side market order for the same qty

Validation failures raise before any network call. Backend failures
propagate as UpstreamUnavailable; in particular an order lookup that fails is
never treated as "unknown order". Cancel is idempotent; modify and close are
not and raise NotFoundError for ids the backend confirms do not exist.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from arena_engine.backend.client import BackendClient, eq, in_
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.broker.mapping import (
    ACTIVE_BACKEND_STATUSES,
    map_order_status,
    order_status_to_backend,
)
from arena_engine.broker.models import (
    CanonicalOrder,
    CanonicalPosition,
    OrderStatus,
    OrderType,
    PlaceOrderResult,
    PreOrder,
    Side,
    validate_order_transition,
)
from arena_engine.broker.state import AccountContext, BrokerStateAdapter
from arena_engine.catalog.symbols import get_symbol, normalize_symbol
from arena_engine.errors import (
    NotFoundError,
    StateConflict,
    UpstreamUnavailable,
    ValidationError,
)
from arena_engine.logging import get_logger
from arena_engine.market_data.multiplexer import QuoteMultiplexer

logger = get_logger(__name__)

PLACE_ORDER_FUNCTION = "place-order"
CLOSE_POSITION_FUNCTION = "close-position"


def validate_pre_order(pre_order: PreOrder) -> PreOrder:
    """
    Check an order ticket before anything leaves the process.

    Returns:
        The ticket with its symbol normalised to the catalogue ticker

    Raises:
        ValidationError: Non-positive qty, unknown symbol or missing price
    """
    if pre_order.qty <= 0:
        raise ValidationError(f"Order quantity must be positive, got {pre_order.qty}")

    info = get_symbol(pre_order.symbol)
    if info is None:
        raise ValidationError(f"Unknown symbol: {pre_order.symbol}")

    if pre_order.type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and pre_order.limit_price is None:
        raise ValidationError(f"{pre_order.type.value} order requires a limit price")
    if pre_order.type in (OrderType.STOP, OrderType.STOP_LIMIT) and pre_order.stop_price is None:
        raise ValidationError(f"{pre_order.type.value} order requires a stop price")

    return pre_order.model_copy(update={"symbol": info.symbol})


def new_client_order_id() -> str:
    """Idempotency key the backend can dedupe a submission on."""
    return uuid.uuid4().hex


def _working_order_filter(order_id: str) -> dict[str, str]:
    # The status guard makes a write lose cleanly to a fill that landed first
    return {"id": eq(order_id), "status": in_(list(ACTIVE_BACKEND_STATUSES))}


class OrderCommandGateway:
    """
    Trading command surface.

    Every write invalidates the state adapter's account context so the next
    read reflects the backend's view.
    """

    def __init__(
        self,
        client: BackendClient,
        directory: InstrumentDirectory,
        state: BrokerStateAdapter,
        multiplexer: QuoteMultiplexer,
    ) -> None:
        self._client = client
        self._directory = directory
        self._state = state
        self._multiplexer = multiplexer

    # =========================================================================
    # Place / modify / cancel
    # =========================================================================

    async def place_order(
        self,
        account_id: str | None,
        pre_order: PreOrder,
        parent_id: str | None = None,
    ) -> PlaceOrderResult:
        """
        Submit a new order.

        The submission carries a fresh `client_order_id` and is sent exactly
        once: a timeout or 5xx is reported, never replayed.

        Args:
            account_id: Target account; None means the user's account
            pre_order: Order ticket
            parent_id: Parent order/position for bracket legs

        Returns:
            PlaceOrderResult with the backend order id and mapped status

        Raises:
            ValidationError: Bad ticket (no backend call made)
            NotFoundError: account_id is not the user's account
            UpstreamUnavailable: No account, unknown instrument or backend failure
        """
        pre_order = validate_pre_order(pre_order)

        reference_price = await self._reference_price(pre_order.symbol, pre_order.side)

        context = await self._state.require_account_context()
        if context is None:
            raise UpstreamUnavailable("No trading account available", source="broker")
        if account_id is not None and account_id != context.public_id:
            raise NotFoundError(f"Account not found: {account_id}")

        instrument_id = await self._directory.get_id(pre_order.symbol)
        if instrument_id is None:
            raise UpstreamUnavailable(
                f"Instrument not found: {pre_order.symbol}",
                source="broker",
            )

        client_order_id = new_client_order_id()
        body: dict[str, Any] = {
            "client_order_id": client_order_id,
            "competition_id": context.competition_id,
            "account_id": context.account_id,
            "instrument_id": instrument_id,
            "side": pre_order.side.value,
            "order_type": pre_order.type.value,
            "quantity": pre_order.qty,
            "client_price": reference_price,
            "requested_price": pre_order.limit_price,
            "stop_price": pre_order.stop_price,
            "stop_loss": pre_order.stop_loss,
            "take_profit": pre_order.take_profit,
            "leverage": pre_order.leverage,
        }
        if parent_id is not None:
            body["parent_id"] = parent_id

        try:
            result = await self._client.invoke(PLACE_ORDER_FUNCTION, body, retry=False)
        except UpstreamUnavailable:
            logger.warning(
                "place-order failed for %s; outcome unknown, not resubmitted",
                client_order_id,
            )
            raise
        finally:
            self._state.invalidate()

        order_id = result.get("order_id") or result.get("position_id")
        if not order_id:
            raise UpstreamUnavailable("place-order returned no order id", source=PLACE_ORDER_FUNCTION)

        if result.get("status"):
            status = map_order_status(result["status"])
        elif pre_order.type == OrderType.MARKET:
            status = OrderStatus.FILLED
        else:
            status = OrderStatus.WORKING

        logger.info(
            "Placed %s %s %s x%s -> %s (%s, client id %s)",
            pre_order.type.value,
            pre_order.side.value,
            pre_order.symbol,
            pre_order.qty,
            order_id,
            status.value,
            client_order_id,
        )
        return PlaceOrderResult(
            order_id=str(order_id),
            status=status,
            reference_price=reference_price,
        )

    async def modify_order(
        self,
        account_id: str | None,
        order_id: str,
        pre_order: PreOrder,
    ) -> PlaceOrderResult:
        """
        Apply a new ticket (qty and prices) to a working order.

        A terminal order is left untouched and its status returned. The
        PATCH only matches while the order is still working, so a fill that
        lands first wins.

        Raises:
            ValidationError: Bad ticket, or one that changes symbol or side
            NotFoundError: Unknown account or order id
            StateConflict: The backend kept the order working but refused the write
            UpstreamUnavailable: The lookup or the write failed
        """
        pre_order = validate_pre_order(pre_order)

        context = await self._state.check_account(account_id)
        order = await self._state.lookup_order(order_id, context)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}")
        if order.status.is_terminal:
            logger.info("Modify ignored for %s order %s", order.status.value, order_id)
            return PlaceOrderResult(order_id=order_id, status=order.status)
        if pre_order.symbol != order.symbol or pre_order.side != order.side:
            raise ValidationError(
                f"Modify cannot change symbol or side of order {order_id} "
                f"({order.side.value} {order.symbol})"
            )

        values: dict[str, Any] = {
            "quantity": pre_order.qty,
            "updated_at": datetime.now(UTC).isoformat(),
        }
        if pre_order.limit_price is not None:
            values["requested_price"] = pre_order.limit_price
        if pre_order.stop_price is not None:
            values["stop_price"] = pre_order.stop_price

        try:
            rows = await self._client.update("orders", _working_order_filter(order_id), values)
        finally:
            self._state.invalidate()

        if not rows:
            current = await self._settled_before_write(order, context, "modify")
            return PlaceOrderResult(order_id=order_id, status=current.status)

        status = self._checked_status(order, rows[0].get("status"))
        logger.info("Modified order %s: %s", order_id, values)
        return PlaceOrderResult(order_id=order_id, status=status)

    async def cancel_order(self, account_id: str | None, order_id: str) -> bool:
        """
        Cancel an order. Idempotent.

        Returns:
            True once the order is (or already was) no longer working, or the
            backend confirms it never existed

        Raises:
            NotFoundError: Unknown account
            StateConflict: The backend kept the order working but refused the write
            UpstreamUnavailable: The lookup or the write failed
        """
        context = await self._state.check_account(account_id)
        order = await self._state.lookup_order(order_id, context)
        if order is None:
            logger.info("Cancel for unknown order %s treated as done", order_id)
            return True
        if order.status.is_terminal:
            logger.info("Order %s already %s", order_id, order.status.value)
            return True

        validate_order_transition(order.status, OrderStatus.CANCELED, strict=True)
        try:
            rows = await self._client.update(
                "orders",
                _working_order_filter(order_id),
                {
                    "status": order_status_to_backend(OrderStatus.CANCELED),
                    "updated_at": datetime.now(UTC).isoformat(),
                },
            )
        finally:
            self._state.invalidate()

        if not rows:
            try:
                await self._settled_before_write(order, context, "cancel")
            except NotFoundError:
                logger.info("Order %s vanished before cancel", order_id)
            return True

        self._checked_status(order, rows[0].get("status"))
        logger.info("Cancelled order %s", order_id)
        return True

    # =========================================================================
    # Positions
    # =========================================================================

    async def close_position(self, account_id: str | None, position_id: str) -> bool:
        """
        Flatten an open position.

        Raises:
            NotFoundError: Unknown account or position id
            UpstreamUnavailable: The lookup failed or the close was not confirmed
        """
        position = await self._open_position(account_id, position_id)
        await self._close(position)
        return True

    async def reverse_position(self, account_id: str | None, position_id: str) -> bool:
        """
        Reverse a position as two orders.

        The position is closed first; only once that is confirmed is an
        opposite-side market order for the same qty placed. A failed close
        opens nothing.

        Raises:
            NotFoundError: Unknown account or position id
            UpstreamUnavailable: Either leg failed
        """
        position = await self._open_position(account_id, position_id)
        await self._close(position)

        opposite = PreOrder(
            symbol=position.symbol,
            side=position.side.opposite,
            qty=position.qty,
            type=OrderType.MARKET,
            leverage=position.leverage,
        )
        result = await self.place_order(account_id, opposite)
        logger.info(
            "Reversed position %s: %s %s x%s -> order %s",
            position_id,
            opposite.side.value,
            opposite.symbol,
            opposite.qty,
            result.order_id,
        )
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _open_position(self, account_id: str | None, position_id: str) -> CanonicalPosition:
        context = await self._state.check_account(account_id)
        position = await self._state.lookup_position(position_id, context)
        if position is None:
            raise NotFoundError(f"Position not found: {position_id}")
        return position

    async def _close(self, position: CanonicalPosition) -> None:
        try:
            await self._client.invoke(
                CLOSE_POSITION_FUNCTION,
                {"position_id": position.id},
                retry=False,
            )
        finally:
            self._state.invalidate()

        logger.info(
            "Closed position %s (%s %s x%s)",
            position.id,
            position.side.value,
            position.symbol,
            position.qty,
        )

    async def _settled_before_write(
        self,
        order: CanonicalOrder,
        context: AccountContext | None,
        action: str,
    ) -> CanonicalOrder:
        """
        The guarded PATCH matched no row: find out why.

        Returns:
            The order as it now stands (terminal)

        Raises:
            NotFoundError: The row disappeared
            StateConflict: The row is still working under a status the guard
                does not recognise
        """
        current = await self._state.lookup_order(order.id, context)
        if current is None:
            raise NotFoundError(f"Order not found: {order.id}")
        if current.status.is_active:
            raise StateConflict(
                f"Order {order.id} is still {current.status.value}; {action} was not applied"
            )
        logger.info(
            "Order %s became %s before %s; left unchanged",
            order.id,
            current.status.value,
            action,
        )
        return current

    def _checked_status(self, order: CanonicalOrder, raw_status: Any) -> OrderStatus:
        status = map_order_status(raw_status)
        if status != order.status and not validate_order_transition(order.status, status):
            logger.warning(
                "Backend moved order %s %s -> %s outside the order lifecycle",
                order.id,
                order.status.value,
                status.value,
            )
        return status

    async def _reference_price(self, symbol: str, side: Side) -> float | None:
        """Ask for buys, bid for sells; None if nothing can price the symbol."""
        tick = await self._multiplexer.get_quote(normalize_symbol(symbol))
        if tick is None:
            return None
        return tick.ask if side == Side.BUY else tick.bid
