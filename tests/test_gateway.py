"""
Tests for the order command gateway.
"""

from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from arena_engine.backend.client import in_
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.broker.gateway import (
    CLOSE_POSITION_FUNCTION,
    PLACE_ORDER_FUNCTION,
    OrderCommandGateway,
    validate_pre_order,
)
from arena_engine.broker.mapping import ACTIVE_BACKEND_STATUSES
from arena_engine.broker.models import OrderStatus, OrderType, PreOrder, Side
from arena_engine.broker.state import BrokerStateAdapter
from arena_engine.config import Settings
from arena_engine.errors import NotFoundError, StateConflict, UpstreamUnavailable, ValidationError
from arena_engine.market_data.models import LastQuoteCache, QuoteTick
from arena_engine.market_data.multiplexer import QuoteMultiplexer
from tests.conftest import rows_by_table

PARTICIPANT = {"id": "cp-1", "competition_id": "c-1", "accounts": {"id": "acc-1", "balance": 10000}}

LONG_BTC = {
    "id": "pos-1",
    "side": "buy",
    "quantity": 2,
    "entry_price": 60000,
    "leverage": 5,
    "instruments": {"symbol": "BTCUSD"},
}

ORDERS = [
    {"id": "o-working", "side": "buy", "quantity": 3, "order_type": "limit", "status": "open",
     "requested_price": 90, "instruments": {"symbol": "AAPL"}},
    {"id": "o-filled", "side": "sell", "quantity": 1, "status": "filled",
     "instruments": {"symbol": "AAPL"}},
]

AAPL_LIMIT = PreOrder(symbol="AAPL", side=Side.BUY, qty=5, type=OrderType.LIMIT, limit_price=95.0)

WORKING_GUARD = {"id": "eq.o-working", "status": in_(list(ACTIVE_BACKEND_STATUSES))}


@pytest.fixture
def orders() -> list[dict[str, Any]]:
    """Per-test copy of the order rows, so a test may mutate them."""
    return [dict(row) for row in ORDERS]


@pytest.fixture
def multiplexer() -> MagicMock:
    multiplexer = MagicMock(spec=QuoteMultiplexer)
    multiplexer.get_quote = AsyncMock(
        return_value=QuoteTick.from_bid_ask("BTCUSD", 99.0, 101.0, timestamp=1)
    )
    return multiplexer


@pytest.fixture
def gateway(
    mock_client: MagicMock,
    offline_settings: Settings,
    multiplexer: MagicMock,
    orders: list[dict[str, Any]],
) -> OrderCommandGateway:
    mock_client.select.side_effect = rows_by_table(
        {
            "competition_participants": [PARTICIPANT],
            "positions": [LONG_BTC],
            "orders": orders,
        }
    )
    mock_client.invoke.return_value = {"order_id": "o-new"}
    directory = InstrumentDirectory(mock_client, preset={"BTCUSD": "i-btc", "AAPL": "i-aapl"})
    state = BrokerStateAdapter(mock_client, directory, LastQuoteCache(), offline_settings)
    return OrderCommandGateway(mock_client, directory, state, multiplexer)


def invoked(client: MagicMock) -> list[tuple[str, dict[str, Any]]]:
    return [(call.args[0], call.args[1]) for call in client.invoke.call_args_list]


def fill_first(orders: list[dict[str, Any]], order_id: str) -> Callable[..., Any]:
    """An `update` side effect where a fill lands just before the PATCH."""

    async def update(*args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        for row in orders:
            if row["id"] == order_id:
                row["status"] = "filled"
        return []

    return update


class TestValidation:
    """Ticket checks run before any backend call."""

    @pytest.mark.asyncio
    async def test_zero_qty_rejected_without_backend_call(
        self,
        gateway: OrderCommandGateway,
        mock_client: MagicMock,
        multiplexer: MagicMock,
    ) -> None:
        with pytest.raises(ValidationError):
            await gateway.place_order("acc-1", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=0))

        mock_client.invoke.assert_not_called()
        mock_client.select.assert_not_called()
        multiplexer.get_quote.assert_not_called()

    def test_unknown_symbol(self) -> None:
        with pytest.raises(ValidationError, match="Unknown symbol"):
            validate_pre_order(PreOrder(symbol="NOPE", side=Side.BUY, qty=1))

    def test_limit_needs_price(self) -> None:
        with pytest.raises(ValidationError):
            validate_pre_order(PreOrder(symbol="AAPL", side=Side.BUY, qty=1, type=OrderType.LIMIT))

    def test_stop_limit_needs_both_prices(self) -> None:
        with pytest.raises(ValidationError):
            validate_pre_order(
                PreOrder(
                    symbol="AAPL",
                    side=Side.BUY,
                    qty=1,
                    type=OrderType.STOP_LIMIT,
                    limit_price=10.0,
                )
            )

    def test_symbol_normalised(self) -> None:
        checked = validate_pre_order(PreOrder(symbol="crypto:btcusd", side=Side.BUY, qty=1))
        assert checked.symbol == "BTCUSD"


class TestPlaceOrder:
    """Order placement through the place-order function."""

    @pytest.mark.asyncio
    async def test_market_buy(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        result = await gateway.place_order(
            "acc-1",
            PreOrder(symbol="BTCUSD", side=Side.BUY, qty=0.5, stop_loss=90.0),
        )

        assert result.order_id == "o-new"
        assert result.status == OrderStatus.FILLED
        assert result.reference_price == 101.0

        [(function, body)] = invoked(mock_client)
        assert function == PLACE_ORDER_FUNCTION
        assert body["competition_id"] == "c-1"
        assert body["account_id"] == "acc-1"
        assert body["instrument_id"] == "i-btc"
        assert body["side"] == "buy"
        assert body["order_type"] == "market"
        assert body["quantity"] == 0.5
        assert body["client_price"] == 101.0
        assert body["stop_loss"] == 90.0
        assert "parent_id" not in body

    @pytest.mark.asyncio
    async def test_sell_uses_bid(self, gateway: OrderCommandGateway) -> None:
        result = await gateway.place_order(None, PreOrder(symbol="BTCUSD", side=Side.SELL, qty=1))
        assert result.reference_price == 99.0

    @pytest.mark.asyncio
    async def test_limit_status_from_backend(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.invoke.return_value = {"order_id": "o-2", "status": "pending"}

        result = await gateway.place_order(
            "acc-1",
            PreOrder(symbol="AAPL", side=Side.BUY, qty=1, type=OrderType.LIMIT, limit_price=180.0),
            parent_id="pos-1",
        )

        assert result.status == OrderStatus.PENDING
        [(_, body)] = invoked(mock_client)
        assert body["requested_price"] == 180.0
        assert body["parent_id"] == "pos-1"

    @pytest.mark.asyncio
    async def test_limit_defaults_to_working(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        result = await gateway.place_order(
            "acc-1",
            PreOrder(symbol="AAPL", side=Side.BUY, qty=1, type=OrderType.STOP, stop_price=200.0),
        )
        assert result.status == OrderStatus.WORKING

    @pytest.mark.asyncio
    async def test_no_account(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        mock_client.select.side_effect = rows_by_table({})

        with pytest.raises(UpstreamUnavailable, match="No trading account"):
            await gateway.place_order("acc-1", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1))
        mock_client.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_backend_rejection_propagates(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.invoke.side_effect = UpstreamUnavailable("Insufficient margin", source="place-order")

        with pytest.raises(UpstreamUnavailable, match="Insufficient margin"):
            await gateway.place_order("acc-1", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1))

    @pytest.mark.asyncio
    async def test_missing_order_id(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        mock_client.invoke.return_value = {"ok": True}
        with pytest.raises(UpstreamUnavailable):
            await gateway.place_order("acc-1", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1))

    @pytest.mark.asyncio
    async def test_sent_once_with_client_order_id(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        """Each submission carries its own key and is never retried by the client."""
        ticket = PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1)

        await gateway.place_order("acc-1", ticket)
        await gateway.place_order("acc-1", ticket)

        keys = [call.args[1]["client_order_id"] for call in mock_client.invoke.call_args_list]
        assert len(keys) == 2
        assert all(len(key) == 32 for key in keys)
        assert keys[0] != keys[1]
        assert all(call.kwargs["retry"] is False for call in mock_client.invoke.call_args_list)

    @pytest.mark.asyncio
    async def test_timeout_not_resubmitted(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.invoke.side_effect = UpstreamUnavailable("timed out", source="place-order")

        with pytest.raises(UpstreamUnavailable, match="timed out"):
            await gateway.place_order("acc-1", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1))
        assert mock_client.invoke.await_count == 1

    @pytest.mark.asyncio
    async def test_foreign_account(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        with pytest.raises(NotFoundError, match="acc-other"):
            await gateway.place_order("acc-other", PreOrder(symbol="BTCUSD", side=Side.BUY, qty=1))
        mock_client.invoke.assert_not_called()


class TestModifyOrder:
    """Order modification."""

    @pytest.mark.asyncio
    async def test_unknown_order(self, gateway: OrderCommandGateway) -> None:
        with pytest.raises(NotFoundError):
            await gateway.modify_order("acc-1", "o-missing", AAPL_LIMIT)

    @pytest.mark.asyncio
    async def test_bad_qty(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        with pytest.raises(ValidationError):
            await gateway.modify_order("acc-1", "o-working", AAPL_LIMIT.model_copy(update={"qty": 0}))
        mock_client.select.assert_not_called()
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_side_cannot_change(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        with pytest.raises(ValidationError, match="symbol or side"):
            await gateway.modify_order(
                "acc-1", "o-working", AAPL_LIMIT.model_copy(update={"side": Side.SELL})
            )
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_working_order_patched(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.update.return_value = [{"id": "o-working", "status": "open"}]

        result = await gateway.modify_order("acc-1", "o-working", AAPL_LIMIT)

        assert result.status == OrderStatus.WORKING
        table, filters, values = mock_client.update.await_args.args
        assert table == "orders"
        assert filters == WORKING_GUARD
        assert values["quantity"] == 5
        assert values["requested_price"] == 95.0
        assert "stop_price" not in values

    @pytest.mark.asyncio
    async def test_terminal_order_untouched(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        result = await gateway.modify_order(
            "acc-1", "o-filled", PreOrder(symbol="AAPL", side=Side.SELL, qty=2)
        )

        assert result.status == OrderStatus.FILLED
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_fill_lands_before_modify(
        self,
        gateway: OrderCommandGateway,
        mock_client: MagicMock,
        orders: list[dict[str, Any]],
    ) -> None:
        """The guarded PATCH matches nothing; the fill is reported, not overwritten."""
        mock_client.update.side_effect = fill_first(orders, "o-working")

        result = await gateway.modify_order("acc-1", "o-working", AAPL_LIMIT)

        assert result.status == OrderStatus.FILLED
        _, filters, _ = mock_client.update.await_args.args
        assert filters == WORKING_GUARD


class TestCancelOrder:
    """Idempotent cancel."""

    @pytest.mark.asyncio
    async def test_cancel_working(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        mock_client.update.return_value = [{"id": "o-working", "status": "cancelled"}]

        assert await gateway.cancel_order("acc-1", "o-working") is True

        table, filters, values = mock_client.update.await_args.args
        assert (table, filters) == ("orders", WORKING_GUARD)
        assert values["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_lookup_reads_the_row(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.update.return_value = [{"id": "o-working", "status": "cancelled"}]

        await gateway.cancel_order(None, "o-working")

        order_reads = [call for call in mock_client.select.call_args_list if call.args[0] == "orders"]
        assert [call.args[1] for call in order_reads] == [
            {"account_id": "eq.acc-1", "id": "eq.o-working"}
        ]

    @pytest.mark.asyncio
    async def test_cancel_filled_is_noop(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        assert await gateway.cancel_order("acc-1", "o-filled") is True
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_noop(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        assert await gateway.cancel_order("acc-1", "o-missing") is True
        assert await gateway.cancel_order("acc-1", "o-missing") is True
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_outage_is_not_unknown(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        """A failed order read surfaces instead of reporting a cancel that never happened."""
        mock_client.select.side_effect = rows_by_table(
            {
                "competition_participants": [PARTICIPANT],
                "orders": UpstreamUnavailable("HTTP 503", status_code=503),
            }
        )

        with pytest.raises(UpstreamUnavailable):
            await gateway.cancel_order("acc-1", "o-working")
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_account_outage_is_not_unknown(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.select.side_effect = UpstreamUnavailable("HTTP 503", status_code=503)

        with pytest.raises(UpstreamUnavailable):
            await gateway.cancel_order("acc-1", "o-working")
        mock_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_fill_lands_before_cancel(
        self,
        gateway: OrderCommandGateway,
        mock_client: MagicMock,
        orders: list[dict[str, Any]],
    ) -> None:
        """Cancel succeeds idempotently and the filled status survives."""
        mock_client.update.side_effect = fill_first(orders, "o-working")

        assert await gateway.cancel_order("acc-1", "o-working") is True

        _, filters, _ = mock_client.update.await_args.args
        assert filters == WORKING_GUARD
        assert orders[0]["status"] == "filled"

    @pytest.mark.asyncio
    async def test_unguarded_status_conflicts(
        self,
        gateway: OrderCommandGateway,
        mock_client: MagicMock,
        orders: list[dict[str, Any]],
    ) -> None:
        """A still-working row the guard cannot match is a conflict, not a success."""
        orders[0]["status"] = "queued"

        with pytest.raises(StateConflict, match="not applied"):
            await gateway.cancel_order("acc-1", "o-working")

    @pytest.mark.asyncio
    async def test_foreign_account(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        with pytest.raises(NotFoundError, match="Account not found"):
            await gateway.cancel_order("acc-other", "o-working")
        mock_client.update.assert_not_called()


class TestPositions:
    """Close and reverse."""

    @pytest.mark.asyncio
    async def test_close(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        assert await gateway.close_position("acc-1", "pos-1") is True
        assert invoked(mock_client) == [(CLOSE_POSITION_FUNCTION, {"position_id": "pos-1"})]
        assert mock_client.invoke.await_args.kwargs["retry"] is False

    @pytest.mark.asyncio
    async def test_close_unknown(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        with pytest.raises(NotFoundError):
            await gateway.close_position("acc-1", "pos-missing")
        mock_client.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_during_outage(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.select.side_effect = rows_by_table(
            {
                "competition_participants": [PARTICIPANT],
                "positions": UpstreamUnavailable("HTTP 500", status_code=500),
            }
        )

        with pytest.raises(UpstreamUnavailable):
            await gateway.close_position("acc-1", "pos-1")
        mock_client.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_reverse_is_close_then_opposite_market_order(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        """A long of 2 becomes a close plus a market sell of 2."""
        assert await gateway.reverse_position("acc-1", "pos-1") is True

        calls = invoked(mock_client)
        assert [function for function, _ in calls] == [CLOSE_POSITION_FUNCTION, PLACE_ORDER_FUNCTION]
        _, order = calls[1]
        assert order["side"] == "sell"
        assert order["quantity"] == 2
        assert order["order_type"] == "market"
        assert order["instrument_id"] == "i-btc"
        assert order["leverage"] == 5

    @pytest.mark.asyncio
    async def test_reverse_failed_close_opens_nothing(
        self, gateway: OrderCommandGateway, mock_client: MagicMock
    ) -> None:
        mock_client.invoke.side_effect = UpstreamUnavailable("close failed", source="close-position")

        with pytest.raises(UpstreamUnavailable):
            await gateway.reverse_position("acc-1", "pos-1")

        assert [function for function, _ in invoked(mock_client)] == [CLOSE_POSITION_FUNCTION]

    @pytest.mark.asyncio
    async def test_reverse_unknown(self, gateway: OrderCommandGateway, mock_client: MagicMock) -> None:
        with pytest.raises(NotFoundError):
            await gateway.reverse_position("acc-1", "pos-missing")
        mock_client.invoke.assert_not_called()
