"""
Trading broker facade.

Joins the read side (BrokerStateAdapter) and the write side
(OrderCommandGateway) behind the TradingBroker interface.
"""

from arena_engine.backend.client import BackendClient
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.broker.gateway import OrderCommandGateway
from arena_engine.broker.models import (
    AccountMeta,
    AccountState,
    CanonicalOrder,
    CanonicalPosition,
    ConnectionStatus,
    PlaceOrderResult,
    PreOrder,
)
from arena_engine.broker.state import BrokerStateAdapter
from arena_engine.catalog.symbols import get_symbol
from arena_engine.config import Settings
from arena_engine.interfaces.broker import TradingBroker
from arena_engine.market_data.multiplexer import QuoteMultiplexer


class ArenaBroker(TradingBroker):
    """TradingBroker backed by the competition ledger."""

    def __init__(self, state: BrokerStateAdapter, gateway: OrderCommandGateway) -> None:
        self._state = state
        self._gateway = gateway

    @classmethod
    def create(
        cls,
        settings: Settings,
        client: BackendClient,
        directory: InstrumentDirectory,
        multiplexer: QuoteMultiplexer,
    ) -> "ArenaBroker":
        state = BrokerStateAdapter(client, directory, multiplexer.quote_cache, settings)
        gateway = OrderCommandGateway(client, directory, state, multiplexer)
        return cls(state, gateway)

    @property
    def state(self) -> BrokerStateAdapter:
        return self._state

    @property
    def gateway(self) -> OrderCommandGateway:
        return self._gateway

    async def accounts_metainfo(self) -> list[AccountMeta]:
        return await self._state.accounts_metainfo()

    async def get_account_state(self, account_id: str) -> AccountState:
        return await self._state.get_account_state(account_id)

    async def get_positions(self, account_id: str) -> list[CanonicalPosition]:
        return await self._state.get_positions(account_id)

    async def get_orders(self, account_id: str) -> list[CanonicalOrder]:
        return await self._state.get_orders(account_id)

    async def place_order(
        self,
        account_id: str,
        pre_order: PreOrder,
        parent_id: str | None = None,
    ) -> PlaceOrderResult:
        return await self._gateway.place_order(account_id, pre_order, parent_id)

    async def modify_order(
        self,
        account_id: str,
        order_id: str,
        pre_order: PreOrder,
    ) -> PlaceOrderResult:
        return await self._gateway.modify_order(account_id, order_id, pre_order)

    async def cancel_order(self, account_id: str, order_id: str) -> bool:
        return await self._gateway.cancel_order(account_id, order_id)

    async def close_position(self, account_id: str, position_id: str) -> bool:
        return await self._gateway.close_position(account_id, position_id)

    async def reverse_position(self, account_id: str, position_id: str) -> bool:
        return await self._gateway.reverse_position(account_id, position_id)

    def connection_status(self) -> ConnectionStatus:
        """Connected while a backend is configured; the ledger has no session to drop."""
        if self._state.backend_configured:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.DISCONNECTED

    async def is_tradable(self, symbol: str) -> bool:
        return get_symbol(symbol) is not None
