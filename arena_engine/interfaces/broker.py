"""
TradingBroker interface.

Defines the contract the trading panel drives for account state and order
commands.
"""

from abc import ABC, abstractmethod

from arena_engine.broker.models import (
    AccountMeta,
    AccountState,
    CanonicalOrder,
    CanonicalPosition,
    ConnectionStatus,
    PlaceOrderResult,
    PreOrder,
)


class TradingBroker(ABC):
    """Abstract base class for trading brokers."""

    # =========================================================================
    # Account
    # =========================================================================

    @abstractmethod
    async def accounts_metainfo(self) -> list[AccountMeta]:
        """List the accounts the user can trade."""
        pass

    @abstractmethod
    async def get_account_state(self, account_id: str) -> AccountState:
        """
        Get balance, equity and margin.

        Never raises; a default state is returned when the backend is down.
        """
        pass

    @abstractmethod
    async def get_positions(self, account_id: str) -> list[CanonicalPosition]:
        pass

    @abstractmethod
    async def get_orders(self, account_id: str) -> list[CanonicalOrder]:
        pass

    # =========================================================================
    # Commands
    # =========================================================================

    @abstractmethod
    async def place_order(
        self,
        account_id: str,
        pre_order: PreOrder,
        parent_id: str | None = None,
    ) -> PlaceOrderResult:
        """
        Place an order.

        Raises:
            ValidationError: Bad order ticket
            UpstreamUnavailable: Backend rejected or unreachable
        """
        pass

    @abstractmethod
    async def modify_order(
        self,
        account_id: str,
        order_id: str,
        pre_order: PreOrder,
    ) -> PlaceOrderResult:
        """
        Apply a new ticket to a working order.

        Raises:
            NotFoundError: Unknown account or order id
        """
        pass

    @abstractmethod
    async def cancel_order(self, account_id: str, order_id: str) -> bool:
        """Cancel an order. Idempotent."""
        pass

    @abstractmethod
    async def close_position(self, account_id: str, position_id: str) -> bool:
        """
        Close a position.

        Raises:
            NotFoundError: Unknown account or position id
        """
        pass

    @abstractmethod
    async def reverse_position(self, account_id: str, position_id: str) -> bool:
        """Close a position and open the opposite side for the same qty."""
        pass

    # =========================================================================
    # Terminal status
    # =========================================================================

    @abstractmethod
    def connection_status(self) -> ConnectionStatus:
        pass

    @abstractmethod
    async def is_tradable(self, symbol: str) -> bool:
        """Whether an order ticket for `symbol` may be opened."""
        pass
