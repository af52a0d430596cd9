"""
Broker State Adapter.

Reads account, position and order rows from the backend ledger and maps them
into canonical models. Reads never raise: a backend outage yields the
deterministic default account and empty lists.

Command lookups (`lookup_order`, `lookup_position`) are different: they read
the single row straight from the backend and let failures propagate, so an
outage is never mistaken for an unknown id.

Account context resolution:
1. Active `competition_participants` row with its embedded `accounts` record
2. The user's `user_wallets` row
"""

from dataclasses import dataclass, field
from typing import Any

import httpx

from arena_engine.backend.client import BackendClient, eq
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.broker.mapping import order_from_row, position_from_row, row_symbol
from arena_engine.broker.models import (
    AccountMeta,
    AccountState,
    CanonicalOrder,
    CanonicalPosition,
)
from arena_engine.catalog.symbols import get_symbol
from arena_engine.config import Settings
from arena_engine.errors import ArenaError, NotFoundError, UpstreamUnavailable
from arena_engine.logging import get_logger
from arena_engine.market_data.models import LastQuoteCache

logger = get_logger(__name__)

DEFAULT_ACCOUNT_ID = "demo_account"
ACCOUNT_NAME = "TradeArena Competition Account"

OPEN_POSITION_STATUS = "open"
ORDERS_LIMIT = 200

READ_ERRORS = (ArenaError, httpx.HTTPError, KeyError, TypeError, ValueError)
ROW_ERRORS = (KeyError, TypeError, ValueError)


@dataclass
class AccountContext:
    """Where the user's trading rows live."""

    account_id: str | None
    competition_id: str | None = None
    participant_id: str | None = None
    record: dict[str, Any] = field(default_factory=dict)

    @property
    def public_id(self) -> str:
        """The id the front-end addresses this account by."""
        return self.account_id or DEFAULT_ACCOUNT_ID

    @property
    def row_filter(self) -> dict[str, str]:
        return {"account_id": eq(self.account_id)} if self.account_id else {}


def _first(value: Any) -> dict[str, Any] | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value if isinstance(value, dict) else None


def _balance(record: dict[str, Any], default: float) -> float:
    # A real zero balance is a blown account, not a missing one
    value = record.get("balance")
    if value is None or value == "":
        return default
    return float(value)


class BrokerStateAdapter:
    """
    Canonical view of the user's account.

    The account context is cached until `invalidate()`, which the command
    gateway calls after every write.
    """

    def __init__(
        self,
        client: BackendClient,
        directory: InstrumentDirectory,
        quote_cache: LastQuoteCache,
        settings: Settings,
    ) -> None:
        self._client = client
        self._directory = directory
        self._quote_cache = quote_cache
        self._default_balance = settings.default_balance
        self._margin_level_sentinel = settings.margin_level_sentinel
        self._default_leverage = float(settings.default_leverage)

        self._context: AccountContext | None = None

    # =========================================================================
    # Account context
    # =========================================================================

    async def account_context(self) -> AccountContext | None:
        """
        Resolve (and cache) the user's account context for reads.

        Returns:
            None when the backend is unconfigured, unreachable or has no
            account for the user
        """
        try:
            return await self.require_account_context()
        except READ_ERRORS as e:
            logger.warning("Account lookup failed for user %s: %s", self._client.user_id, e)
            return None

    async def require_account_context(self) -> AccountContext | None:
        """
        Resolve the account context for a command.

        Returns:
            None only when there is no backend or the user has no account

        Raises:
            UpstreamUnavailable: The lookup itself failed
        """
        if self._context is not None:
            return self._context
        user_id = self._client.user_id
        if not self._client.is_configured or not user_id:
            return None

        try:
            self._context = await self._load_context(user_id)
        except ROW_ERRORS as e:
            raise UpstreamUnavailable(f"Unreadable account row: {e}", source="broker") from e
        return self._context

    async def check_account(self, account_id: str | None) -> AccountContext | None:
        """
        Resolve the context and confirm `account_id` addresses it.

        None means "the user's account". Without any context only the demo
        account id is accepted.

        Raises:
            NotFoundError: account_id is not the user's account
            UpstreamUnavailable: The lookup failed
        """
        context = await self.require_account_context()
        expected = context.public_id if context is not None else DEFAULT_ACCOUNT_ID
        if account_id is not None and account_id != expected:
            raise NotFoundError(f"Account not found: {account_id}")
        return context

    async def _load_context(self, user_id: str) -> AccountContext | None:
        participations = await self._client.select(
            "competition_participants",
            {"user_id": eq(user_id), "status": eq("active")},
            columns="id,competition_id,accounts(*)",
        )
        for participation in participations:
            account = _first(participation.get("accounts"))
            if account is not None:
                logger.info("Using competition account %s", account.get("id"))
                return AccountContext(
                    account_id=str(account["id"]),
                    competition_id=_str_or_none(participation.get("competition_id")),
                    participant_id=_str_or_none(participation.get("id")),
                    record=account,
                )

        wallets = await self._client.select("user_wallets", {"user_id": eq(user_id)}, limit=1)
        if wallets:
            logger.info("No active competition for %s, using wallet", user_id)
            return AccountContext(account_id=None, record=wallets[0])

        logger.warning("No trading account found for user %s", user_id)
        return None

    def _scope(self, context: AccountContext) -> dict[str, str]:
        if context.account_id:
            return context.row_filter
        return {"user_id": eq(self._client.user_id)}

    async def _read_context(self, account_id: str | None) -> AccountContext | None:
        """Context for a read; None when missing or addressed to another account."""
        context = await self.account_context()
        if context is None:
            return None
        if account_id is not None and account_id != context.public_id:
            logger.warning("Read for foreign account %s ignored", account_id)
            return None
        return context

    # =========================================================================
    # Reads
    # =========================================================================

    async def accounts_metainfo(self) -> list[AccountMeta]:
        context = await self.account_context()
        account_id = context.public_id if context is not None else DEFAULT_ACCOUNT_ID
        return [AccountMeta(id=account_id, name=ACCOUNT_NAME)]

    def default_state(self) -> AccountState:
        return AccountState.default(self._default_balance, self._margin_level_sentinel)

    async def get_account_state(self, account_id: str | None = None) -> AccountState:
        """
        Balance, equity and margin for the account.

        Unrealized P&L is recomputed from live quotes; used margin is
        abs(qty) * contract_size / leverage summed over open positions.
        Any failure returns the default state.
        """
        context = await self._read_context(account_id)
        if context is None:
            return self.default_state()

        try:
            record = context.record
            balance = _balance(record, self._default_balance)
            realized = float(record.get("realized_pnl") or 0)
            positions = await self._fetch_positions(context)
        except READ_ERRORS as e:
            logger.warning("Account state unavailable, using default: %s", e)
            return self.default_state()

        unrealized = sum(position.unrealized_pnl for position in positions)
        used_margin = sum(self._margin(position) for position in positions)
        return AccountState.compute(
            balance,
            unrealized_pnl=unrealized,
            used_margin=used_margin,
            realized_pnl=realized,
            margin_level_sentinel=self._margin_level_sentinel,
        )

    async def get_positions(self, account_id: str | None = None) -> list[CanonicalPosition]:
        context = await self._read_context(account_id)
        if context is None:
            return []
        try:
            return await self._fetch_positions(context)
        except READ_ERRORS as e:
            logger.warning("Positions unavailable: %s", e)
            return []

    async def get_orders(self, account_id: str | None = None) -> list[CanonicalOrder]:
        context = await self._read_context(account_id)
        if context is None:
            return []
        try:
            return await self._fetch_orders(context)
        except READ_ERRORS as e:
            logger.warning("Orders unavailable: %s", e)
            return []

    # =========================================================================
    # Command lookups
    # =========================================================================

    async def lookup_order(
        self,
        order_id: str,
        context: AccountContext | None,
    ) -> CanonicalOrder | None:
        """
        Read one order row directly.

        Returns:
            None only when the backend confirms no such order exists for the
            account (or there is no account at all)

        Raises:
            UpstreamUnavailable: The read failed or the row is unreadable
        """
        if context is None:
            return None
        row = await self._lookup_row(
            "orders",
            order_id,
            {**self._scope(context), "id": eq(order_id)},
        )
        if row is None:
            return None
        try:
            return order_from_row(row, symbol_lookup=self._directory.symbol_for)
        except ROW_ERRORS as e:
            raise UpstreamUnavailable(f"Unreadable order {order_id}: {e}", source="broker") from e

    async def lookup_position(
        self,
        position_id: str,
        context: AccountContext | None,
    ) -> CanonicalPosition | None:
        """Read one open position row directly. Same contract as lookup_order."""
        if context is None:
            return None
        row = await self._lookup_row(
            "positions",
            position_id,
            {**self._scope(context), "id": eq(position_id), "status": eq(OPEN_POSITION_STATUS)},
        )
        if row is None:
            return None
        try:
            return self._position(row)
        except ROW_ERRORS as e:
            raise UpstreamUnavailable(
                f"Unreadable position {position_id}: {e}", source="broker"
            ) from e

    @property
    def backend_configured(self) -> bool:
        return self._client.is_configured

    def invalidate(self) -> None:
        """Drop the cached account context; the next call reloads it."""
        self._context = None

    # =========================================================================
    # Internals
    # =========================================================================

    async def _lookup_row(
        self,
        table: str,
        row_id: str,
        filters: dict[str, str],
    ) -> dict[str, Any] | None:
        rows = await self._client.select(table, filters, columns="*,instruments(symbol)", limit=1)
        for row in rows:
            if str(row.get("id")) == row_id:
                return row
        return None

    def _position(self, row: dict[str, Any]) -> CanonicalPosition:
        symbol = row_symbol(row, self._directory.symbol_for)
        last = self._quote_cache.get(symbol)
        return position_from_row(
            row,
            current_price=last.mid if last is not None else None,
            symbol_lookup=self._directory.symbol_for,
            default_leverage=self._default_leverage,
        )

    async def _fetch_positions(self, context: AccountContext) -> list[CanonicalPosition]:
        rows = await self._client.select(
            "positions",
            {**self._scope(context), "status": eq(OPEN_POSITION_STATUS)},
            columns="*,instruments(symbol)",
        )
        positions: list[CanonicalPosition] = []
        for row in rows:
            try:
                positions.append(self._position(row))
            except ROW_ERRORS as e:
                logger.warning("Skipping bad position row %s: %s", row.get("id"), e)
        return positions

    async def _fetch_orders(self, context: AccountContext) -> list[CanonicalOrder]:
        rows = await self._client.select(
            "orders",
            self._scope(context),
            columns="*,instruments(symbol)",
            order="created_at.desc",
            limit=ORDERS_LIMIT,
        )
        orders: list[CanonicalOrder] = []
        for row in rows:
            try:
                orders.append(order_from_row(row, symbol_lookup=self._directory.symbol_for))
            except ROW_ERRORS as e:
                logger.warning("Skipping bad order row %s: %s", row.get("id"), e)
        return orders

    def _margin(self, position: CanonicalPosition) -> float:
        info = get_symbol(position.symbol)
        contract_size = info.contract_size if info is not None else 1.0
        return abs(position.qty) * contract_size / position.leverage


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)
