"""
Subscription registry for realtime bar and quote delivery.

Each subscription id owns exactly one cleanup handle (a poll task or a price
channel listener). Unsubscribing cancels that handle before the entry is
removed, and any tick that arrives afterwards for the id is discarded.
"""

import inspect
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

from arena_engine.catalog.models import SymbolInfo
from arena_engine.logging import get_logger
from arena_engine.market_data.aggregator import BarAggregator
from arena_engine.market_data.models import Bar, BarUpdate, QuoteSnapshot, QuoteTick, resolution_seconds

logger = get_logger(__name__)

BarCallback = Callable[[Bar], Awaitable[None] | None]
QuoteCallback = Callable[[list[QuoteSnapshot]], Awaitable[None] | None]


class CleanupHandle(Protocol):
    """Anything that can be cancelled: asyncio.Task, ChannelListener."""

    def cancel(self) -> Any: ...


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class Subscription:
    """A realtime bar subscription."""

    id: str
    symbol: str
    resolution: str
    symbol_info: SymbolInfo
    on_bar: BarCallback
    last_bar: Bar | None = None
    handle: CleanupHandle | None = field(default=None, repr=False)
    delivered: int = 0

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


@dataclass
class QuoteSubscription:
    """A realtime quote listener."""

    id: str
    symbols: tuple[str, ...]
    fast_symbols: tuple[str, ...]
    on_update: QuoteCallback
    handle: CleanupHandle | None = field(default=None, repr=False)
    delivered: int = 0

    @property
    def all_symbols(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(self.fast_symbols + self.symbols))

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


EntryT = TypeVar("EntryT", Subscription, QuoteSubscription)


class _HandleRegistry(Generic[EntryT]):
    """Id -> entry map with single-handle ownership and idempotent removal."""

    def __init__(self) -> None:
        self._entries: dict[str, EntryT] = {}
        self._discarded: int = 0

    def _add(self, entry: EntryT) -> str:
        if entry.id in self._entries:
            logger.info("Replacing live subscription %s", entry.id)
            self.unsubscribe(entry.id)
        self._entries[entry.id] = entry
        return entry.id

    def attach(self, subscription_id: str, handle: CleanupHandle) -> bool:
        """
        Bind the cleanup handle for a subscription.

        Returns:
            False if the id is gone (the handle is cancelled immediately)

        Raises:
            ValueError: If the subscription already owns a handle
        """
        entry = self._entries.get(subscription_id)
        if entry is None:
            handle.cancel()
            return False
        if entry.handle is not None:
            raise ValueError(f"Subscription {subscription_id} already has a cleanup handle")
        entry.handle = handle
        return True

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Remove a subscription. Safe to call twice or with an unknown id.

        Returns:
            True if a live subscription was removed
        """
        entry = self._entries.get(subscription_id)
        if entry is None:
            return False
        entry.cancel()
        del self._entries[subscription_id]
        logger.debug("Unsubscribed %s", subscription_id)
        return True

    def get(self, subscription_id: str) -> EntryT | None:
        return self._entries.get(subscription_id)

    def ids(self) -> list[str]:
        return list(self._entries.keys())

    @property
    def discarded(self) -> int:
        """Deliveries dropped because their subscription was already gone."""
        return self._discarded

    def close(self) -> None:
        """Cancel and remove every subscription."""
        for subscription_id in list(self._entries):
            self.unsubscribe(subscription_id)

    def __contains__(self, subscription_id: object) -> bool:
        return subscription_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class SubscriptionRegistry(_HandleRegistry[Subscription]):
    """
    Owns realtime bar subscriptions and their aggregation state.

    Both delivery paths (poll timers and price channel pushes) funnel through
    `deliver`, so one subscription sees one ordered stream of bars.
    """

    def __init__(self, aggregator: BarAggregator | None = None) -> None:
        super().__init__()
        self._aggregator = aggregator or BarAggregator()

    @property
    def aggregator(self) -> BarAggregator:
        return self._aggregator

    def subscribe(
        self,
        symbol_info: SymbolInfo,
        resolution: str,
        on_bar: BarCallback,
        subscription_id: str | None = None,
    ) -> str:
        """
        Register a bar subscription.

        Args:
            symbol_info: Metadata resolved once for the life of the subscription
            resolution: Chart resolution (validated here)
            on_bar: Called with every updated bar
            subscription_id: Caller-chosen id; generated when omitted

        Returns:
            The subscription id
        """
        resolution_seconds(resolution)
        subscription = Subscription(
            id=subscription_id or uuid.uuid4().hex,
            symbol=symbol_info.symbol,
            resolution=resolution,
            symbol_info=symbol_info,
            on_bar=on_bar,
        )
        self._add(subscription)
        logger.info(
            "Subscribed %s to %s @ %s",
            subscription.id,
            subscription.symbol,
            resolution,
        )
        return subscription.id

    async def deliver(self, subscription_id: str, tick: QuoteTick) -> BarUpdate | None:
        """
        Aggregate a tick for one subscription and hand the bar to its callback.

        Returns:
            The BarUpdate delivered, or None if the subscription is gone or the
            tick was out of order
        """
        subscription = self._entries.get(subscription_id)
        if subscription is None:
            self._discarded += 1
            return None

        update = self._aggregator.apply(subscription, tick)
        if update is None:
            return None

        subscription.delivered += 1
        await _invoke(subscription.on_bar, update.bar)
        return update

    async def deliver_to_symbol(self, symbol: str, tick: QuoteTick) -> list[BarUpdate]:
        """Fan a tick out to every subscription on symbol."""
        updates: list[BarUpdate] = []
        for subscription_id in [s.id for s in self._entries.values() if s.symbol == symbol]:
            update = await self.deliver(subscription_id, tick)
            if update is not None:
                updates.append(update)
        return updates


class QuoteSubscriptionRegistry(_HandleRegistry[QuoteSubscription]):
    """Owns realtime quote listeners."""

    def subscribe(
        self,
        symbols: list[str],
        fast_symbols: list[str],
        on_update: QuoteCallback,
        listener_id: str | None = None,
    ) -> str:
        subscription = QuoteSubscription(
            id=listener_id or uuid.uuid4().hex,
            symbols=tuple(symbols),
            fast_symbols=tuple(fast_symbols),
            on_update=on_update,
        )
        self._add(subscription)
        logger.info("Quote listener %s on %s", subscription.id, ",".join(subscription.all_symbols))
        return subscription.id

    async def deliver(self, listener_id: str, snapshots: list[QuoteSnapshot]) -> bool:
        """
        Hand quote snapshots to a listener.

        Returns:
            False if the listener is gone (the snapshots are discarded)
        """
        subscription = self._entries.get(listener_id)
        if subscription is None:
            self._discarded += 1
            return False
        subscription.delivered += 1
        await _invoke(subscription.on_update, snapshots)
        return True
