"""
Price channel hub for push-style price updates.

The backend posts `market_prices_latest` row changes (database webhook
payloads) to the engine; the hub fans each change out to the listeners
registered for that row's instrument id.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from arena_engine.logging import get_logger

logger = get_logger(__name__)

PRICE_TABLE = "market_prices_latest"

PriceRowHandler = Callable[[dict[str, Any]], Awaitable[None]]


class ChannelListener:
    """Handle for one listener; `cancel()` detaches it synchronously."""

    def __init__(self, hub: "PriceChannelHub", instrument_id: str, handler: PriceRowHandler) -> None:
        self._hub = hub
        self.instrument_id = instrument_id
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._hub._remove(self)


class PriceChannelHub:
    """
    In-process pub/sub keyed by backend instrument id.

    Supports:
    - Multiple listeners per instrument
    - Synchronous detach via the listener handle
    - Listener failures isolated from each other
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[ChannelListener]] = {}
        self._received: int = 0
        self._ignored: int = 0

    def listen(self, instrument_id: str, handler: PriceRowHandler) -> ChannelListener:
        """
        Register a handler for price rows of one instrument.

        Args:
            instrument_id: Backend instrument id to filter on
            handler: Async handler receiving the new row

        Returns:
            Listener handle (cancel to detach)
        """
        listener = ChannelListener(self, instrument_id, handler)
        self._listeners.setdefault(instrument_id, []).append(listener)
        return listener

    def _remove(self, listener: ChannelListener) -> None:
        listeners = self._listeners.get(listener.instrument_id)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._listeners[listener.instrument_id]

    async def publish(self, instrument_id: str, row: dict[str, Any]) -> int:
        """
        Deliver a price row to every active listener for instrument_id.

        Returns:
            Number of listeners the row was handed to
        """
        listeners = [
            listener for listener in self._listeners.get(instrument_id, []) if listener.active
        ]
        if not listeners:
            return 0

        results = await asyncio.gather(
            *[listener.handler(row) for listener in listeners],
            return_exceptions=True,
        )
        for listener, result in zip(listeners, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Price listener for %s failed: %s",
                    listener.instrument_id,
                    result,
                )
        return len(listeners)

    async def handle_change(self, payload: dict[str, Any]) -> int:
        """
        Route a database webhook payload.

        Payload shape: {"type": INSERT|UPDATE|DELETE, "table": ..., "record": {...}, "old_record": {...}}
        """
        self._received += 1
        table = payload.get("table")
        record = payload.get("record")
        if table != PRICE_TABLE or payload.get("type") == "DELETE" or not isinstance(record, dict):
            self._ignored += 1
            return 0
        instrument_id = record.get("instrument_id")
        if instrument_id is None:
            self._ignored += 1
            return 0
        return await self.publish(str(instrument_id), record)

    def listener_count(self, instrument_id: str | None = None) -> int:
        if instrument_id is not None:
            return len(self._listeners.get(instrument_id, []))
        return sum(len(listeners) for listeners in self._listeners.values())

    @property
    def stats(self) -> dict[str, int]:
        return {
            "received": self._received,
            "ignored": self._ignored,
            "listeners": self.listener_count(),
        }


_hub: PriceChannelHub | None = None


def get_price_channel_hub() -> PriceChannelHub:
    """Get the price channel hub singleton."""
    global _hub
    if _hub is None:
        _hub = PriceChannelHub()
    return _hub


def reset_price_channel_hub() -> None:
    """Reset the hub (for testing)."""
    global _hub
    _hub = None
