"""
Datafeed API routes.

Provides endpoints for:
- Datafeed configuration, symbol search and resolution
- Historical bars and quote snapshots
- The backend price-change webhook
- A WebSocket stream for realtime bars and quotes
"""

import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from arena_engine.api.services import get_datafeed, http_error
from arena_engine.catalog.models import SymbolSearchResult
from arena_engine.errors import ArenaError, ValidationError
from arena_engine.logging import get_logger
from arena_engine.market_data.channel import get_price_channel_hub
from arena_engine.market_data.models import Bar, DatafeedConfiguration, QuoteSnapshot

router = APIRouter(prefix="/datafeed", tags=["Datafeed"])
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HistoryResponse(BaseModel):
    """Historical bars, bar time in milliseconds."""

    s: str = Field(..., description="ok or no_data")
    bars: list[dict[str, Any]] = Field(default_factory=list)
    source: str = "none"


class QuotesResponse(BaseModel):
    s: str = "ok"
    d: list[QuoteSnapshot] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    delivered: int


# =============================================================================
# Routes
# =============================================================================


@router.get("/config", response_model=DatafeedConfiguration)
async def get_config() -> DatafeedConfiguration:
    """Datafeed capabilities (resolutions, exchanges, symbol types)."""
    return await get_datafeed().on_ready()


@router.get("/search", response_model=list[SymbolSearchResult])
async def search(
    query: str = Query(default="", description="Substring of ticker or description"),
    exchange: str = Query(default=""),
    type: str = Query(default="", description="Symbol type filter"),
    limit: int = Query(default=30, ge=1, le=100),
) -> list[SymbolSearchResult]:
    results = await get_datafeed().search_symbols(query, exchange, type)
    return results[:limit]


@router.get("/symbols")
async def resolve(symbol: str = Query(..., description="Ticker, optionally EXCHANGE:TICKER")) -> dict:
    """Resolve a symbol to chart metadata. Unknown symbols are 404."""
    try:
        info = await get_datafeed().resolve_symbol(symbol)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return info.to_chart_payload()


@router.get("/history", response_model=HistoryResponse)
async def history(
    symbol: str = Query(...),
    resolution: str = Query(...),
    from_ts: int = Query(..., alias="from", description="Range start (epoch seconds)"),
    to_ts: int = Query(..., alias="to", description="Range end (epoch seconds)"),
) -> HistoryResponse:
    """Bars for [from, to]."""
    datafeed = get_datafeed()
    try:
        info = await datafeed.resolve_symbol(symbol)
        result = await datafeed.get_bars(info, resolution, from_ts, to_ts)
    except ArenaError as e:
        raise http_error(e) from e

    if result.no_data:
        return HistoryResponse(s="no_data")
    return HistoryResponse(
        s="ok",
        bars=[bar.to_chart_payload() for bar in result.bars],
        source=result.source,
    )


@router.get("/quotes", response_model=QuotesResponse)
async def quotes(symbols: str = Query(..., description="Comma-separated tickers")) -> QuotesResponse:
    requested = [s.strip() for s in symbols.split(",") if s.strip()]
    return QuotesResponse(d=await get_datafeed().get_quotes(requested))


@router.post("/realtime/market-prices", response_model=WebhookResponse)
async def market_prices_webhook(payload: dict[str, Any]) -> WebhookResponse:
    """
    Receiver for backend database webhooks on `market_prices_latest`.

    Fans the changed row out to realtime bar subscriptions on that instrument.
    """
    delivered = await get_price_channel_hub().handle_change(payload)
    return WebhookResponse(delivered=delivered)


# =============================================================================
# WebSocket Stream
# =============================================================================


class StreamSession:
    """
    Realtime subscriptions owned by one WebSocket connection.

    Client ids are namespaced per connection, and everything is unsubscribed
    when the socket goes away.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._prefix = uuid.uuid4().hex[:8]
        self._bar_ids: set[str] = set()
        self._quote_ids: set[str] = set()

    def _scoped(self, client_id: str) -> str:
        return f"{self._prefix}:{client_id}"

    async def handle(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        client_id = str(message.get("id") or uuid.uuid4().hex)
        datafeed = get_datafeed()

        if action == "subscribe_bars":
            info = await datafeed.resolve_symbol(str(message.get("symbol", "")))
            resolution = str(message.get("resolution", ""))

            async def on_bar(bar: Bar) -> None:
                await self._websocket.send_json(
                    {"type": "bar", "id": client_id, "bar": bar.to_chart_payload()}
                )

            scoped = await datafeed.subscribe_bars(info, resolution, on_bar, self._scoped(client_id))
            self._bar_ids.add(scoped)
            await self._ack(action, client_id)

        elif action == "unsubscribe_bars":
            scoped = self._scoped(client_id)
            await datafeed.unsubscribe_bars(scoped)
            self._bar_ids.discard(scoped)
            await self._ack(action, client_id)

        elif action == "subscribe_quotes":

            async def on_quotes(snapshots: list[QuoteSnapshot]) -> None:
                await self._websocket.send_json(
                    {
                        "type": "quotes",
                        "id": client_id,
                        "data": [snapshot.model_dump() for snapshot in snapshots],
                    }
                )

            scoped = await datafeed.subscribe_quotes(
                list(message.get("symbols") or []),
                list(message.get("fast_symbols") or []),
                on_quotes,
                self._scoped(client_id),
            )
            self._quote_ids.add(scoped)
            await self._ack(action, client_id)

        elif action == "unsubscribe_quotes":
            scoped = self._scoped(client_id)
            await datafeed.unsubscribe_quotes(scoped)
            self._quote_ids.discard(scoped)
            await self._ack(action, client_id)

        else:
            raise ValidationError(f"Unknown action: {action}")

    async def _ack(self, action: str, client_id: str) -> None:
        await self._websocket.send_json({"type": "ack", "action": action, "id": client_id})

    async def close(self) -> None:
        datafeed = get_datafeed()
        for scoped in self._bar_ids:
            await datafeed.unsubscribe_bars(scoped)
        for scoped in self._quote_ids:
            await datafeed.unsubscribe_quotes(scoped)
        self._bar_ids.clear()
        self._quote_ids.clear()


@router.websocket("/stream")
async def stream(websocket: WebSocket) -> None:
    """
    Realtime bars and quotes.

    Client messages: {"action": subscribe_bars|unsubscribe_bars|subscribe_quotes|unsubscribe_quotes, "id": ..., ...}
    Server messages: ack, bar, quotes, error
    """
    await websocket.accept()
    session = StreamSession(websocket)
    logger.info("Datafeed stream connected")
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "id": None, "message": "Expected a JSON object"})
                continue
            try:
                await session.handle(message)
            except ArenaError as e:
                await websocket.send_json({"type": "error", "id": message.get("id"), "message": str(e)})
    except WebSocketDisconnect:
        logger.info("Datafeed stream disconnected")
    finally:
        await session.close()
