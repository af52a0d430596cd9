"""
Lazily-built service singletons shared by the API routers.

One backend client, instrument directory, multiplexer, datafeed and broker
per process. Tests reset them with `reset_services()`.
"""

from fastapi import HTTPException

from arena_engine.backend.client import get_backend_client, reset_backend_client
from arena_engine.backend.instruments import InstrumentDirectory
from arena_engine.broker.terminal import ArenaBroker
from arena_engine.config import get_settings
from arena_engine.errors import (
    ArenaError,
    NotFoundError,
    StateConflict,
    UpstreamUnavailable,
    ValidationError,
)
from arena_engine.logging import get_logger
from arena_engine.market_data.channel import get_price_channel_hub, reset_price_channel_hub
from arena_engine.market_data.datafeed import ArenaDatafeed
from arena_engine.market_data.history import HistoricalBarService
from arena_engine.market_data.models import get_quote_cache, reset_quote_cache
from arena_engine.market_data.multiplexer import QuoteMultiplexer, build_multiplexer

logger = get_logger(__name__)

_directory: InstrumentDirectory | None = None
_multiplexer: QuoteMultiplexer | None = None
_datafeed: ArenaDatafeed | None = None
_broker: ArenaBroker | None = None


def get_instrument_directory() -> InstrumentDirectory:
    global _directory
    if _directory is None:
        _directory = InstrumentDirectory(get_backend_client())
    return _directory


def get_multiplexer() -> QuoteMultiplexer:
    """Get or create the quote multiplexer singleton."""
    global _multiplexer
    if _multiplexer is None:
        _multiplexer = build_multiplexer(
            get_settings(),
            get_backend_client(),
            get_instrument_directory(),
            get_quote_cache(),
        )
    return _multiplexer


def get_datafeed() -> ArenaDatafeed:
    """Get or create the datafeed singleton."""
    global _datafeed
    if _datafeed is None:
        settings = get_settings()
        history = HistoricalBarService(
            get_backend_client(),
            get_instrument_directory(),
            get_quote_cache(),
            max_bars=settings.history_max_bars,
            store_limit=settings.history_store_limit,
            seed=settings.synthetic_seed,
        )
        _datafeed = ArenaDatafeed(
            get_multiplexer(),
            history,
            get_price_channel_hub(),
            get_instrument_directory(),
        )
    return _datafeed


def get_broker() -> ArenaBroker:
    """Get or create the broker singleton."""
    global _broker
    if _broker is None:
        _broker = ArenaBroker.create(
            get_settings(),
            get_backend_client(),
            get_instrument_directory(),
            get_multiplexer(),
        )
    return _broker


async def close_services() -> None:
    """Tear down subscriptions and HTTP clients at shutdown."""
    if _datafeed is not None:
        _datafeed.close()
    if _multiplexer is not None:
        await _multiplexer.close()
    await get_backend_client().close()


def reset_services() -> None:
    """Drop every singleton (for testing)."""
    global _directory, _multiplexer, _datafeed, _broker
    _directory = None
    _multiplexer = None
    _datafeed = None
    _broker = None
    reset_backend_client()
    reset_price_channel_hub()
    reset_quote_cache()


def http_error(error: ArenaError) -> HTTPException:
    """Map an engine error onto an HTTP error response."""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, StateConflict):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, UpstreamUnavailable):
        logger.warning("Upstream failure surfaced to client: %s", error)
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
