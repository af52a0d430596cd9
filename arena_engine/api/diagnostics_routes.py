"""
Diagnostics API routes.

Provides:
- Recent in-memory log records
- Quote source, cache and subscription stats
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from arena_engine.api.services import get_datafeed, get_multiplexer
from arena_engine.backend.client import get_backend_client
from arena_engine.logging import get_in_memory_logs, get_logger
from arena_engine.market_data.channel import get_price_channel_hub

router = APIRouter(prefix="/diagnostics", tags=["Diagnostics"])
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class LogsResponse(BaseModel):
    logs: list[dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class QuoteDiagnostics(BaseModel):
    """Quote pipeline diagnostics."""

    multiplexer: dict[str, Any] = Field(default_factory=dict)
    cached_quotes: dict[str, dict[str, Any]] = Field(default_factory=dict)
    bar_subscriptions: int = 0
    quote_listeners: int = 0
    dropped_ticks: int = 0
    discarded_deliveries: int = 0
    channel: dict[str, int] = Field(default_factory=dict)
    backend: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


# =============================================================================
# Routes
# =============================================================================


@router.get("/logs", response_model=LogsResponse)
async def get_logs(
    level: str = Query(default="INFO", description="Minimum level"),
    limit: int = Query(default=50, ge=1, le=1000),
) -> LogsResponse:
    logs = get_in_memory_logs(level=level, limit=limit)
    return LogsResponse(logs=logs, count=len(logs))


@router.get("/quotes", response_model=QuoteDiagnostics)
async def get_quote_diagnostics() -> QuoteDiagnostics:
    """Which sources are answering, what is cached, who is subscribed."""
    multiplexer = get_multiplexer()
    datafeed = get_datafeed()
    bars = datafeed.bar_registry
    return QuoteDiagnostics(
        multiplexer=multiplexer.stats,
        cached_quotes={
            symbol: tick.model_dump() for symbol, tick in multiplexer.quote_cache.snapshot().items()
        },
        bar_subscriptions=len(bars),
        quote_listeners=len(datafeed.quote_registry),
        dropped_ticks=bars.aggregator.dropped_ticks,
        discarded_deliveries=bars.discarded + datafeed.quote_registry.discarded,
        channel=get_price_channel_hub().stats,
        backend=get_backend_client().stats,
        timestamp=datetime.now(UTC).isoformat(),
    )
