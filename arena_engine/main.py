"""
Arena Engine - FastAPI Application

Main entry point for the trading-terminal sidecar.
Serves the chart datafeed and trading broker over REST and WebSocket.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from arena_engine import __version__
from arena_engine.api.broker_routes import router as broker_router
from arena_engine.api.datafeed_routes import router as datafeed_router
from arena_engine.api.diagnostics_routes import router as diagnostics_router
from arena_engine.api.services import close_services
from arena_engine.config import get_settings
from arena_engine.logging import clear_request_id, get_logger, set_request_id, setup_logging

# Setup logging
setup_logging(level=get_settings().log_level, json_output=get_settings().log_json)
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float
    backend_configured: bool
    live_quotes_configured: bool


# =============================================================================
# Application State
# =============================================================================


class AppState:
    """Application state container."""

    def __init__(self) -> None:
        self.start_time: datetime = datetime.now(UTC)


state = AppState()


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info("Starting Arena Engine v%s (%s)", __version__, settings.env.value)
    logger.info("Server: http://%s:%d", settings.host, settings.port)
    if not settings.has_backend_credentials:
        logger.warning("Backend credentials not set; serving synthetic data and default account")
    logger.debug("Config: %s", settings.get_redacted_config())

    yield

    # Shutdown
    logger.info("Shutting down Arena Engine")
    await close_services()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Arena Engine",
    description="Market data and broker adapter for the competition trading terminal",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173",
        "http://localhost:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag every log line of a request with its correlation id."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        clear_request_id()
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(datafeed_router)
app.include_router(broker_router)
app.include_router(diagnostics_router)


# =============================================================================
# REST Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Health check endpoint.

    Returns current status, version, uptime and which upstreams are configured.
    """
    settings = get_settings()
    now = datetime.now(UTC)
    uptime = (now - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        time=now.isoformat(),
        uptime_seconds=round(uptime, 2),
        backend_configured=settings.has_backend_credentials,
        live_quotes_configured=settings.has_live_quotes,
    )


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API info."""
    return {
        "name": "Arena Engine",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


def main() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "arena_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
