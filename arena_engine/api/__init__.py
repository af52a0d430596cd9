"""
FastAPI route modules for the arena engine.
"""

from arena_engine.api.broker_routes import router as broker_router
from arena_engine.api.datafeed_routes import router as datafeed_router
from arena_engine.api.diagnostics_routes import router as diagnostics_router

__all__ = ["broker_router", "datafeed_router", "diagnostics_router"]
