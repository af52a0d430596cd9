"""
Backend ledger access: PostgREST record store and edge functions.
"""

from arena_engine.backend.client import BackendClient, get_backend_client, reset_backend_client
from arena_engine.backend.instruments import InstrumentDirectory

__all__ = [
    "BackendClient",
    "InstrumentDirectory",
    "get_backend_client",
    "reset_backend_client",
]
