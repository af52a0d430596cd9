"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("ARENA_ENV", "development")

from arena_engine.backend.client import BackendClient  # noqa: E402
from arena_engine.config import Settings, get_settings  # noqa: E402

BACKEND_URL = "https://backend.test"
REST_URL = f"{BACKEND_URL}/rest/v1"
FUNCTIONS_URL = f"{BACKEND_URL}/functions/v1"


def rows_by_table(tables: dict[str, Any]) -> Callable[..., Any]:
    """
    Build a `select` side effect that answers per table.

    Values may be a row list or an exception instance to raise.
    """

    async def select(table: str, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        result = tables.get(table, [])
        if isinstance(result, Exception):
            raise result
        return result

    return select


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Ensure no real credentials leak into tests from the environment."""
    backend_vars = [
        "SUPABASE_URL",
        "SUPABASE_ANON_KEY",
        "ARENA_USER_ID",
        "LIVE_QUOTE_URL",
        "LIVE_QUOTE_API_KEY",
        "SYNTHETIC_SEED",
    ]
    for var in backend_vars:
        monkeypatch.delenv(var, raising=False)

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module-level singletons between tests."""
    yield

    from arena_engine.api.services import reset_services

    reset_services()


@pytest.fixture
def backend_settings() -> Settings:
    """Settings pointing at a fake backend, tuned so tests never wait."""
    return Settings(
        _env_file=None,
        supabase_url=f"{BACKEND_URL}/",
        supabase_key="anon-test-key",
        user_id="user-1",
        backend_max_retries=0,
        backend_rate_limit_rps=100.0,
        backend_rate_limit_burst=100,
        synthetic_seed=7,
    )


@pytest.fixture
def offline_settings() -> Settings:
    """Settings with no backend at all."""
    return Settings(_env_file=None, synthetic_seed=7)


@pytest.fixture
def backend_client(backend_settings: Settings) -> BackendClient:
    return BackendClient(backend_settings)


@pytest.fixture
def mock_client() -> MagicMock:
    """BackendClient double with async record-store methods."""
    client = MagicMock(spec=BackendClient)
    client.is_configured = True
    client.user_id = "user-1"
    client.select = AsyncMock(return_value=[])
    client.update = AsyncMock(return_value=[])
    client.invoke = AsyncMock(return_value={})
    return client
