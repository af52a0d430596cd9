"""
Async client for the backend record store.

Talks to a PostgREST endpoint (`/rest/v1/<table>`) and to edge functions
(`/functions/v1/<name>`). Handles rate limiting, retries and redacted logging.
"""

import asyncio
import time
from logging import Logger
from typing import Any

import httpx

from arena_engine.backend.rate_limit import BackendThrottle, parse_retry_after
from arena_engine.config import Settings
from arena_engine.errors import BackendAuthError, UpstreamUnavailable
from arena_engine.logging import get_logger, redact_sensitive

REST_PREFIX = "/rest/v1"
FUNCTIONS_PREFIX = "/functions/v1"


def eq(value: Any) -> str:
    """PostgREST equality filter."""
    return f"eq.{value}"


def in_(values: list[Any]) -> str:
    return "in.(" + ",".join(str(v) for v in values) + ")"


class BackendClient:
    """
    Async client for the backend ledger.

    Handles:
    - apikey / bearer headers on every call
    - Token bucket throttle plus Retry-After cooldowns announced on 429
    - Retry/backoff for 429, 5xx and transport errors, unless the caller opts out
    - Raising UpstreamUnavailable once retries are exhausted
    """

    def __init__(self, settings: Settings, logger: Logger | None = None) -> None:
        """
        Initialize backend client.

        Args:
            settings: Application settings
            logger: Logger instance (defaults to this module's logger)
        """
        self._settings = settings
        self._logger = logger or get_logger(__name__)
        self._base_url = settings.supabase_url
        self._timeout = settings.backend_request_timeout
        self._max_retries = settings.backend_max_retries

        self._throttle = BackendThrottle(
            requests_per_second=settings.backend_rate_limit_rps,
            burst=settings.backend_rate_limit_burst,
        )

        self._client: httpx.AsyncClient | None = None

        self._last_latency_ms: int = 0
        self._failures: int = 0

    @property
    def is_configured(self) -> bool:
        return self._settings.has_backend_credentials

    @property
    def user_id(self) -> str | None:
        return self._settings.user_id

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "configured": self.is_configured,
            "last_request_latency_ms": self._last_latency_ms,
            "failures": self._failures,
            "throttle": self._throttle.stats,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self, prefer_representation: bool = False) -> dict[str, str]:
        key = self._settings.supabase_key.get_secret_value() if self._settings.supabase_key else ""
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer_representation:
            headers["Prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: dict[str, Any] | None = None,
        prefer_representation: bool = False,
        retry: bool = True,
    ) -> httpx.Response:
        """
        Make an HTTP request to the backend with throttling and retries.

        Args:
            retry: Retry 429, 5xx and transport failures. Non-idempotent
                writes pass False so an ambiguous failure is never replayed.

        Returns:
            The successful (2xx) HTTP response

        Raises:
            BackendAuthError: 401/403 from the backend
            UpstreamUnavailable: Not configured, non-retryable error or retries exhausted
        """
        if not self.is_configured:
            raise UpstreamUnavailable("Backend not configured", source="backend")

        url = f"{self._base_url}{path}"
        headers = self._headers(prefer_representation)
        attempts = self._max_retries + 1 if retry else 1

        self._logger.debug(
            "Backend request: %s",
            redact_sensitive(
                {"method": method, "url": url, "params": params, "headers": headers}
            ),
        )

        last_error: Exception | None = None
        for attempt in range(attempts):
            backoff: float = 2**attempt
            try:
                wait_time = await self._throttle.acquire()
                if wait_time > 0:
                    self._logger.debug("Throttle waited %.2fs", wait_time)

                client = await self._get_client()
                start_time = time.perf_counter()
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    json=json_body,
                    params=params,
                )
                self._last_latency_ms = int((time.perf_counter() - start_time) * 1000)

                if response.status_code in (401, 403):
                    self._failures += 1
                    raise BackendAuthError(
                        "Backend rejected credentials",
                        status_code=response.status_code,
                        source="backend",
                    )

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = UpstreamUnavailable(
                        f"HTTP {response.status_code}",
                        status_code=response.status_code,
                        source="backend",
                    )
                    retry_after = None
                    if response.status_code == 429:
                        retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    if retry_after is not None:
                        # The throttle holds every caller, so no extra sleep here
                        backoff = self._throttle.cool_down(retry_after)
                    self._logger.warning(
                        "Backend %s %s returned %d, backing off %.1fs (attempt %d/%d)",
                        method,
                        path,
                        response.status_code,
                        backoff,
                        attempt + 1,
                        attempts,
                    )
                    if attempt < attempts - 1 and retry_after is None:
                        await asyncio.sleep(backoff)
                    continue

                if response.status_code >= 400:
                    self._failures += 1
                    raise UpstreamUnavailable(
                        f"Backend {method} {path} failed: {_error_message(response)}",
                        status_code=response.status_code,
                        source="backend",
                    )

                return response

            except httpx.TimeoutException as e:
                last_error = e
                self._logger.warning(
                    "Backend timeout on %s %s, backing off %ds (attempt %d/%d)",
                    method,
                    path,
                    backoff,
                    attempt + 1,
                    attempts,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(backoff)
                continue

            except httpx.RequestError as e:
                last_error = e
                self._logger.warning(
                    "Backend request error: %s, backing off %ds (attempt %d/%d)",
                    str(e),
                    backoff,
                    attempt + 1,
                    attempts,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(backoff)
                continue

        self._failures += 1
        status_code = getattr(last_error, "status_code", None)
        raise UpstreamUnavailable(
            f"Backend {method} {path} failed after {attempts} attempt(s): {last_error}",
            status_code=status_code,
            source="backend",
        )

    # =========================================================================
    # Record store
    # =========================================================================

    async def select(
        self,
        table: str,
        filters: dict[str, str] | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read rows from a table.

        Args:
            table: Table name
            filters: Column -> PostgREST operator expression (e.g. {"id": "eq.42"})
            columns: Select expression, may embed related tables
            order: Order expression (e.g. "ts_open.asc")
            limit: Maximum rows

        Returns:
            List of row dicts
        """
        params: dict[str, Any] = {"select": columns}
        if filters:
            params.update(filters)
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit

        response = await self._request("GET", f"{REST_PREFIX}/{table}", params=params)
        return _rows(response)

    async def update(
        self,
        table: str,
        filters: dict[str, str],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """PATCH matching rows, returning the updated representation."""
        if not filters:
            raise ValueError("Refusing to update without filters")
        response = await self._request(
            "PATCH",
            f"{REST_PREFIX}/{table}",
            params=filters,
            json_body=values,
            prefer_representation=True,
        )
        return _rows(response)

    # =========================================================================
    # Edge functions
    # =========================================================================

    async def invoke(
        self,
        function: str,
        body: dict[str, Any],
        *,
        retry: bool = True,
    ) -> dict[str, Any]:
        """
        Call an edge function.

        Order-creating functions pass retry=False: a timeout or 5xx after the
        backend committed must not be replayed into a second trade.

        Raises:
            UpstreamUnavailable: HTTP failure or an `error` field in the payload
        """
        response = await self._request(
            "POST",
            f"{FUNCTIONS_PREFIX}/{function}",
            json_body=body,
            retry=retry,
        )
        try:
            data = response.json()
        except ValueError:
            raise UpstreamUnavailable(
                f"Edge function {function} returned invalid JSON",
                status_code=response.status_code,
                source=function,
            ) from None
        if not isinstance(data, dict):
            return {"data": data}
        if data.get("error"):
            raise UpstreamUnavailable(
                f"Edge function {function} failed: {data['error']}",
                status_code=response.status_code,
                source=function,
            )
        return data


def _rows(response: httpx.Response) -> list[dict[str, Any]]:
    if not response.content:
        return []
    data = response.json()
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)


# Global client instance
_backend_client: BackendClient | None = None


def get_backend_client(settings: Settings | None = None) -> BackendClient:
    """Get or create the backend client singleton."""
    global _backend_client
    if _backend_client is None:
        from arena_engine.config import get_settings

        _backend_client = BackendClient(settings or get_settings())
    return _backend_client


def reset_backend_client() -> None:
    """Reset backend client (for testing)."""
    global _backend_client
    _backend_client = None
