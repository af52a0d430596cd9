"""
Request throttle for the backend ledger.

Two limits gate every call:
- a local token bucket (steady rate plus burst) so polling loops and chart
  refreshes cannot flood the record store
- a cooldown announced by the backend itself through `Retry-After` on 429
"""

import asyncio
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any


def parse_retry_after(value: str | None) -> float | None:
    """
    Seconds to wait according to a Retry-After header.

    Accepts delta-seconds ("3") and HTTP dates. Returns None when the header
    is missing or unreadable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class BackendThrottle:
    """
    Gate for outgoing backend requests.

    `acquire()` waits for whichever is later: the backend's cooldown or the
    next bucket token. `cool_down()` is fed from 429 responses.
    """

    def __init__(
        self,
        requests_per_second: float,
        burst: int,
        max_cooldown_s: float = 60.0,
    ) -> None:
        self.rate = requests_per_second
        self.burst = burst
        self.max_cooldown_s = max_cooldown_s

        self._tokens = float(burst)
        self._refilled_at = time.monotonic()
        self._cooldown_until = 0.0
        self._lock = asyncio.Lock()

        self._requests = 0
        self._waited_s = 0.0
        self._cooldowns = 0

    def _refill(self, now: float) -> None:
        self._tokens = min(float(self.burst), self._tokens + (now - self._refilled_at) * self.rate)
        self._refilled_at = now

    def _wait_needed(self, now: float) -> float:
        cooldown = self._cooldown_until - now
        deficit = (1.0 - self._tokens) / self.rate if self._tokens < 1.0 else 0.0
        return max(0.0, cooldown, deficit)

    async def acquire(self) -> float:
        """
        Take one request slot, waiting if needed.

        Returns:
            Seconds waited
        """
        async with self._lock:
            now = time.monotonic()
            self._refill(now)
            wait = self._wait_needed(now)
            if wait > 0:
                await asyncio.sleep(wait)
                self._refill(time.monotonic())
            self._tokens -= 1.0
            self._requests += 1
            self._waited_s += wait
            return wait

    def cool_down(self, seconds: float) -> float:
        """
        Hold all requests for `seconds` (capped at max_cooldown_s).

        An earlier, longer cooldown is never shortened.

        Returns:
            The cooldown applied
        """
        seconds = min(max(seconds, 0.0), self.max_cooldown_s)
        self._cooldown_until = max(self._cooldown_until, time.monotonic() + seconds)
        self._cooldowns += 1
        return seconds

    @property
    def cooling_down_s(self) -> float:
        return max(0.0, self._cooldown_until - time.monotonic())

    @property
    def stats(self) -> dict[str, Any]:
        self._refill(time.monotonic())
        return {
            "total_requests": self._requests,
            "total_wait_time_seconds": round(self._waited_s, 3),
            "available_tokens": round(max(self._tokens, 0.0), 2),
            "cooldowns": self._cooldowns,
            "cooling_down_seconds": round(self.cooling_down_s, 3),
            "rate_limit_rps": self.rate,
            "burst_limit": self.burst,
        }
