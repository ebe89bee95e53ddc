"""Rate limiting utilities for Strava API calls.

Strava publishes two budgets (15-minute and daily) through the
``X-RateLimit-Usage`` / ``X-RateLimit-Limit`` headers. The limiter records the
latest values so they can be surfaced to observers, and pauses the next
request after a 429 or when the short window is nearly used up.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Mapping, Optional

from ..config import (
    RATE_LIMIT_JITTER_RANGE,
    RATE_LIMIT_NEAR_LIMIT_BUFFER,
    RATE_LIMIT_THROTTLE_SECONDS,
)

__all__ = ["RateLimiter"]

LOGGER = logging.getLogger(__name__)


def _parse_pair(value: object) -> tuple[Optional[int], Optional[int]]:
    parts = str(value).split(",")
    if len(parts) != 2:
        raise ValueError(f"expected 'short,daily' pair, got {value!r}")
    return int(parts[0]), int(parts[1])


class RateLimiter:
    """Soft throttle with optional jitter that tracks Strava's published usage."""

    def __init__(
        self,
        *,
        jitter_range: tuple[float, float] = RATE_LIMIT_JITTER_RANGE,
        near_limit_buffer: int = RATE_LIMIT_NEAR_LIMIT_BUFFER,
        throttle_seconds: float = RATE_LIMIT_THROTTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._jitter_range = jitter_range
        self._near_limit_buffer = near_limit_buffer
        self._throttle_seconds = throttle_seconds
        self._sleep = sleep
        self._monotonic = monotonic
        self._throttle_until = 0.0
        self._short_used: Optional[int] = None
        self._short_limit: Optional[int] = None
        self._daily_used: Optional[int] = None
        self._daily_limit: Optional[int] = None
        self._requests = 0

    def before_request(self) -> None:
        with self._lock:
            self._requests += 1
            wait_for = max(0.0, self._throttle_until - self._monotonic())
        if wait_for > 0:
            LOGGER.info("Rate limiter pausing %.1fs before next Strava call", wait_for)
            self._sleep(wait_for)
        lo, hi = self._jitter_range
        if hi > 0:
            # Random jitter smooths bursts; not used for security-sensitive logic.
            self._sleep(random.uniform(lo, hi))  # nosec B311

    def after_response(
        self, headers: Mapping[str, object] | None, status_code: int | None
    ) -> bool:
        """Record usage headers; return True when a throttle was applied."""

        throttle = False
        if headers:
            usage = headers.get("X-RateLimit-Usage")
            limit = headers.get("X-RateLimit-Limit")
            if usage and limit:
                try:
                    short_used, daily_used = _parse_pair(usage)
                    short_limit, daily_limit = _parse_pair(limit)
                except (ValueError, TypeError) as exc:
                    LOGGER.debug(
                        "Failed to parse rate limit headers usage=%s limit=%s: %s",
                        usage,
                        limit,
                        exc,
                    )
                else:
                    with self._lock:
                        self._short_used, self._daily_used = short_used, daily_used
                        self._short_limit, self._daily_limit = short_limit, daily_limit
                    if (
                        short_used is not None
                        and short_limit is not None
                        and short_used >= max(short_limit - self._near_limit_buffer, 0)
                    ):
                        throttle = True
                        LOGGER.info(
                            "Approaching short-window limit (%s/%s). Throttling %ss.",
                            short_used,
                            short_limit,
                            self._throttle_seconds,
                        )
        if status_code == 429:
            throttle = True
            LOGGER.warning("Rate limit: 429. Throttling %ss.", self._throttle_seconds)
        if throttle:
            with self._lock:
                self._throttle_until = self._monotonic() + self._throttle_seconds
        return throttle

    def snapshot(self) -> dict[str, Optional[int]]:
        """Return the latest upstream usage figures (``None`` until first seen)."""

        with self._lock:
            return {
                "shortUsed": self._short_used,
                "shortLimit": self._short_limit,
                "dailyUsed": self._daily_used,
                "dailyLimit": self._daily_limit,
                "requests": self._requests,
            }
