"""Small reusable retry policy.

Terminal errors short-circuit immediately; everything else is retried up to
``max_attempts`` with a delay that grows with the attempt number.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_delay(attempt: int) -> float:
    """Seconds to wait after failed ``attempt`` (1-based): 2, 4, 8, ..."""

    return float(2**attempt)


def linear_delay(attempt: int) -> float:
    return float(attempt * 2)


def never_terminal(_exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: Callable[[int], float] = exponential_delay
    is_terminal: Callable[[BaseException], bool] = never_terminal
    sleep: Callable[[float], None] = time.sleep

    def call(self, fn: Callable[[], T], *, label: str = "operation") -> T:
        """Run ``fn`` under this policy and return its result.

        Raises the terminal error as-is, or the last error once attempts are
        used up.
        """

        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if self.is_terminal(exc):
                    LOGGER.warning(
                        "%s hit terminal error on attempt %s/%s: %s",
                        label,
                        attempt,
                        attempts,
                        exc,
                    )
                    raise
                if attempt >= attempts:
                    LOGGER.error(
                        "%s failed after %s attempts: %s", label, attempts, exc
                    )
                    raise
                wait = self.delay(attempt)
                LOGGER.warning(
                    "%s attempt %s/%s failed (%s); retrying in %.1fs",
                    label,
                    attempt,
                    attempts,
                    exc,
                    wait,
                )
                self.sleep(wait)
        raise AssertionError("unreachable")  # pragma: no cover
