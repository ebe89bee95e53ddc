"""Strava resource client: list, fetch, update and create activities."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import requests

from ..config import (
    REQUEST_TIMEOUT,
    STRAVA_BACKOFF_MAX_SECONDS,
    STRAVA_BASE_URL,
    STRAVA_MAX_RETRIES,
)
from ..errors import StravaAPIError
from .rate_limiter import RateLimiter
from .response_handling import classify_response_status
from .session import create_default_session

if TYPE_CHECKING:
    from ..auth import TokenCache

LOGGER = logging.getLogger(__name__)


class StravaClient:
    """Encapsulates authenticated Strava calls with retries and rate limiting."""

    def __init__(
        self,
        token_cache: "TokenCache",
        *,
        session: requests.Session | None = None,
        limiter: RateLimiter | None = None,
        base_url: str = STRAVA_BASE_URL,
        timeout: int = REQUEST_TIMEOUT,
        max_retries: int = STRAVA_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token_cache = token_cache
        self._session = session or create_default_session()
        self.limiter = limiter or RateLimiter()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._sleep = sleep

    # -- Resources ---------------------------------------------------------
    def list_activities(
        self, *, page: int = 1, per_page: int = 200, after: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Return one page of the athlete's activities (newest first unless ``after``)."""

        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if after is not None:
            params["after"] = after
        data = self._request(
            "GET", "/athlete/activities", params=params, context="List activities"
        )
        if not isinstance(data, list):
            raise StravaAPIError(
                f"List activities returned {type(data).__name__}, expected list"
            )
        return data

    def get_activity(self, activity_id: int) -> Dict[str, Any]:
        data = self._request(
            "GET", f"/activities/{activity_id}", context=f"Activity {activity_id}"
        )
        return self._expect_object(data, f"Activity {activity_id}")

    def update_activity(self, activity_id: int, **fields: Any) -> Dict[str, Any]:
        """Partially update an activity (only the given fields are sent)."""

        data = self._request(
            "PUT",
            f"/activities/{activity_id}",
            json=fields,
            context=f"Update activity {activity_id}",
        )
        return self._expect_object(data, f"Update activity {activity_id}")

    def create_activity(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request(
            "POST", "/activities", json=payload, context="Create activity"
        )
        return self._expect_object(data, "Create activity")

    # -- Transport ---------------------------------------------------------
    @staticmethod
    def _expect_object(data: Any, context: str) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise StravaAPIError(
                f"{context} returned {type(data).__name__}, expected object"
            )
        return data

    def _request(
        self,
        method: str,
        path: str,
        *,
        context: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        backoff = 1.0
        attempt = 0
        attempted_refresh = False
        while True:
            attempt += 1
            can_retry = attempt < self._max_retries
            # AuthError propagates: a failed exchange is fatal for the pass.
            token = self.token_cache.get_access_token()
            self.limiter.before_request()
            try:
                response = self._session.request(
                    method,
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    params=params,
                    json=json,
                    timeout=self._timeout,
                )
            except requests.RequestException as exc:
                self.limiter.after_response(None, None)
                if can_retry:
                    LOGGER.warning(
                        "%s network error attempt=%s err=%s; retrying in %.1fs",
                        context,
                        attempt,
                        exc.__class__.__name__,
                        backoff,
                    )
                    self._sleep(backoff)
                    backoff = min(backoff * 2, STRAVA_BACKOFF_MAX_SECONDS)
                    continue
                message = f"{context} network error: {exc.__class__.__name__}"
                LOGGER.error(message)
                raise StravaAPIError(message) from exc
            self.limiter.after_response(response.headers, response.status_code)

            if response.status_code == 401 and not attempted_refresh:
                LOGGER.info("%s returned 401; refreshing token and retrying.", context)
                self.token_cache.invalidate()
                attempted_refresh = True
                continue

            action, error = classify_response_status(
                response,
                context,
                attempt=attempt,
                backoff=backoff,
                can_retry=can_retry,
            )
            if action == "retry":
                self._sleep(backoff)
                backoff = min(backoff * 2, STRAVA_BACKOFF_MAX_SECONDS)
                continue
            if action == "raise" and error is not None:
                raise error

            try:
                return response.json()
            except ValueError as exc:
                if can_retry:
                    LOGGER.warning(
                        "Non-JSON response for %s attempt=%s; retrying in %.1fs",
                        context,
                        attempt,
                        backoff,
                    )
                    self._sleep(backoff)
                    backoff = min(backoff * 2, STRAVA_BACKOFF_MAX_SECONDS)
                    continue
                message = f"{context} returned non-JSON payload"
                LOGGER.error(message)
                raise StravaAPIError(message) from exc
