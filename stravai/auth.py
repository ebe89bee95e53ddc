"""Access token cache backed by Strava's refresh-token exchange.

The credential triple (client id, client secret, refresh token) is exchanged
for a short-lived access token which is kept in memory only, for a fixed
window shorter than the provider's real TTL so refreshes happen early. The
module adds resiliency (HTTP retries), safe logging that avoids leaking
secrets, and defensive JSON parsing.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import (
    CLIENT_ID,
    CLIENT_SECRET,
    REFRESH_TOKEN,
    REQUEST_TIMEOUT,
    STRAVA_OAUTH_URL,
    TOKEN_CACHE_HOURS,
)
from .errors import AuthError
from .models import AccessToken
from .strava_client.response_handling import extract_error
from .utils import Clock, mask_tail, utc_now

LOGGER = logging.getLogger(__name__)

# Reusable session with limited retry for transient network/server issues.
_token_retry = Retry(
    total=3,
    backoff_factor=1.0,
    status_forcelist=[429, 500, 502, 503, 504],
    allowed_methods=["POST"],
)
_session = requests.Session()
_session.mount("https://", HTTPAdapter(max_retries=_token_retry))
_session.mount("http://", HTTPAdapter(max_retries=_token_retry))


class TokenCache:
    """Hand out a cached bearer token, exchanging credentials when it expires."""

    def __init__(
        self,
        client_id: str = CLIENT_ID,
        client_secret: str = CLIENT_SECRET,
        refresh_token: str = REFRESH_TOKEN,
        *,
        session: requests.Session | None = None,
        clock: Clock = utc_now,
        cache_window: timedelta = timedelta(hours=TOKEN_CACHE_HOURS),
        token_url: str = STRAVA_OAUTH_URL,
        timeout: int = REQUEST_TIMEOUT,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self._session = session or _session
        self._clock = clock
        self.cache_window = cache_window
        self._token_url = token_url
        self._timeout = timeout
        self.token: Optional[AccessToken] = None

    def get_access_token(self) -> str:
        """Return a valid access token, refreshing it when absent or expired."""

        now = self._clock()
        if self.token is not None and self.token.is_valid(now):
            return self.token.value
        access_token = self._exchange()
        self.token = AccessToken(value=access_token, expires_at=now + self.cache_window)
        LOGGER.info(
            "Strava access token cached until %s", self.token.expires_at.isoformat()
        )
        return access_token

    def invalidate(self) -> None:
        """Drop the cached token so the next call performs a fresh exchange."""

        self.token = None

    def _exchange(self) -> str:
        if not self.client_id or not self.client_secret:
            raise AuthError(
                "Client credentials not configured (STRAVA_CLIENT_ID / STRAVA_CLIENT_SECRET missing)"
            )
        if not self.refresh_token:
            raise AuthError("Missing refresh token (STRAVA_REFRESH_TOKEN)")

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
        }
        LOGGER.info(
            "Refreshing Strava token refresh_token=%s", mask_tail(self.refresh_token)
        )
        LOGGER.debug("Token endpoint: %s", self._token_url)

        try:
            resp = self._session.post(
                self._token_url, data=payload, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            LOGGER.error("Token request transport error: %s", e)
            raise AuthError("Transport failure during token refresh") from e

        status = resp.status_code
        if status >= 400:
            detail = extract_error(resp)
            LOGGER.error(
                "Token refresh failed status=%s%s",
                status,
                f" detail={detail}" if detail else "",
            )
            raise AuthError(f"Token refresh failed with status {status}")

        try:
            data = resp.json()
        except ValueError as e:
            LOGGER.error("Invalid JSON in token response: %s", e)
            raise AuthError("Invalid JSON in token response") from e

        if not isinstance(data, dict):
            LOGGER.error("Unexpected token response shape: %s", type(data).__name__)
            raise AuthError("Unexpected token response shape")

        access_token = data.get("access_token")
        new_refresh_token = data.get("refresh_token")
        if not access_token:
            LOGGER.error("No access_token in token response")
            raise AuthError("No access_token in response")
        # Rotated refresh tokens are kept for this process only.
        if isinstance(new_refresh_token, str) and new_refresh_token.strip():
            rotated = new_refresh_token.strip() != self.refresh_token
            self.refresh_token = new_refresh_token.strip()
        else:
            rotated = False
        LOGGER.info(
            "Token refresh succeeded access_token_len=%s refresh_token_changed=%s",
            len(access_token),
            rotated,
        )
        return str(access_token)
