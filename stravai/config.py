"""Central configuration for the StravAI sync engine.

All values are constants imported by the rest of the package. Secrets are read
from environment variables (optionally via a local `.env`). Components accept
each knob as a keyword argument defaulting to the constant defined here.
"""

from __future__ import annotations

import os
from datetime import date, timedelta

from dotenv import load_dotenv


def _env_str(key: str, default: str = "") -> str:
    value = os.getenv(key)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Strava settings
# ---------------------------------------------------------------------------
STRAVA_BASE_URL = "https://www.strava.com/api/v3"
STRAVA_OAUTH_URL = "https://www.strava.com/oauth/token"

# Credential triple for the refresh-token exchange. Do not hardcode secrets.
CLIENT_ID = _env_str("STRAVA_CLIENT_ID")
CLIENT_SECRET = _env_str("STRAVA_CLIENT_SECRET")
REFRESH_TOKEN = _env_str("STRAVA_REFRESH_TOKEN")

# Access tokens are kept in memory for this long, shorter than Strava's own
# six hour lifetime so a refresh always happens before the token goes stale.
TOKEN_CACHE_HOURS = _env_float("TOKEN_CACHE_HOURS", 5.0)


# ---------------------------------------------------------------------------
# AI provider (Gemini)
# ---------------------------------------------------------------------------
GEMINI_API_KEY = _env_str("GEMINI_API_KEY") or _env_str("API_KEY")
GEMINI_MODEL = _env_str("GEMINI_MODEL", "gemini-3-flash-preview")

# Deep-reasoning responses are slow; the per-call timeout is in minutes.
GEMINI_TIMEOUT_SECONDS = _env_int("GEMINI_TIMEOUT_SECONDS", 300)

# Attempts per analysis (first call included). Quota errors are never retried.
GEMINI_MAX_ATTEMPTS = _env_int("GEMINI_MAX_ATTEMPTS", 3)

# Advisory budget tracked in the remote quota ledger.
GEMINI_DAILY_LIMIT = _env_int("GEMINI_DAILY_LIMIT", 1500)
GEMINI_MINUTE_LIMIT = _env_int("GEMINI_MINUTE_LIMIT", 15)

# When False the daily counter is never reset automatically; an operator clears
# it with `stravai quota --reset`. When True it resets once resetAt has passed.
QUOTA_AUTO_RESET = _env_bool("QUOTA_AUTO_RESET", False)


# ---------------------------------------------------------------------------
# Athlete goal
# ---------------------------------------------------------------------------
GOAL_RACE_TYPE = _env_str("GOAL_RACE_TYPE", "Marathon")
# Without a configured date the goal race is assumed three months out.
GOAL_RACE_DATE = _env_str(
    "GOAL_RACE_DATE", (date.today() + timedelta(days=90)).isoformat()
)
GOAL_RACE_TIME = _env_str("GOAL_RACE_TIME", "3:30:00")


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------
# Token Strava echoes back during the webhook subscription handshake.
STRAVA_VERIFY_TOKEN = _env_str("STRAVA_VERIFY_TOKEN", "STRAVAI_SECURE_TOKEN")

# Shared secret for administrative calls (X-StravAI-Secret header).
ADMIN_SECRET = _env_str("STRAVAI_ADMIN_SECRET")
ADMIN_SECRET_HEADER = "X-StravAI-Secret"

SERVER_PORT = _env_int("PORT", 8080)


# ---------------------------------------------------------------------------
# Remote state (cache record)
# ---------------------------------------------------------------------------
CACHE_RECORD_NAME = _env_str("CACHE_RECORD_NAME", "[StravAI] System Cache")

# How long a located cache record id is trusted before listing again.
CACHE_RECORD_LOOKUP_TTL_SECONDS = _env_int("CACHE_RECORD_LOOKUP_TTL_SECONDS", 600)

# Size of the single page listed when looking for the cache record.
CACHE_RECORD_LOOKUP_PAGE_SIZE = _env_int("CACHE_RECORD_LOOKUP_PAGE_SIZE", 100)


# ---------------------------------------------------------------------------
# Crawl / candidate selection
# ---------------------------------------------------------------------------
CRAWL_PAGE_SIZE = 200
CRAWL_MAX_PAGES = _env_int("CRAWL_MAX_PAGES", 8)
AUDIT_MAX_PAGES = _env_int("AUDIT_MAX_PAGES", 25)
AUDIT_DEFAULT_SINCE = _env_str("AUDIT_DEFAULT_SINCE", "2020-01-01")
AUDIT_MAX_RECORDS = 500

# Activities that started within this window are analysis candidates.
SYNC_LOOKBACK_HOURS = _env_int("SYNC_LOOKBACK_HOURS", 24)

# How far back the crawl reaches to build historical context.
SYNC_HISTORY_DAYS = _env_int("SYNC_HISTORY_DAYS", 30)

SYNC_ACTIVITY_TYPES = frozenset(
    part.strip().lower()
    for part in _env_str("SYNC_ACTIVITY_TYPES", "Run").split(",")
    if part.strip()
)

# Most-recent activities sent as compact context with each analysis.
ANALYSIS_HISTORY_SIZE = _env_int("ANALYSIS_HISTORY_SIZE", 12)


# ---------------------------------------------------------------------------
# HTTP client tuning
# ---------------------------------------------------------------------------
HTTP_POOL_CONNECTIONS = 10
HTTP_POOL_MAXSIZE = 10

# Request timeout in seconds for Strava calls.
REQUEST_TIMEOUT = _env_int("REQUEST_TIMEOUT", 15)

# RATE_LIMIT_JITTER_RANGE adds random delay (seconds) to smooth bursts.
RATE_LIMIT_JITTER_RANGE = (0.0, 0.0)
# RATE_LIMIT_NEAR_LIMIT_BUFFER starts throttling when this close to the short-window limit.
RATE_LIMIT_NEAR_LIMIT_BUFFER = 3
# RATE_LIMIT_THROTTLE_SECONDS is the pause applied on 429s or near-limit signals.
RATE_LIMIT_THROTTLE_SECONDS = _env_int("RATE_LIMIT_THROTTLE_SECONDS", 15)

# STRAVA_MAX_RETRIES covers network failures, 429, 5xx, or bad payloads.
STRAVA_MAX_RETRIES = 3
# STRAVA_BACKOFF_MAX_SECONDS caps the exponential backoff per attempt.
STRAVA_BACKOFF_MAX_SECONDS = 4.0


# ---------------------------------------------------------------------------
# Report / logging
# ---------------------------------------------------------------------------
REPORT_TIMEZONE = _env_str("REPORT_TIMEZONE", "Europe/Berlin")
REPORT_TIMEZONE_LABEL = _env_str("REPORT_TIMEZONE_LABEL", "CET")

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()
LOG_BUFFER_SIZE = _env_int("LOG_BUFFER_SIZE", 100)
