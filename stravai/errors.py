"""Central error types used across the application."""

from __future__ import annotations


class StravaAPIError(RuntimeError):
    """Base error for Strava API failures."""


class StravaPermissionError(StravaAPIError):
    """Raised when the API reports insufficient scopes or authentication issues."""


class StravaResourceNotFoundError(StravaAPIError):
    """Raised when an activity does not exist (or is not visible to the token)."""


class CrawlError(StravaAPIError):
    """Raised when a page of the activity crawl cannot be fetched.

    Fatal for the sync pass; partially accumulated pages are discarded.
    """


class AuthError(RuntimeError):
    """Raised when credentials are missing or the token exchange is rejected.

    Fatal for the current pass and never retried silently.
    """


class QuotaExhausted(RuntimeError):
    """Raised when the AI provider budget is used up.

    An expected terminal condition: the pass writes a placeholder for the
    current candidate and halts gracefully.
    """


class AnalysisError(RuntimeError):
    """Raised when an analysis fails after retries; affects one candidate only."""


class RemoteStateParseError(ValueError):
    """Raised when a marker-delimited state section holds invalid JSON."""


__all__ = [
    "AnalysisError",
    "AuthError",
    "CrawlError",
    "QuotaExhausted",
    "RemoteStateParseError",
    "StravaAPIError",
    "StravaPermissionError",
    "StravaResourceNotFoundError",
]
