"""Strava client components (session, rate limiter, resources, crawler)."""

from .client import StravaClient  # noqa: F401
from .pagination import Crawler  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .session import create_default_session  # noqa: F401
