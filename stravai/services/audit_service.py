"""Whole-history athlete profile audit.

Crawls everything since a start date, reduces it to a compact dataset and
asks the AI coach for a profile which is stored as the cache record's profile
section, in the same write as the quota counters.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from ..auth import TokenCache
from ..config import AUDIT_DEFAULT_SINCE, AUDIT_MAX_PAGES, AUDIT_MAX_RECORDS
from ..errors import QuotaExhausted
from ..models import GoalConfig
from ..quota import QuotaDecision, QuotaLedger
from ..remote_state import RemoteStateStore
from ..strava_client.pagination import Crawler
from ..strava_client.rate_limiter import RateLimiter
from ..utils import Clock, parse_date, utc_now


class ProfileBuilder(Protocol):
    def build_profile(
        self, records: Sequence[Mapping[str, Any]], goals: GoalConfig
    ) -> Dict[str, Any]: ...


def compact_record(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep only type, km, moving seconds, average HR and start date."""

    return {
        "t": str(row.get("type") or row.get("sport_type") or "Unknown"),
        "d": round(float(row.get("distance") or 0.0) / 1000.0, 2),
        "m": int(row.get("moving_time") or 0),
        "hr": float(row.get("average_heartrate") or 0.0),
        "dt": str(row.get("start_date") or ""),
    }


class AuditService:
    def __init__(
        self,
        *,
        token_cache: TokenCache,
        crawler: Crawler,
        store: RemoteStateStore,
        ledger: QuotaLedger,
        analyzer: ProfileBuilder,
        goals: GoalConfig,
        limiter: RateLimiter | None = None,
        max_pages: int = AUDIT_MAX_PAGES,
        max_records: int = AUDIT_MAX_RECORDS,
        clock: Clock = utc_now,
        lock: Optional[threading.Lock] = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.token_cache = token_cache
        self.crawler = crawler
        self.store = store
        self.ledger = ledger
        self.analyzer = analyzer
        self.goals = goals
        self.limiter = limiter
        self.max_pages = max_pages
        self.max_records = max_records
        self._clock = clock
        self.lock = lock or threading.Lock()
        self._log = logger or logging.getLogger(self.__class__.__name__)

    def run_audit(self, since: str | date | None = None) -> Dict[str, Any]:
        """Rebuild and persist the athlete profile.

        Raises:
            AuthError: credentials rejected.
            CrawlError: the history crawl failed.
            QuotaExhausted: the daily AI budget is already used up.
            AnalysisError: the AI call failed after retries.
        """

        start = parse_date(since or AUDIT_DEFAULT_SINCE)
        with self.lock:
            self.token_cache.get_access_token()
            self.ledger.load()
            rows = self.crawler.collect(
                datetime.combine(start, time.min, tzinfo=timezone.utc),
                max_pages=self.max_pages,
            )
            records: List[Dict[str, Any]] = [
                compact_record(row) for row in rows if not self.store.is_cache_record(row)
            ][: self.max_records]
            self._log.info(
                "Audit since %s: %d activities crawled, %d records sent",
                start.isoformat(),
                len(rows),
                len(records),
            )
            if self.ledger.check_and_reserve() is QuotaDecision.DAILY_EXHAUSTED:
                raise QuotaExhausted("Daily AI quota exhausted; audit skipped")

            profile = dict(self.analyzer.build_profile(records, self.goals))
            self.ledger.record_usage(persist=False)
            profile["stravaQuota"] = self.limiter.snapshot() if self.limiter else {}
            profile["geminiQuota"] = self.ledger.snapshot()
            profile["lastUpdated"] = self._clock().isoformat()
            self.ledger.profile = profile
            self.ledger.persist()
            self._log.info("Athlete profile updated (%d keys)", len(profile))
            return profile
