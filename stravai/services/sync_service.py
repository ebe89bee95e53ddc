"""Sync pass orchestration.

One pass walks ``authenticating -> crawling -> filtering -> (analyzing ->
writing)* -> done``. Auth and crawl failures abort the pass; a failure on a
single candidate is logged and the loop moves on. The first time the AI
budget runs out the current candidate gets a placeholder annotation and the
pass halts, leaving the rest for the next run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import threading
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Sequence

from ..analysis import AnalysisClient
from ..auth import TokenCache
from ..config import (
    ANALYSIS_HISTORY_SIZE,
    CRAWL_MAX_PAGES,
    GOAL_RACE_DATE,
    GOAL_RACE_TIME,
    GOAL_RACE_TYPE,
    SYNC_ACTIVITY_TYPES,
    SYNC_HISTORY_DAYS,
    SYNC_LOOKBACK_HOURS,
)
from ..errors import AnalysisError, QuotaExhausted, StravaAPIError
from ..idempotency import merge_annotation, needs_analysis
from ..models import Activity, GoalConfig, SyncReport
from ..quota import QuotaDecision, QuotaLedger
from ..remote_state import ActivityStore, RemoteStateStore
from ..report import ReportFormatter
from ..strava_client.pagination import Crawler
from ..utils import Clock, utc_now

ActivityRow = Dict[str, Any]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class SyncState(str, Enum):
    AUTHENTICATING = "authenticating"
    CRAWLING = "crawling"
    FILTERING = "filtering"
    ANALYZING = "analyzing"
    WRITING = "writing"
    QUOTA_HALTED = "quota_halted"
    DONE = "done"


class Analyzer(Protocol):
    def analyze(
        self, activity: Activity, history: Sequence[Activity], goals: GoalConfig
    ) -> Any: ...


def _default_goals() -> GoalConfig:
    return GoalConfig.from_values(GOAL_RACE_TYPE, GOAL_RACE_DATE, GOAL_RACE_TIME)


@dataclass(slots=True)
class SyncServiceConfig:
    goals: GoalConfig = field(default_factory=_default_goals)
    lookback_hours: int = SYNC_LOOKBACK_HOURS
    history_days: int = SYNC_HISTORY_DAYS
    activity_types: FrozenSet[str] = SYNC_ACTIVITY_TYPES
    max_pages: int = CRAWL_MAX_PAGES
    history_size: int = ANALYSIS_HISTORY_SIZE
    logger: logging.Logger | None = None


def matches_type(row: ActivityRow, activity_types: FrozenSet[str]) -> bool:
    kinds = {str(row.get(key) or "").lower() for key in ("type", "sport_type")}
    return bool(kinds & activity_types)


class SyncService:
    def __init__(
        self,
        *,
        token_cache: TokenCache,
        client: ActivityStore,
        crawler: Crawler,
        store: RemoteStateStore,
        ledger: QuotaLedger,
        analyzer: Analyzer | AnalysisClient,
        formatter: ReportFormatter | None = None,
        config: SyncServiceConfig | None = None,
        clock: Clock = utc_now,
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self.token_cache = token_cache
        self.client = client
        self.crawler = crawler
        self.store = store
        self.ledger = ledger
        self.analyzer = analyzer
        self.formatter = formatter or ReportFormatter(clock=clock)
        self.config = config or SyncServiceConfig()
        self._clock = clock
        self._log = self.config.logger or logging.getLogger(self.__class__.__name__)
        # Passes never overlap inside one process; nothing guards across processes.
        self.lock = lock or threading.Lock()
        self.last_report: SyncReport | None = None

    def run_pass(
        self, since: datetime | None = None, max_pages: int | None = None
    ) -> SyncReport:
        """Run one full sync pass.

        ``AuthError`` and ``CrawlError`` propagate to the caller; every other
        outcome, including a quota halt, returns a :class:`SyncReport`.
        """

        with self.lock:
            now = self._clock()
            report = SyncReport(started_at=now)
            self._authenticate(report)

            self._enter(report, SyncState.CRAWLING)
            crawl_since = since or now - timedelta(days=self.config.history_days)
            rows = self.crawler.collect(
                crawl_since,
                max_pages=self.config.max_pages if max_pages is None else max_pages,
            )
            report.crawled = len(rows)

            self._enter(report, SyncState.FILTERING)
            pool = self._matching(rows)
            candidates = self.select_candidates(pool, now)
            report.candidates = [c.id for c in candidates]
            self._log.info(
                "Sync pass: %d activities crawled, %d candidates in the last %dh",
                report.crawled,
                len(candidates),
                self.config.lookback_hours,
            )

            for candidate in candidates:
                history = [a for a in pool if a.id != candidate.id]
                if not self._process(candidate.id, history, report):
                    break
            return self._finish(report)

    def analyze_activity(self, activity_id: int) -> SyncReport:
        """Run the gate/analyze/write pipeline for a single activity id."""

        with self.lock:
            now = self._clock()
            report = SyncReport(started_at=now, candidates=[activity_id])
            self._authenticate(report)

            self._enter(report, SyncState.CRAWLING)
            rows = self.crawler.collect(
                now - timedelta(days=self.config.history_days), max_pages=1
            )
            report.crawled = len(rows)

            self._enter(report, SyncState.FILTERING)
            history = [a for a in self._matching(rows) if a.id != activity_id]
            self._process(activity_id, history, report)
            return self._finish(report)

    def select_candidates(
        self, pool: Sequence[Activity], now: datetime
    ) -> List[Activity]:
        cutoff = now - timedelta(hours=self.config.lookback_hours)
        recent = [a for a in pool if a.start_time is not None and a.start_time >= cutoff]
        return sorted(recent, key=lambda a: a.start_time, reverse=True)

    def _matching(self, rows: Sequence[ActivityRow]) -> List[Activity]:
        pool = [
            Activity.from_api(row)
            for row in rows
            if row.get("id") is not None
            and not self.store.is_cache_record(row)
            and matches_type(row, self.config.activity_types)
        ]
        return sorted(
            pool,
            key=lambda a: a.start_time or _EPOCH,
            reverse=True,
        )

    def _authenticate(self, report: SyncReport) -> None:
        self._enter(report, SyncState.AUTHENTICATING)
        self.token_cache.get_access_token()
        self.ledger.load()

    def _process(
        self, activity_id: int, history: Sequence[Activity], report: SyncReport
    ) -> bool:
        """Handle one candidate. Returns ``False`` when the pass must halt."""

        try:
            raw = self.client.get_activity(activity_id)
        except StravaAPIError as exc:
            self._log.error("Could not fetch activity %s: %s", activity_id, exc)
            report.failed[activity_id] = str(exc)
            return True

        if self.store.is_cache_record(raw):
            self._log.info("Activity %s is the cache record; not analysed", activity_id)
            report.skipped.append(activity_id)
            return True
        activity = Activity.from_api(raw)
        if not matches_type(
            {"type": activity.type, "sport_type": activity.sport_type},
            self.config.activity_types,
        ):
            self._log.info(
                "Activity %s is type %s; not analysed", activity_id, activity.type
            )
            report.skipped.append(activity_id)
            return True
        if not needs_analysis(activity.annotation_text):
            self._log.info("Activity %s already analysed; skipping", activity_id)
            report.skipped.append(activity_id)
            return True

        self._enter(report, SyncState.ANALYZING)
        if self.ledger.check_and_reserve() is QuotaDecision.DAILY_EXHAUSTED:
            self._halt(activity, report)
            return False
        try:
            result = self.analyzer.analyze(
                activity, list(history)[: self.config.history_size], self.config.goals
            )
        except QuotaExhausted as exc:
            self._log.warning("AI quota exhausted on activity %s: %s", activity_id, exc)
            self._halt(activity, report)
            return False
        except AnalysisError as exc:
            self._log.error("Analysis failed for activity %s: %s", activity_id, exc)
            report.failed[activity_id] = str(exc)
            return True
        self.ledger.record_usage()

        self._enter(report, SyncState.WRITING)
        text = merge_annotation(activity.annotation_text, self.formatter.format(result))
        try:
            self.client.update_activity(activity_id, description=text)
        except StravaAPIError as exc:
            self._log.error("Write-back failed for activity %s: %s", activity_id, exc)
            report.failed[activity_id] = str(exc)
            return True
        self._log.info(
            "Activity %s analysed as %s", activity_id, result.classification.value
        )
        report.analyzed.append(activity_id)
        return True

    def _halt(self, activity: Activity, report: SyncReport) -> None:
        self._enter(report, SyncState.QUOTA_HALTED)
        report.quota_halted = True
        latest = activity.annotation_text
        try:
            latest = str(self.client.get_activity(activity.id).get("description") or "")
        except StravaAPIError as exc:
            self._log.warning(
                "Re-check of activity %s failed, using last known text: %s",
                activity.id,
                exc,
            )
        if not needs_analysis(latest):
            self._log.info("Activity %s was analysed meanwhile; no placeholder", activity.id)
            return
        try:
            self.client.update_activity(
                activity.id,
                description=merge_annotation(latest, self.formatter.format_placeholder()),
            )
        except StravaAPIError as exc:
            self._log.error("Placeholder write failed for activity %s: %s", activity.id, exc)
            return
        report.placeholders.append(activity.id)
        self._log.warning(
            "Placeholder written to activity %s; remaining candidates deferred", activity.id
        )

    def _finish(self, report: SyncReport) -> SyncReport:
        self._enter(report, SyncState.DONE)
        self._log.info(
            "Sync done: analysed=%d skipped=%d failed=%d placeholders=%d halted=%s",
            len(report.analyzed),
            len(report.skipped),
            len(report.failed),
            len(report.placeholders),
            report.quota_halted,
        )
        self.last_report = report
        return report

    def _enter(self, report: SyncReport, state: SyncState) -> None:
        if report.states and report.states[-1] == state.value:
            return
        report.states.append(state.value)
        self._log.debug("Sync state -> %s", state.value)
