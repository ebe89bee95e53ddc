"""Command line entry point: ``stravai sync|audit|serve|quota``."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
import threading
from typing import List, Optional, Sequence

from .analysis import AnalysisClient
from .auth import TokenCache
from .config import (
    GOAL_RACE_DATE,
    GOAL_RACE_TIME,
    GOAL_RACE_TYPE,
    LOG_LEVEL,
    SERVER_PORT,
)
from .errors import AnalysisError, AuthError, CrawlError, QuotaExhausted, StravaAPIError
from .log_buffer import RingBufferHandler, install
from .models import GoalConfig
from .quota import QuotaLedger
from .remote_state import RemoteStateStore
from .report import ReportFormatter
from .services import AuditService, SyncService, SyncServiceConfig
from .strava_client import Crawler, RateLimiter, StravaClient
from .utils import parse_iso_datetime

LOGGER = logging.getLogger(__name__)


def _setup_logging() -> RingBufferHandler:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=getattr(logging, LOG_LEVEL, logging.INFO),
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )
    return install()


@dataclass
class Services:
    token_cache: TokenCache
    limiter: RateLimiter
    client: StravaClient
    crawler: Crawler
    store: RemoteStateStore
    ledger: QuotaLedger
    analyzer: AnalysisClient
    sync: SyncService
    audit: AuditService


def build_services() -> Services:
    """Wire the production object graph from configuration."""

    goals = GoalConfig.from_values(GOAL_RACE_TYPE, GOAL_RACE_DATE, GOAL_RACE_TIME)
    token_cache = TokenCache()
    limiter = RateLimiter()
    client = StravaClient(token_cache, limiter=limiter)
    crawler = Crawler(client)
    formatter = ReportFormatter()
    store = RemoteStateStore(client, formatter=formatter)
    ledger = QuotaLedger(store)
    analyzer = AnalysisClient()
    lock = threading.Lock()
    sync = SyncService(
        token_cache=token_cache,
        client=client,
        crawler=crawler,
        store=store,
        ledger=ledger,
        analyzer=analyzer,
        formatter=formatter,
        config=SyncServiceConfig(goals=goals),
        lock=lock,
    )
    audit = AuditService(
        token_cache=token_cache,
        crawler=crawler,
        store=store,
        ledger=ledger,
        analyzer=analyzer,
        goals=goals,
        limiter=limiter,
        lock=lock,
    )
    return Services(
        token_cache=token_cache,
        limiter=limiter,
        client=client,
        crawler=crawler,
        store=store,
        ledger=ledger,
        analyzer=analyzer,
        sync=sync,
        audit=audit,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stravai", description="Strava to Gemini coaching sync"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run one sync pass")
    sync.add_argument("--since", help="Crawl activities after this ISO timestamp")
    sync.add_argument("--max-pages", type=int, help="Page ceiling for the crawl")

    audit = commands.add_parser("audit", help="Rebuild the athlete profile")
    audit.add_argument("--since", help="Start date (YYYY-MM-DD)")

    serve = commands.add_parser("serve", help="Run the webhook/admin HTTP server")
    serve.add_argument("--port", type=int, default=SERVER_PORT)

    quota = commands.add_parser("quota", help="Show or reset the AI quota ledger")
    quota.add_argument("--reset", action="store_true", help="Zero the daily counter")
    return parser


def _cmd_sync(services: Services, args: argparse.Namespace) -> int:
    since = None
    if args.since:
        since = parse_iso_datetime(args.since)
        if since is None:
            LOGGER.error("Invalid --since value %r", args.since)
            return 2
    report = services.sync.run_pass(since=since, max_pages=args.max_pages)
    LOGGER.info(
        "Pass finished: analysed=%s skipped=%s failed=%s placeholders=%s quota_halted=%s",
        report.analyzed,
        report.skipped,
        sorted(report.failed),
        report.placeholders,
        report.quota_halted,
    )
    return 0


def _cmd_audit(services: Services, args: argparse.Namespace) -> int:
    try:
        profile = services.audit.run_audit(args.since)
    except QuotaExhausted as exc:
        LOGGER.warning("Audit skipped: %s", exc)
        return 0
    except AnalysisError as exc:
        LOGGER.error("Audit failed: %s", exc)
        return 1
    LOGGER.info("Profile summary: %s", profile.get("summary", ""))
    return 0


def _cmd_quota(services: Services, args: argparse.Namespace) -> int:
    services.token_cache.get_access_token()
    services.ledger.load()
    if args.reset:
        services.ledger.reset()
    state = services.ledger.snapshot()
    LOGGER.info(
        "AI quota dailyUsed=%s/%s resetAt=%s",
        state["dailyUsed"],
        state["dailyLimit"],
        state["resetAt"],
    )
    return 0


def _cmd_serve(services: Services, args: argparse.Namespace, buffer: RingBufferHandler) -> int:
    from .server import create_app

    app = create_app(
        services.sync,
        services.audit,
        services.ledger,
        log_buffer=buffer,
        limiter=services.limiter,
    )
    LOGGER.info("Serving on port %s", args.port)
    app.run(host="0.0.0.0", port=args.port)  # nosec B104 - container entry point
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    buffer = _setup_logging()
    args = _build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        services = build_services()
        if args.command == "sync":
            return _cmd_sync(services, args)
        if args.command == "audit":
            return _cmd_audit(services, args)
        if args.command == "quota":
            return _cmd_quota(services, args)
        return _cmd_serve(services, args, buffer)
    except AuthError as exc:
        LOGGER.error("Authentication failed: %s", exc)
        return 1
    except CrawlError as exc:
        LOGGER.error("Crawl failed: %s", exc)
        return 1
    except StravaAPIError as exc:
        LOGGER.error("Strava API error: %s", exc)
        return 1


__all__: List[str] = ["main", "build_services", "Services"]
