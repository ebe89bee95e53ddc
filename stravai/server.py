"""HTTP surface: Strava webhook plus a few operator endpoints."""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Any, Callable, Optional

from flask import Flask, jsonify, request
from flask.typing import ResponseReturnValue

from . import __version__
from .config import ADMIN_SECRET, ADMIN_SECRET_HEADER, STRAVA_VERIFY_TOKEN
from .errors import StravaAPIError
from .log_buffer import RingBufferHandler
from .quota import QuotaLedger
from .services import AuditService, SyncService
from .strava_client.rate_limiter import RateLimiter
from .utils import parse_date

LOGGER = logging.getLogger(__name__)

Runner = Callable[[Callable[[], Any], str], None]


def _safe_equals(given: Optional[str], expected: str) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def run_in_thread(job: Callable[[], Any], label: str) -> None:
    """Run ``job`` on a daemon thread, logging instead of raising."""

    def _target() -> None:
        try:
            job()
        except Exception as exc:  # pragma: no cover - background visibility only
            LOGGER.error("%s failed: %s", label, exc, exc_info=True)

    threading.Thread(target=_target, name=label, daemon=True).start()


def create_app(
    sync: SyncService,
    audit: AuditService,
    ledger: QuotaLedger,
    *,
    log_buffer: RingBufferHandler | None = None,
    limiter: RateLimiter | None = None,
    admin_secret: str = ADMIN_SECRET,
    verify_token: str = STRAVA_VERIFY_TOKEN,
    runner: Runner = run_in_thread,
) -> Flask:
    app = Flask("stravai")

    def _authorized() -> bool:
        return _safe_equals(request.headers.get(ADMIN_SECRET_HEADER), admin_secret)

    def _unauthorized() -> ResponseReturnValue:
        LOGGER.warning("Rejected admin call to %s", request.path)
        return jsonify({"error": "unauthorized"}), 401

    @app.get("/health")
    def health() -> ResponseReturnValue:
        return jsonify({"status": "healthy", "version": __version__})

    @app.get("/webhook")
    def webhook_verify() -> ResponseReturnValue:
        mode = request.args.get("hub.mode")
        token = request.args.get("hub.verify_token")
        challenge = request.args.get("hub.challenge")
        if mode == "subscribe" and _safe_equals(token, verify_token):
            LOGGER.info("Webhook subscription verified")
            return jsonify({"hub.challenge": challenge})
        LOGGER.warning("Webhook verification rejected (mode=%s)", mode)
        return jsonify({"error": "verification failed"}), 403

    @app.post("/webhook")
    def webhook_event() -> ResponseReturnValue:
        event = request.get_json(silent=True) or {}
        object_type = event.get("object_type")
        aspect_type = event.get("aspect_type")
        object_id = event.get("object_id")
        LOGGER.info(
            "Webhook event object_type=%s aspect_type=%s object_id=%s",
            object_type,
            aspect_type,
            object_id,
        )
        if object_type == "activity" and aspect_type == "create" and object_id is not None:
            try:
                activity_id = int(object_id)
            except (TypeError, ValueError):
                LOGGER.warning("Ignoring webhook event with bad object_id %r", object_id)
                return jsonify({"status": "received"})
            runner(
                lambda: sync.analyze_activity(activity_id),
                f"analyze-{activity_id}",
            )
        return jsonify({"status": "received"})

    @app.get("/logs")
    def logs() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        return jsonify(log_buffer.lines() if log_buffer else [])

    @app.get("/profile")
    def profile() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        try:
            snapshot = sync.store.read_cache()
        except StravaAPIError as exc:
            LOGGER.error("Profile read failed: %s", exc)
            return jsonify({"error": str(exc)}), 502
        if snapshot is None:
            return jsonify({"error": "no profile yet"}), 404
        return jsonify(snapshot.profile)

    @app.get("/quota")
    def quota() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        return jsonify(
            {
                "geminiQuota": ledger.snapshot(),
                "stravaQuota": limiter.snapshot() if limiter else {},
            }
        )

    @app.post("/quota/reset")
    def quota_reset() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        ledger.reset()
        return jsonify({"geminiQuota": ledger.snapshot()})

    @app.post("/sync")
    def trigger_sync() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        runner(sync.run_pass, "sync-pass")
        return jsonify({"status": "sync started"}), 202

    @app.post("/audit")
    def trigger_audit() -> ResponseReturnValue:
        if not _authorized():
            return _unauthorized()
        since = request.args.get("since")
        if since:
            try:
                parse_date(since)
            except ValueError:
                return jsonify({"error": f"invalid since date {since!r}"}), 400
        runner(lambda: audit.run_audit(since), "profile-audit")
        return jsonify({"status": "audit started", "since": since}), 202

    return app
