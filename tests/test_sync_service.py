from datetime import timedelta

import pytest

from stravai.analysis import AnalysisClient
from stravai.errors import AuthError, CrawlError, QuotaExhausted, StravaAPIError
from stravai.idempotency import BORDER, SIGNATURE, needs_analysis
from stravai.quota import ManualResetPolicy, QuotaLedger
from stravai.remote_state import QUOTA_END, QUOTA_START, CACHE_END, CACHE_START, RemoteStateStore
from stravai.report import ReportFormatter
from stravai.retry import RetryPolicy
from stravai.services import SyncService, SyncServiceConfig, SyncState
from stravai.strava_client import Crawler

from conftest import (
    NOW,
    FakeClock,
    FakeGenaiClient,
    FakeStravaClient,
    FakeTokenCache,
    analysis_payload,
    run_payload,
)

RECORD = "[StravAI] System Cache"


class ProviderError(Exception):
    pass


def _build(client, responses=(), goals=None, tokens=None, clock=None):
    clock = clock or FakeClock()
    store = RemoteStateStore(client, record_name=RECORD, clock=clock)
    ledger = QuotaLedger(
        store, daily_limit=1500, minute_limit=15, reset_policy=ManualResetPolicy(), clock=clock
    )
    genai = FakeGenaiClient(responses)
    analyzer = AnalysisClient(
        client=genai,
        retry_policy=RetryPolicy(
            max_attempts=3,
            is_terminal=lambda exc: isinstance(exc, QuotaExhausted),
            sleep=lambda _s: None,
        ),
        clock=clock,
    )
    service = SyncService(
        token_cache=tokens or FakeTokenCache(),
        client=client,
        crawler=Crawler(client, page_size=200, max_pages=8),
        store=store,
        ledger=ledger,
        analyzer=analyzer,
        formatter=ReportFormatter(clock=clock),
        config=SyncServiceConfig(goals=goals, activity_types=frozenset({"run"})),
        clock=clock,
    )
    return service, genai


def _quota_record(used):
    text = (
        f"{CACHE_START}\n{{}}\n{CACHE_END}\n"
        f"{QUOTA_START}\n{{\"dailyUsed\": {used}, \"dailyLimit\": 1500}}\n{QUOTA_END}"
    )
    return run_payload(99, NOW - timedelta(days=40), name=RECORD, description=text)


def test_fresh_run_is_analyzed_and_rewritten(goals):
    client = FakeStravaClient([run_payload(1, NOW - timedelta(hours=2))])
    service, genai = _build(client, [analysis_payload()], goals)

    report = service.run_pass()

    assert report.analyzed == [1]
    text = client.activities[1]["description"]
    assert text.startswith(BORDER)
    assert text.endswith(SIGNATURE)
    assert needs_analysis(text) is False
    assert len(genai.models.calls) == 1
    assert report.states[0] == SyncState.AUTHENTICATING.value
    assert report.states[-1] == SyncState.DONE.value


def test_usage_is_persisted_to_cache_record(goals):
    client = FakeStravaClient([run_payload(1, NOW - timedelta(hours=2))])
    service, _ = _build(client, [analysis_payload()], goals)
    service.run_pass()

    assert len(client.creates) == 1
    assert '"dailyUsed":1' in client.creates[0]["description"]


def test_user_notes_are_kept_above_report(goals):
    client = FakeStravaClient(
        [run_payload(1, NOW - timedelta(hours=2), description="Windy, tired legs")]
    )
    service, _ = _build(client, [analysis_payload()], goals)
    service.run_pass()
    text = client.activities[1]["description"]
    assert text.startswith("Windy, tired legs\n\n" + BORDER)


def test_second_pass_is_a_no_op(goals):
    client = FakeStravaClient([run_payload(1, NOW - timedelta(hours=2))])
    service, genai = _build(client, [analysis_payload()], goals)
    service.run_pass()
    report = service.run_pass()

    assert report.analyzed == []
    assert report.skipped == [1]
    assert len(genai.models.calls) == 1


def test_candidate_selection_filters_type_window_and_cache_record(goals):
    client = FakeStravaClient(
        [
            run_payload(1, NOW - timedelta(hours=1)),
            run_payload(2, NOW - timedelta(hours=3)),
            run_payload(3, NOW - timedelta(days=3)),
            run_payload(4, NOW - timedelta(hours=1), type="Ride", sport_type="Ride"),
            run_payload(5, NOW - timedelta(hours=1), name=RECORD),
        ]
    )
    service, genai = _build(client, [analysis_payload(), analysis_payload()], goals)
    report = service.run_pass()

    assert report.candidates == [1, 2]
    assert report.analyzed == [1, 2]
    # Older runs still feed the history context.
    assert "2026-10-16" in genai.models.calls[0]["contents"]


def test_placeholder_is_replaced_by_report(goals):
    placeholder = ReportFormatter(clock=FakeClock()).format_placeholder()
    client = FakeStravaClient(
        [run_payload(1, NOW - timedelta(hours=2), description=placeholder)]
    )
    service, _ = _build(client, [analysis_payload()], goals)
    report = service.run_pass()

    assert report.analyzed == [1]
    assert "StravAI Performance Report" in client.activities[1]["description"]
    assert "capacity" not in client.activities[1]["description"]


def test_quota_exhausted_writes_placeholder_and_halts(goals):
    client = FakeStravaClient(
        [
            run_payload(1, NOW - timedelta(hours=1), description="Intervals 6x800"),
            run_payload(2, NOW - timedelta(hours=5)),
        ]
    )
    service, genai = _build(
        client, [ProviderError("429 RESOURCE_EXHAUSTED: quota exceeded")], goals
    )
    report = service.run_pass()

    assert report.quota_halted is True
    assert report.placeholders == [1]
    assert len(genai.models.calls) == 1
    text = client.activities[1]["description"]
    assert text.startswith("Intervals 6x800\n\n" + BORDER)
    assert text.endswith(SIGNATURE)
    assert needs_analysis(text) is True
    assert client.activities[2]["description"] == ""
    assert SyncState.QUOTA_HALTED.value in report.states
    assert report.states[-1] == SyncState.DONE.value


def test_daily_limit_reached_skips_ai_call(goals):
    client = FakeStravaClient([_quota_record(1500), run_payload(1, NOW - timedelta(hours=1))])
    service, genai = _build(client, [], goals)
    report = service.run_pass()

    assert genai.models.calls == []
    assert report.quota_halted is True
    assert report.placeholders == [1]


def test_recheck_skips_placeholder_when_analysed_meanwhile(goals):
    finished = f"Done.\n\n{BORDER}\nStravAI Performance Report\n{BORDER}\n{SIGNATURE}"

    class RacingClient(FakeStravaClient):
        def get_activity(self, activity_id):
            data = super().get_activity(activity_id)
            if self.get_calls.count(activity_id) > 1:
                data["description"] = finished
            return data

    client = RacingClient([run_payload(1, NOW - timedelta(hours=1))])
    service, _ = _build(client, [ProviderError("RESOURCE_EXHAUSTED")], goals)
    report = service.run_pass()

    assert report.quota_halted is True
    assert report.placeholders == []
    assert [u for u in client.updates if u[0] == 1] == []


def test_analysis_error_does_not_stop_pass(goals):
    client = FakeStravaClient(
        [
            run_payload(1, NOW - timedelta(hours=1)),
            run_payload(2, NOW - timedelta(hours=2)),
        ]
    )
    responses = [ProviderError("bad"), ProviderError("bad"), "", analysis_payload()]
    service, _ = _build(client, responses, goals)
    report = service.run_pass()

    assert list(report.failed) == [1]
    assert report.analyzed == [2]
    assert client.activities[1]["description"] == ""


def test_write_back_failure_is_per_candidate(goals):
    client = FakeStravaClient(
        [
            run_payload(1, NOW - timedelta(hours=1)),
            run_payload(2, NOW - timedelta(hours=2)),
        ]
    )
    client.errors[("update", 1)] = StravaAPIError("conflict")
    service, _ = _build(client, [analysis_payload(), analysis_payload()], goals)
    report = service.run_pass()

    assert list(report.failed) == [1]
    assert report.analyzed == [2]


def test_auth_error_aborts_before_any_write(goals):
    client = FakeStravaClient([run_payload(1, NOW - timedelta(hours=1))])
    service, genai = _build(client, [], goals, tokens=FakeTokenCache(AuthError("denied")))
    with pytest.raises(AuthError):
        service.run_pass()
    assert client.updates == []
    assert client.list_calls == []


def test_crawl_error_aborts_pass(goals):
    client = FakeStravaClient([run_payload(1, NOW - timedelta(hours=1))])
    client.errors["list"] = StravaAPIError("503")
    service, _ = _build(client, [], goals)
    with pytest.raises(CrawlError):
        service.run_pass()
    assert client.updates == []


def test_analyze_activity_handles_single_id(goals):
    client = FakeStravaClient(
        [
            run_payload(7, NOW - timedelta(minutes=5)),
            run_payload(8, NOW - timedelta(days=2)),
        ]
    )
    service, genai = _build(client, [analysis_payload()], goals)
    report = service.analyze_activity(7)

    assert report.analyzed == [7]
    assert client.activities[8]["description"] == ""
    crawl_calls = [c for c in client.list_calls if c["after"] is not None]
    assert len(crawl_calls) == 1


def test_analyze_activity_ignores_other_sports(goals):
    client = FakeStravaClient(
        [run_payload(7, NOW - timedelta(minutes=5), type="Ride", sport_type="Ride")]
    )
    service, genai = _build(client, [], goals)
    report = service.analyze_activity(7)
    assert report.skipped == [7]
    assert genai.models.calls == []


def test_wrongly_typed_quota_block_does_not_abort_pass(goals):
    text = (
        f"{CACHE_START}\n{{}}\n{CACHE_END}\n"
        f"{QUOTA_START}\n{{\"dailyUsed\": \"lots\"}}\n{QUOTA_END}"
    )
    client = FakeStravaClient(
        [
            run_payload(99, NOW - timedelta(days=40), name=RECORD, description=text),
            run_payload(1, NOW - timedelta(hours=1)),
        ]
    )
    service, _ = _build(client, [analysis_payload()], goals)
    report = service.run_pass()

    assert report.analyzed == [1]
    cache_writes = [fields for i, fields in client.updates if i == 99]
    assert '"dailyUsed":1' in cache_writes[-1]["description"]


def test_analyze_activity_skips_cache_record(goals):
    client = FakeStravaClient([_quota_record(3)])
    before = client.activities[99]["description"]
    service, genai = _build(client, [analysis_payload()], goals)
    report = service.analyze_activity(99)

    assert report.skipped == [99]
    assert report.analyzed == []
    assert genai.models.calls == []
    assert client.activities[99]["description"] == before
