from datetime import timedelta

import pytest

from stravai.errors import RemoteStateParseError
from stravai.models import QuotaState
from stravai.remote_state import (
    CACHE_END,
    CACHE_START,
    QUOTA_END,
    QUOTA_START,
    RemoteStateStore,
    decode_state,
    encode_state,
)

from conftest import NOW, FakeClock, FakeStravaClient, run_payload

RECORD = "[StravAI] System Cache"


def _store(client, clock=None):
    return RemoteStateStore(
        client,
        record_name=RECORD,
        lookup_ttl_seconds=600,
        lookup_page_size=100,
        daily_limit=1500,
        minute_limit=15,
        clock=clock or FakeClock(),
    )


def _quota(clock, used=3):
    return QuotaState(
        daily_used=used,
        daily_limit=1500,
        minute_used=1,
        minute_limit=15,
        reset_at=clock() + timedelta(hours=24),
    )


def test_codec_round_trip():
    profile = {"summary": "Ready", "milestones": {"fiveK": {"count": 3, "pb": "19:58"}}}
    quota = {"dailyUsed": 7, "resetAt": "2026-10-20T12:00:00+00:00"}
    decoded = decode_state(encode_state(profile, quota, "19/10/2026 14:00:00 CET"))
    assert decoded.profile == profile
    assert decoded.quota == quota


def test_sections_are_independently_optional():
    text = f"noise\n{QUOTA_START}\n{{\"dailyUsed\": 2}}\n{QUOTA_END}\ntrailer"
    decoded = decode_state(text)
    assert decoded.profile is None
    assert decoded.quota == {"dailyUsed": 2}


def test_invisible_characters_are_stripped():
    text = f"{CACHE_START}\n\ufeff{{\"a\": 1}}\u200b\n{CACHE_END}"
    assert decode_state(text).profile == {"a": 1}


@pytest.mark.parametrize(
    "text",
    [
        "",
        "plain annotation",
        f"{CACHE_START} no end marker",
        f"{CACHE_END} before {CACHE_START}",
    ],
)
def test_missing_markers_decode_to_none(text):
    assert decode_state(text).profile is None


@pytest.mark.parametrize("body", ["{not json", "[1, 2]", "\"text\""])
def test_malformed_section_raises_parse_error(body):
    with pytest.raises(RemoteStateParseError):
        decode_state(f"{CACHE_START}\n{body}\n{CACHE_END}")


def test_write_then_read_round_trip_creates_record_once():
    clock = FakeClock()
    client = FakeStravaClient([run_payload(1, NOW)])
    store = _store(client, clock)
    profile = {"summary": "Base phase", "trainingPlan": [{"date": "2026-10-20"}]}
    quota = _quota(clock)

    record_id = store.write_cache(profile, quota)
    snapshot = store.read_cache()

    assert len(client.creates) == 1
    created = client.creates[0]
    assert created["name"] == RECORD
    assert created["elapsed_time"] == 1
    assert created["private"] == 1
    assert snapshot.profile == profile
    assert snapshot.quota == quota

    store.write_cache({"summary": "Build"}, quota)
    assert len(client.creates) == 1
    assert client.updates[-1][0] == record_id


def test_lookup_is_cached_for_ttl():
    clock = FakeClock()
    client = FakeStravaClient([run_payload(5, NOW, name=RECORD)])
    store = _store(client, clock)

    assert store.find_cache_record_id() == 5
    clock.advance(minutes=9)
    assert store.find_cache_record_id() == 5
    assert len(client.list_calls) == 1

    clock.advance(minutes=2)
    store.find_cache_record_id()
    assert len(client.list_calls) == 2
    assert client.list_calls[0]["per_page"] == 100


def test_read_cache_not_found_without_record():
    store = _store(FakeStravaClient([run_payload(1, NOW)]))
    assert store.read_cache() is None


def test_read_cache_malformed_profile_is_not_found(caplog):
    bad = f"{CACHE_START}\n{{broken\n{CACHE_END}"
    client = FakeStravaClient([run_payload(5, NOW, name=RECORD, description=bad)])
    with caplog.at_level("WARNING"):
        assert _store(client).read_cache() is None
    assert "unreadable" in caplog.text


def test_read_cache_defaults_quota_when_missing():
    clock = FakeClock()
    text = f"{CACHE_START}\n{{\"summary\": \"x\"}}\n{CACHE_END}"
    client = FakeStravaClient([run_payload(5, NOW, name=RECORD, description=text)])
    snapshot = _store(client, clock).read_cache()
    assert snapshot.profile == {"summary": "x"}
    assert snapshot.quota.daily_used == 0
    assert snapshot.quota.reset_at == clock() + timedelta(hours=24)


def test_read_cache_defaults_quota_when_malformed():
    text = (
        f"{CACHE_START}\n{{}}\n{CACHE_END}\n"
        f"{QUOTA_START}\nnot json\n{QUOTA_END}"
    )
    client = FakeStravaClient([run_payload(5, NOW, name=RECORD, description=text)])
    assert _store(client).read_cache().quota.daily_used == 0


def test_is_cache_record_matches_reserved_name():
    store = _store(FakeStravaClient())
    assert store.is_cache_record({"name": RECORD}) is True
    assert store.is_cache_record({"name": "Morning Run"}) is False


@pytest.mark.parametrize(
    "body",
    ['{"dailyUsed": "lots"}', '{"dailyLimit": [1]}', '{"minuteUsed": {"a": 1}}'],
)
def test_read_cache_defaults_quota_when_fields_have_wrong_types(body, caplog):
    text = f"{CACHE_START}\n{{\"summary\": \"x\"}}\n{CACHE_END}\n{QUOTA_START}\n{body}\n{QUOTA_END}"
    client = FakeStravaClient([run_payload(5, NOW, name=RECORD, description=text)])
    with caplog.at_level("WARNING"):
        snapshot = _store(client).read_cache()
    assert snapshot.profile == {"summary": "x"}
    assert snapshot.quota.daily_used == 0
    assert snapshot.quota.daily_limit == 1500
    assert "Quota block unreadable" in caplog.text
