"""Global pytest fixtures & helpers.

Adds project root to path and provides in-memory fakes for the Strava API,
the token exchange and the Gemini client so no test touches the network.
"""
from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from stravai.errors import QuotaExhausted
from stravai.models import GoalConfig
from stravai.retry import RetryPolicy


NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTokenCache:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0
        self.invalidated = 0

    def get_access_token(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "token"

    def invalidate(self) -> None:
        self.invalidated += 1


class FakeStravaClient:
    """In-memory stand-in for :class:`StravaClient` keyed by activity id."""

    def __init__(self, activities=None):
        self.activities = {int(a["id"]): dict(a) for a in (activities or [])}
        self.list_calls = []
        self.get_calls = []
        self.updates = []
        self.creates = []
        self.errors = {}
        self._next_id = 900000

    def _ordered(self):
        return sorted(
            self.activities.values(), key=lambda a: a.get("start_date", ""), reverse=True
        )

    def list_activities(self, *, page=1, per_page=200, after=None):
        self.list_calls.append({"page": page, "per_page": per_page, "after": after})
        if "list" in self.errors:
            raise self.errors["list"]
        start = (page - 1) * per_page
        return [dict(a) for a in self._ordered()[start : start + per_page]]

    def get_activity(self, activity_id):
        self.get_calls.append(activity_id)
        if ("get", activity_id) in self.errors:
            raise self.errors[("get", activity_id)]
        return dict(self.activities[int(activity_id)])

    def update_activity(self, activity_id, **fields):
        self.updates.append((activity_id, fields))
        if ("update", activity_id) in self.errors:
            raise self.errors[("update", activity_id)]
        self.activities[int(activity_id)].update(fields)
        return dict(self.activities[int(activity_id)])

    def create_activity(self, payload):
        self._next_id += 1
        record = dict(payload, id=self._next_id, start_date=payload.get("start_date_local"))
        self.creates.append(record)
        self.activities[self._next_id] = record
        return dict(record)


class FakeModels:
    """Mimics ``genai.Client().models`` with scripted responses."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def generate_content(self, *, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        item = self.responses.pop(0) if self.responses else self.responses_exhausted()
        if isinstance(item, Exception):
            raise item
        if isinstance(item, (dict, list)):
            item = json.dumps(item)
        return SimpleNamespace(text=item, candidates=[])

    @staticmethod
    def responses_exhausted():
        raise AssertionError("unexpected extra Gemini call")


class FakeGenaiClient:
    def __init__(self, responses=()):
        self.models = FakeModels(responses)


def run_payload(activity_id: int, start: datetime, **extra) -> dict:
    data = {
        "id": activity_id,
        "name": f"Run {activity_id}",
        "type": "Run",
        "sport_type": "Run",
        "start_date": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "distance": 10000.0,
        "moving_time": 3000,
        "average_heartrate": 150.0,
        "max_heartrate": 172.0,
        "description": "",
    }
    data.update(extra)
    return data


def analysis_payload(**overrides) -> dict:
    data = {
        "summary": "Steady aerobic run with even pacing.",
        "activityClassification": "Easy",
        "effectivenessScore": 78,
        "pros": ["Even pacing"],
        "cons": ["Slight drift late"],
        "trendImpact": "Aerobic base improving",
        "goalProgressPercentage": 64,
        "nextWeekFocus": "Threshold volume",
        "nextTrainingSuggestion": {
            "type": "Tempo",
            "distance": "12 km",
            "duration": "60 min",
            "description": "Settle into marathon effort",
            "targetMetrics": "4:55/km, HR < 165",
        },
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def goals():
    return GoalConfig.from_values("Marathon", "2026-12-31", "3:30:00")


@pytest.fixture
def no_sleep_policy():
    return RetryPolicy(
        max_attempts=3,
        is_terminal=lambda exc: isinstance(exc, QuotaExhausted),
        sleep=lambda _s: None,
    )
