"""Application state kept inside the annotation of a dedicated Strava activity.

There is no local database: a single "cache record" activity carries two
marker-delimited JSON sections in its description. Grammar::

    [free text]
    ---CACHE_START---
    <profile JSON object>
    ---CACHE_END---
    [free text]
    ---QUOTA_START---
    <quota JSON object>
    ---QUOTA_END---
    [free text]

Both sections are independently optional and text outside them is ignored.
``encode_state`` always writes both sections plus a header line and an
``Updated:`` footer.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from cachetools import TTLCache

from .config import (
    CACHE_RECORD_LOOKUP_PAGE_SIZE,
    CACHE_RECORD_LOOKUP_TTL_SECONDS,
    CACHE_RECORD_NAME,
    GEMINI_DAILY_LIMIT,
    GEMINI_MINUTE_LIMIT,
)
from .errors import RemoteStateParseError
from .models import QuotaState
from .report import ReportFormatter
from .utils import Clock, utc_now

LOGGER = logging.getLogger(__name__)

CACHE_START = "---CACHE_START---"
CACHE_END = "---CACHE_END---"
QUOTA_START = "---QUOTA_START---"
QUOTA_END = "---QUOTA_END---"
CACHE_HEADER = "[StravAI System Cache]"

_INVISIBLE = "\ufeff\u200b"


@dataclass(frozen=True)
class DecodedState:
    profile: Optional[Dict[str, Any]]
    quota: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class CacheSnapshot:
    profile: Dict[str, Any]
    quota: QuotaState


def _extract_section(text: str, start: str, end: str) -> Optional[str]:
    begin = text.find(start)
    if begin < 0:
        return None
    finish = text.find(end, begin + len(start))
    if finish < 0:
        return None
    return text[begin + len(start) : finish]


def _parse_section(raw: str, label: str) -> Dict[str, Any]:
    cleaned = raw.strip().strip(_INVISIBLE).strip()
    try:
        value = json.loads(cleaned)
    except ValueError as exc:
        raise RemoteStateParseError(f"{label} section is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise RemoteStateParseError(
            f"{label} section is {type(value).__name__}, expected object"
        )
    return value


def decode_section(text: str, start: str, end: str, label: str) -> Optional[Dict[str, Any]]:
    """Return the parsed JSON object between ``start``/``end`` or ``None``.

    Raises:
        RemoteStateParseError: markers are present but the payload is not a
            JSON object.
    """

    raw = _extract_section(text or "", start, end)
    if raw is None:
        return None
    return _parse_section(raw, label)


def decode_state(text: str) -> DecodedState:
    return DecodedState(
        profile=decode_section(text, CACHE_START, CACHE_END, "profile"),
        quota=decode_section(text, QUOTA_START, QUOTA_END, "quota"),
    )


def encode_state(profile: Dict[str, Any], quota: Dict[str, Any], updated: str) -> str:
    return "\n".join(
        [
            CACHE_HEADER,
            CACHE_START,
            json.dumps(profile, ensure_ascii=False, separators=(",", ":")),
            CACHE_END,
            QUOTA_START,
            json.dumps(quota, ensure_ascii=False, separators=(",", ":")),
            QUOTA_END,
            f"Updated: {updated}",
        ]
    )


class ActivityStore(Protocol):
    def list_activities(
        self, *, page: int = 1, per_page: int = 200, after: Optional[int] = None
    ) -> List[Dict[str, Any]]: ...

    def get_activity(self, activity_id: int) -> Dict[str, Any]: ...

    def update_activity(self, activity_id: int, **fields: Any) -> Dict[str, Any]: ...

    def create_activity(self, payload: Dict[str, Any]) -> Dict[str, Any]: ...


class RemoteStateStore:
    """Read and write the profile/quota blob held by the cache record."""

    def __init__(
        self,
        client: ActivityStore,
        *,
        record_name: str = CACHE_RECORD_NAME,
        lookup_ttl_seconds: int = CACHE_RECORD_LOOKUP_TTL_SECONDS,
        lookup_page_size: int = CACHE_RECORD_LOOKUP_PAGE_SIZE,
        daily_limit: int = GEMINI_DAILY_LIMIT,
        minute_limit: int = GEMINI_MINUTE_LIMIT,
        clock: Clock = utc_now,
        formatter: ReportFormatter | None = None,
    ) -> None:
        self._client = client
        self.record_name = record_name
        self._page_size = lookup_page_size
        self._daily_limit = daily_limit
        self._minute_limit = minute_limit
        self._clock = clock
        self._formatter = formatter or ReportFormatter(clock=clock)
        # The located id is trusted for lookup_ttl_seconds to bound list calls.
        self._lookup: TTLCache[str, int] = TTLCache(
            maxsize=1,
            ttl=lookup_ttl_seconds,
            timer=lambda: self._clock().timestamp(),
        )

    def find_cache_record_id(self) -> Optional[int]:
        """Return the cache record id, listing one recent page on a cache miss."""

        cached = self._lookup.get("id")
        if cached is not None:
            return cached
        activities = self._client.list_activities(page=1, per_page=self._page_size)
        for activity in activities:
            if activity.get("name") == self.record_name and activity.get("id") is not None:
                record_id = int(activity["id"])
                self._lookup["id"] = record_id
                LOGGER.debug("Located cache record id=%s", record_id)
                return record_id
        LOGGER.info(
            "Cache record %r not found in the latest %s activities",
            self.record_name,
            len(activities),
        )
        return None

    def is_cache_record(self, activity: Dict[str, Any]) -> bool:
        return activity.get("name") == self.record_name

    def default_quota(self) -> QuotaState:
        return QuotaState.fresh(self._clock(), self._daily_limit, self._minute_limit)

    def read_cache(self) -> Optional[CacheSnapshot]:
        """Return the stored profile and quota, or ``None`` when not found.

        A malformed profile section is treated as not found so the next write
        replaces it; a malformed or missing quota section falls back to a
        fresh quota.
        """

        record_id = self.find_cache_record_id()
        if record_id is None:
            return None
        activity = self._client.get_activity(record_id)
        text = str(activity.get("description") or "")
        try:
            profile = decode_section(text, CACHE_START, CACHE_END, "profile")
        except RemoteStateParseError as exc:
            LOGGER.warning("Cache record %s unreadable, treating as empty: %s", record_id, exc)
            return None
        if profile is None:
            LOGGER.warning("Cache record %s has no cache markers", record_id)
            return None
        try:
            raw_quota = decode_section(text, QUOTA_START, QUOTA_END, "quota")
        except RemoteStateParseError as exc:
            LOGGER.warning("Quota block unreadable, using defaults: %s", exc)
            raw_quota = None
        quota = self.default_quota()
        if raw_quota is not None:
            try:
                quota = QuotaState.from_dict(
                    raw_quota,
                    now=self._clock(),
                    daily_limit=self._daily_limit,
                    minute_limit=self._minute_limit,
                )
            except RemoteStateParseError as exc:
                LOGGER.warning("Quota block unreadable, using defaults: %s", exc)
        return CacheSnapshot(profile=profile, quota=quota)

    def write_cache(self, profile: Dict[str, Any], quota: QuotaState) -> int:
        """Persist both sections, creating the cache record on first use.

        Returns the cache record id.
        """

        text = encode_state(profile, quota.to_dict(), self._formatter.timestamp())
        record_id = self.find_cache_record_id()
        self._lookup.clear()
        if record_id is None:
            created = self._client.create_activity(
                {
                    "name": self.record_name,
                    "sport_type": "Run",
                    "type": "Run",
                    "start_date_local": self._clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
                    "elapsed_time": 1,
                    "description": text,
                    "private": 1,
                    "hide_from_home": True,
                }
            )
            record_id = int(created["id"])
            LOGGER.info("Created cache record id=%s", record_id)
        else:
            self._client.update_activity(record_id, description=text)
            LOGGER.debug("Updated cache record id=%s", record_id)
        self._lookup["id"] = record_id
        return record_id
