from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import RemoteStateParseError
from .utils import parse_date, parse_iso_datetime, to_utc


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return bool(self.value) and now < self.expires_at


@dataclass
class Activity:
    id: int
    name: str
    type: str
    start_time: Optional[datetime]
    distance_meters: float = 0.0
    moving_time_seconds: int = 0
    heart_rate_avg: float | None = None
    heart_rate_max: float | None = None
    annotation_text: str = ""
    sport_type: str | None = None

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "Activity":
        """Build an activity from a Strava summary or detailed payload."""

        return cls(
            id=int(payload["id"]),
            name=str(payload.get("name") or ""),
            type=str(payload.get("type") or payload.get("sport_type") or ""),
            start_time=parse_iso_datetime(payload.get("start_date")),
            distance_meters=float(payload.get("distance") or 0.0),
            moving_time_seconds=int(payload.get("moving_time") or 0),
            heart_rate_avg=_optional_float(payload.get("average_heartrate")),
            heart_rate_max=_optional_float(payload.get("max_heartrate")),
            annotation_text=str(payload.get("description") or ""),
            sport_type=payload.get("sport_type"),
        )

    @property
    def distance_km(self) -> float:
        return self.distance_meters / 1000.0


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class GoalConfig:
    race_type: str
    race_date: date
    goal_time: str

    @classmethod
    def from_values(cls, race_type: str, race_date: str | date, goal_time: str) -> "GoalConfig":
        return cls(race_type=race_type, race_date=parse_date(race_date), goal_time=goal_time)


@dataclass
class QuotaState:
    """Advisory AI usage counters persisted in the cache record."""

    daily_used: int
    daily_limit: int
    minute_used: int
    minute_limit: int
    reset_at: datetime

    @classmethod
    def fresh(cls, now: datetime, daily_limit: int, minute_limit: int) -> "QuotaState":
        return cls(
            daily_used=0,
            daily_limit=daily_limit,
            minute_used=0,
            minute_limit=minute_limit,
            reset_at=to_utc(now) + timedelta(hours=24),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailyUsed": self.daily_used,
            "dailyLimit": self.daily_limit,
            "minuteUsed": self.minute_used,
            "minuteLimit": self.minute_limit,
            "resetAt": self.reset_at.isoformat(),
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        *,
        now: datetime,
        daily_limit: int,
        minute_limit: int,
    ) -> "QuotaState":
        """Parse the persisted quota block; missing fields fall back to defaults.

        Raises :class:`RemoteStateParseError` when a field has the wrong type.
        """

        if not isinstance(data, Mapping):
            raise RemoteStateParseError(
                f"quota block is {type(data).__name__}, expected an object"
            )
        try:
            return cls(
                daily_used=int(data.get("dailyUsed") or 0),
                daily_limit=int(data.get("dailyLimit") or daily_limit),
                minute_used=int(data.get("minuteUsed") or 0),
                minute_limit=int(data.get("minuteLimit") or minute_limit),
                reset_at=parse_iso_datetime(data.get("resetAt"))
                or to_utc(now) + timedelta(hours=24),
            )
        except (TypeError, ValueError) as exc:
            raise RemoteStateParseError(f"invalid quota block: {exc}") from exc

    def copy(self, **changes: Any) -> "QuotaState":
        return replace(self, **changes)


class WorkoutClassification(str, Enum):
    EASY = "Easy"
    TEMPO = "Tempo"
    LONG_RUN = "Long Run"
    INTERVALS = "Intervals"
    THRESHOLD = "Threshold"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Any) -> "WorkoutClassification":
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class TrainingSuggestion:
    type: str
    distance: str
    duration: str
    description: str
    target_metrics: str


@dataclass(frozen=True)
class AnalysisResult:
    summary: str
    classification: WorkoutClassification
    effectiveness_score: float
    pros: List[str]
    cons: List[str]
    trend_impact: str
    goal_progress_percentage: float
    next_week_focus: str
    next_training_suggestion: TrainingSuggestion
    days_remaining: int


@dataclass
class SyncCursor:
    """Crawl position: created per crawl invocation and discarded after."""

    since: datetime
    page: int = 1
    max_pages: int = 8

    @property
    def after_timestamp(self) -> int:
        return int(to_utc(self.since).timestamp())

    @property
    def exhausted(self) -> bool:
        return self.page > self.max_pages


@dataclass
class SyncReport:
    """Outcome of one sync pass, returned to the CLI and the HTTP surface."""

    started_at: datetime
    crawled: int = 0
    candidates: List[int] = field(default_factory=list)
    analyzed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)
    placeholders: List[int] = field(default_factory=list)
    quota_halted: bool = False
    states: List[str] = field(default_factory=list)
