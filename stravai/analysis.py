"""Gemini coaching client.

Sends one activity plus a compact history to Gemini with a strict JSON
response schema and turns the reply into an :class:`AnalysisResult`.
Quota exhaustion is surfaced immediately as :class:`QuotaExhausted`; any
other failure (including an empty or unparseable body) is retried under a
:class:`RetryPolicy` and finally raised as :class:`AnalysisError`.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, time as dt_time, timezone
from textwrap import dedent
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from google import genai
from google.genai import types as genai_types

from .config import (
    ANALYSIS_HISTORY_SIZE,
    AUDIT_MAX_RECORDS,
    GEMINI_API_KEY,
    GEMINI_MAX_ATTEMPTS,
    GEMINI_MODEL,
    GEMINI_TIMEOUT_SECONDS,
)
from .errors import AnalysisError, AuthError, QuotaExhausted
from .models import (
    Activity,
    AnalysisResult,
    GoalConfig,
    TrainingSuggestion,
    WorkoutClassification,
)
from .retry import RetryPolicy, exponential_delay
from .utils import Clock, format_pace, utc_now

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_S = genai_types.Schema
_T = genai_types.Type

ANALYSIS_SCHEMA = _S(
    type=_T.OBJECT,
    properties={
        "summary": _S(type=_T.STRING),
        "activityClassification": _S(
            type=_T.STRING,
            enum=[member.value for member in WorkoutClassification],
        ),
        "effectivenessScore": _S(type=_T.NUMBER),
        "pros": _S(type=_T.ARRAY, items=_S(type=_T.STRING)),
        "cons": _S(type=_T.ARRAY, items=_S(type=_T.STRING)),
        "trendImpact": _S(type=_T.STRING),
        "goalProgressPercentage": _S(type=_T.NUMBER),
        "nextWeekFocus": _S(type=_T.STRING),
        "nextTrainingSuggestion": _S(
            type=_T.OBJECT,
            properties={
                "type": _S(type=_T.STRING),
                "distance": _S(type=_T.STRING),
                "duration": _S(type=_T.STRING),
                "description": _S(type=_T.STRING),
                "targetMetrics": _S(type=_T.STRING),
            },
            required=["type", "distance", "duration", "description", "targetMetrics"],
        ),
    },
    required=[
        "summary",
        "activityClassification",
        "effectivenessScore",
        "pros",
        "cons",
        "trendImpact",
        "goalProgressPercentage",
        "nextWeekFocus",
        "nextTrainingSuggestion",
    ],
)

_RUN_CATEGORY = _S(
    type=_T.OBJECT,
    properties={"count": _S(type=_T.INTEGER), "pb": _S(type=_T.STRING)},
    required=["count", "pb"],
)

PROFILE_SCHEMA = _S(
    type=_T.OBJECT,
    properties={
        "summary": _S(type=_T.STRING),
        "coachNotes": _S(type=_T.STRING),
        "milestones": _S(
            type=_T.OBJECT,
            properties={
                key: _RUN_CATEGORY
                for key in (
                    "backyardLoops",
                    "fiveK",
                    "tenK",
                    "twentyK",
                    "halfMarathon",
                    "marathon",
                    "ultra",
                    "other",
                )
            },
        ),
        "triathlon": _S(
            type=_T.OBJECT,
            properties={
                key: _S(type=_T.INTEGER)
                for key in ("sprint", "olympic", "halfIronman", "ironman")
            },
        ),
        "periodic": _S(
            type=_T.OBJECT,
            properties={
                key: _S(type=_T.OBJECT, properties={"distanceKm": _S(type=_T.NUMBER)})
                for key in ("week", "month", "year")
            },
        ),
        "trainingPlan": _S(
            type=_T.ARRAY,
            items=_S(
                type=_T.OBJECT,
                properties={
                    "date": _S(type=_T.STRING),
                    "type": _S(type=_T.STRING),
                    "title": _S(type=_T.STRING),
                    "description": _S(type=_T.STRING),
                },
            ),
        ),
    },
    required=["summary", "coachNotes", "milestones", "periodic", "trainingPlan"],
)

_QUOTA_MARKERS = ("resource_exhausted", "quota exceeded", "exceeded your current quota")


def is_quota_error(exc: BaseException) -> bool:
    """Return True when an SDK error signals exhausted quota (HTTP 429)."""

    if getattr(exc, "code", None) == 429:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _QUOTA_MARKERS)


def days_remaining(race_date: Any, now: datetime) -> int:
    """Whole days until the race, rounded up and never negative."""

    goal = datetime.combine(race_date, dt_time.min, tzinfo=timezone.utc)
    delta = (goal - now).total_seconds() / 86400.0
    return max(0, math.ceil(delta))


def summarize_activity(activity: Activity) -> Dict[str, Any]:
    """Reduce an activity to the handful of numbers the coach needs."""

    return {
        "date": activity.start_time.date().isoformat() if activity.start_time else None,
        "type": activity.type,
        "km": round(activity.distance_km, 2),
        "pace": format_pace(activity.moving_time_seconds, activity.distance_meters),
        "hr": activity.heart_rate_avg,
    }


def summarize_history(history: Sequence[Activity], limit: int) -> List[Dict[str, Any]]:
    ordered = sorted(
        history,
        key=lambda a: a.start_time or datetime.min.replace(tzinfo=timezone.utc),
        reverse=True,
    )
    return [summarize_activity(a) for a in ordered[: max(0, limit)]]


def _clamp_percent(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise AnalysisError(f"{field} is not numeric: {value!r}") from exc
    return min(100.0, max(0.0, number))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def parse_analysis(payload: Mapping[str, Any], days: int) -> AnalysisResult:
    """Validate the structured reply; missing fields raise :class:`AnalysisError`."""

    missing = [key for key in ANALYSIS_SCHEMA.required or [] if key not in payload]
    if missing:
        raise AnalysisError(f"Analysis response missing fields: {', '.join(missing)}")
    suggestion = payload["nextTrainingSuggestion"]
    if not isinstance(suggestion, Mapping):
        raise AnalysisError("nextTrainingSuggestion is not an object")
    classification = WorkoutClassification.parse(payload["activityClassification"])
    if classification.value.lower() != str(payload["activityClassification"]).strip().lower():
        LOGGER.warning(
            "Unknown classification %r mapped to Other", payload["activityClassification"]
        )
    return AnalysisResult(
        summary=str(payload["summary"]).strip(),
        classification=classification,
        effectiveness_score=_clamp_percent(payload["effectivenessScore"], "effectivenessScore"),
        pros=_string_list(payload["pros"]),
        cons=_string_list(payload["cons"]),
        trend_impact=str(payload["trendImpact"]).strip(),
        goal_progress_percentage=_clamp_percent(
            payload["goalProgressPercentage"], "goalProgressPercentage"
        ),
        next_week_focus=str(payload["nextWeekFocus"]).strip(),
        next_training_suggestion=TrainingSuggestion(
            type=str(suggestion.get("type", "")),
            distance=str(suggestion.get("distance", "")),
            duration=str(suggestion.get("duration", "")),
            description=str(suggestion.get("description", "")),
            target_metrics=str(suggestion.get("targetMetrics", "")),
        ),
        days_remaining=days,
    )


def _strip_fences(text: str) -> str:
    if "```json" in text:
        start = text.find("```json") + 7
        return text[start : text.find("```", start)]
    if "```" in text:
        start = text.find("```") + 3
        return text[start : text.find("```", start)]
    return text


def _response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    if text:
        return str(text)
    chunks: List[str] = []
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            part_text = getattr(part, "text", None)
            if part_text:
                chunks.append(part_text)
    return "".join(chunks)


class AnalysisClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = GEMINI_MODEL,
        *,
        client: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        history_size: int = ANALYSIS_HISTORY_SIZE,
        timeout_seconds: int = GEMINI_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        if client is None:
            key = api_key or GEMINI_API_KEY
            if not key:
                raise AuthError("Gemini API key not provided. Set GEMINI_API_KEY or API_KEY.")
            client = genai.Client(
                api_key=key,
                http_options=genai_types.HttpOptions(timeout=timeout_seconds * 1000),
            )
        self._client = client
        self.model = model
        self.history_size = history_size
        self._clock = clock
        self._retry = retry_policy or RetryPolicy(
            max_attempts=GEMINI_MAX_ATTEMPTS,
            delay=exponential_delay,
            is_terminal=lambda exc: isinstance(exc, QuotaExhausted),
        )
        self.api_calls = 0

    def analyze(
        self,
        activity: Activity,
        history: Sequence[Activity],
        goals: GoalConfig,
    ) -> AnalysisResult:
        days = days_remaining(goals.race_date, self._clock())
        prompt = self._activity_prompt(
            activity, summarize_history(history, self.history_size), goals, days
        )
        return self._generate(
            prompt,
            ANALYSIS_SCHEMA,
            lambda payload: parse_analysis(payload, days),
            label=f"Analysis activity={activity.id}",
        )

    def build_profile(
        self, records: Sequence[Mapping[str, Any]], goals: GoalConfig
    ) -> Dict[str, Any]:
        """Ask for a whole-history athlete profile (summary, milestones, plan)."""

        prompt = dedent(
            f"""
            ROLE: Elite performance running coach.
            TASK: Analyse the training history and return an athlete profile.
            GOAL: {goals.race_type} on {goals.race_date.isoformat()} (target {goals.goal_time}).
            Count runs per distance milestone with the best time as "pb",
            report weekly/monthly/yearly distance in km and propose a training
            plan for the next 7 days (ISO dates).
            DATA: {json.dumps(list(records[:AUDIT_MAX_RECORDS]), separators=(",", ":"))}
            """
        ).strip()
        return self._generate(prompt, PROFILE_SCHEMA, dict, label="Profile audit")

    def _activity_prompt(
        self,
        activity: Activity,
        history: List[Dict[str, Any]],
        goals: GoalConfig,
        days: int,
    ) -> str:
        current = summarize_activity(activity)
        current["name"] = activity.name
        current["movingMinutes"] = round(activity.moving_time_seconds / 60.0, 1)
        current["maxHr"] = activity.heart_rate_max
        return dedent(
            f"""
            ROLE: Professional athletic performance coach.
            ATHLETE GOAL: {goals.race_type} on {goals.race_date.isoformat()} (target {goals.goal_time}).
            DAYS REMAINING UNTIL RACE: {days}.
            CURRENT ACTIVITY: {json.dumps(current)}
            RECENT HISTORY (newest first): {json.dumps(history)}
            TASK:
            1. Classify the workout.
            2. Summarise it in 2-3 sentences.
            3. Assess the trend against the goal using the history.
            4. Estimate goal readiness as a percentage (0-100).
            5. Name the primary focus for the next 7 days.
            6. Prescribe the immediate next workout.
            OUTPUT: JSON only.
            """
        ).strip()

    def _generate(
        self,
        prompt: str,
        schema: genai_types.Schema,
        parse: Callable[[Dict[str, Any]], T],
        *,
        label: str,
    ) -> T:
        def attempt() -> T:
            try:
                response = self._client.models.generate_content(
                    model=self.model,
                    contents=prompt,
                    config=genai_types.GenerateContentConfig(
                        response_mime_type="application/json",
                        response_schema=schema,
                    ),
                )
            except Exception as exc:
                if is_quota_error(exc):
                    raise QuotaExhausted(f"AI quota exhausted: {exc}") from exc
                raise
            self.api_calls += 1
            text = _response_text(response).strip()
            if not text:
                raise AnalysisError("Empty response from Gemini")
            try:
                payload = json.loads(_strip_fences(text).strip())
            except ValueError as exc:
                raise AnalysisError(f"Unparseable response from Gemini: {exc}") from exc
            if not isinstance(payload, dict):
                raise AnalysisError(
                    f"Gemini returned {type(payload).__name__}, expected object"
                )
            return parse(payload)

        try:
            return self._retry.call(attempt, label=label)
        except (QuotaExhausted, AnalysisError):
            raise
        except Exception as exc:
            raise AnalysisError(str(exc)) from exc
