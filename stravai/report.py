"""Render coaching results into the text block written back to an activity.

Both the report and the placeholder open with the border sentinel and end with
the signature token so the idempotency gate recognises them on the next pass.
The generation timestamp is the only variable line.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from .config import REPORT_TIMEZONE, REPORT_TIMEZONE_LABEL
from .idempotency import (
    BORDER,
    PLACEHOLDER_PHRASE,
    PLACEHOLDER_TITLE,
    REPORT_TITLE,
    SIGNATURE,
)
from .models import AnalysisResult
from .utils import Clock, utc_now


def _fmt_number(value: float) -> str:
    return f"{value:g}"


class ReportFormatter:
    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        timezone_name: str = REPORT_TIMEZONE,
        timezone_label: str = REPORT_TIMEZONE_LABEL,
    ) -> None:
        self._clock = clock
        self._zone = ZoneInfo(timezone_name)
        self._label = timezone_label

    def timestamp(self, when: datetime | None = None) -> str:
        moment = (when or self._clock()).astimezone(self._zone)
        return f"{moment:%d/%m/%Y %H:%M:%S} {self._label}"

    def format(self, result: AnalysisResult) -> str:
        suggestion = result.next_training_suggestion
        lines = [
            BORDER,
            REPORT_TITLE,
            "---",
            "**Coach's Summary:**",
            f"[{result.classification.value}] {result.summary}",
            "",
            f"**Race Readiness:** {_fmt_number(result.goal_progress_percentage)}%"
            f" | **T-Minus:** {result.days_remaining} days",
            f"**Next Week Focus:** {result.next_week_focus}",
            "",
            "**Training Prescription:**",
            f"- **Workout:** {suggestion.type} ({suggestion.distance})",
            f"- **Target:** {suggestion.target_metrics}",
            f"- **Focus:** {suggestion.description}",
            "",
            f"Analysis created at: {self.timestamp()}",
            BORDER,
            SIGNATURE,
        ]
        return "\n".join(lines)

    def format_placeholder(self) -> str:
        lines = [
            BORDER,
            PLACEHOLDER_TITLE,
            "---",
            PLACEHOLDER_PHRASE,
            "",
            f"Analysis created at: {self.timestamp()}",
            BORDER,
            SIGNATURE,
        ]
        return "\n".join(lines)
