"""Decide whether an activity annotation still needs a coaching report.

The check is a strict allow-list: only a recognised completed-report marker
skips an activity. Placeholders written while the AI budget was exhausted are
always retried, and any other text (plain user notes) is analysed.
"""

from __future__ import annotations

from typing import Optional

SIGNATURE = "[StravAI-Processed]"
PLACEHOLDER_PHRASE = (
    "Activity will be analysed later as soon as the AI coach has capacity"
)
BORDER = "################################"
REPORT_TITLE = "StravAI Performance Report"
PLACEHOLDER_TITLE = "StravAI Report"

_COMPLETED_MARKERS = (
    REPORT_TITLE.lower(),
    PLACEHOLDER_TITLE.lower(),
    SIGNATURE.lower(),
)


def needs_analysis(annotation_text: Optional[str]) -> bool:
    text = (annotation_text or "").strip().lower()
    if not text:
        return True
    if PLACEHOLDER_PHRASE.lower() in text:
        return True
    return not any(marker in text for marker in _COMPLETED_MARKERS)


def strip_report(annotation_text: Optional[str]) -> str:
    """Return the user-authored text that precedes any report block."""

    return (annotation_text or "").split(BORDER, 1)[0].strip()


def merge_annotation(annotation_text: Optional[str], block: str) -> str:
    """Replace any earlier report/placeholder with ``block``, keeping user notes."""

    user_text = strip_report(annotation_text)
    return f"{user_text}\n\n{block}" if user_text else block
