from datetime import datetime, timezone

from stravai.idempotency import BORDER, SIGNATURE, needs_analysis
from stravai.models import AnalysisResult, TrainingSuggestion, WorkoutClassification
from stravai.report import ReportFormatter

from conftest import FakeClock


def _result(**overrides):
    data = dict(
        summary="Controlled tempo effort.",
        classification=WorkoutClassification.TEMPO,
        effectiveness_score=81.0,
        pros=["Negative split"],
        cons=[],
        trend_impact="Threshold pace trending down",
        goal_progress_percentage=72.5,
        next_week_focus="Long run durability",
        next_training_suggestion=TrainingSuggestion(
            type="Long Run",
            distance="28 km",
            duration="2h30",
            description="Keep it conversational",
            target_metrics="5:30/km",
        ),
        days_remaining=73,
    )
    data.update(overrides)
    return AnalysisResult(**data)


def test_report_layout():
    text = ReportFormatter(clock=FakeClock()).format(_result())
    lines = text.split("\n")

    assert lines[0] == BORDER
    assert lines[1] == "StravAI Performance Report"
    assert lines[-2] == BORDER
    assert lines[-1] == SIGNATURE
    assert "[Tempo] Controlled tempo effort." in lines
    assert "**Race Readiness:** 72.5% | **T-Minus:** 73 days" in lines
    assert "**Next Week Focus:** Long run durability" in lines
    assert "- **Workout:** Long Run (28 km)" in lines
    assert "- **Target:** 5:30/km" in lines
    assert "- **Focus:** Keep it conversational" in lines


def test_report_timestamp_uses_berlin_time():
    # 12:00 UTC in October is 14:00 in Berlin (summer time).
    clock = FakeClock(datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc))
    text = ReportFormatter(clock=clock).format(_result())
    assert "Analysis created at: 19/10/2026 14:00:00 CET" in text


def test_format_is_deterministic_apart_from_one_timestamp_line():
    clock = FakeClock()
    formatter = ReportFormatter(clock=clock)
    first = formatter.format(_result())
    assert formatter.format(_result()) == first

    clock.advance(minutes=5)
    second = formatter.format(_result())
    diff = [
        (a, b) for a, b in zip(first.split("\n"), second.split("\n")) if a != b
    ]
    assert len(diff) == 1
    assert diff[0][0].startswith("Analysis created at:")


def test_completed_report_is_recognised_by_gate():
    text = ReportFormatter(clock=FakeClock()).format(_result())
    assert needs_analysis(text) is False


def test_placeholder_layout():
    text = ReportFormatter(clock=FakeClock()).format_placeholder()
    lines = text.split("\n")
    assert lines[0] == BORDER
    assert lines[-1] == SIGNATURE
    assert "**Training Prescription:**" not in text
    assert "capacity" in text
