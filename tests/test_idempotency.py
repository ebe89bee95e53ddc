import pytest

from stravai.idempotency import (
    BORDER,
    PLACEHOLDER_PHRASE,
    SIGNATURE,
    merge_annotation,
    needs_analysis,
    strip_report,
)
from stravai.report import ReportFormatter

from conftest import FakeClock


@pytest.mark.parametrize("text", [None, "", "   \n  "])
def test_empty_annotation_needs_analysis(text):
    assert needs_analysis(text) is True


@pytest.mark.parametrize(
    "text",
    [
        SIGNATURE,
        f"Felt great today!\n\n{SIGNATURE}",
        f"{SIGNATURE.upper()} trailing notes",
        "notes\nStravAI Performance Report\nmore",
    ],
)
def test_completed_marker_skips(text):
    assert needs_analysis(text) is False


def test_placeholder_is_always_retried():
    placeholder = ReportFormatter(clock=FakeClock()).format_placeholder()
    assert SIGNATURE in placeholder
    assert needs_analysis(placeholder) is True
    assert needs_analysis(f"user text\n\n{placeholder}") is True


def test_placeholder_phrase_is_case_insensitive():
    assert needs_analysis(PLACEHOLDER_PHRASE.upper()) is True


@pytest.mark.parametrize(
    "text", ["Easy shakeout with friends", "###", "Report to follow", "stravai"]
)
def test_plain_user_notes_need_analysis(text):
    assert needs_analysis(text) is True


def test_strip_report_keeps_user_text():
    text = f"Legs heavy.\n\n{BORDER}\nold report\n{BORDER}\n{SIGNATURE}"
    assert strip_report(text) == "Legs heavy."


def test_merge_replaces_previous_block():
    old = f"Legs heavy.\n\n{BORDER}\nplaceholder\n{BORDER}\n{SIGNATURE}"
    merged = merge_annotation(old, "NEW BLOCK")
    assert merged == "Legs heavy.\n\nNEW BLOCK"


def test_merge_without_user_text_is_block_only():
    assert merge_annotation("", "NEW BLOCK") == "NEW BLOCK"
    assert merge_annotation(f"{BORDER}\nold", "NEW BLOCK") == "NEW BLOCK"
