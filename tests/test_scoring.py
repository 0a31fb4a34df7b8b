from __future__ import annotations

import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from evaluations.scoring import (  # noqa: E402
    DEFAULT_GRADES,
    compare_ratings,
    resolve_rating,
    score_answers,
    summarize_evaluation,
)

SECTIONS = [
    {
        "title": "Guest Service",
        "questions": [
            {"text": "Greets guests", "type": "rating", "required": True},
            {"text": "Upsells", "type": "rating", "required": True, "grading_scale_id": 7},
        ],
    },
    {
        "title": "Notes",
        "questions": [{"text": "Anything else?", "type": "text"}],
    },
]
THREE_POINT = [
    {"value": 1, "label": "Needs Work"},
    {"value": 2, "label": "Solid"},
    {"value": 3, "label": "Star"},
]
SCALES = {None: DEFAULT_GRADES, 7: THREE_POINT}


@pytest.mark.parametrize(
    "answer, expected",
    [
        (4, 4),
        (2.5, 2.5),
        ("3", 3),
        ("4 - Very Good", 4),
        ("Very Good", 4),
        ("very good", 4),
        ("- Excellent", 5),
        ("Pretty Good effort", 3),
        ("", None),
        (None, None),
        ("unknown", None),
        (True, None),
    ],
)
def test_resolve_rating(answer, expected) -> None:
    assert resolve_rating(answer, DEFAULT_GRADES) == expected


def test_exact_label_beats_earlier_contained_label() -> None:
    # "Good" is contained in "Very Good" and comes first in scale order.
    assert resolve_rating("Very Good", DEFAULT_GRADES) == 4
    assert resolve_rating("Very Good!", DEFAULT_GRADES) == 3


def test_score_uses_question_scale_and_counts_levels_as_total() -> None:
    result = score_answers(SECTIONS, {"0-0": "Excellent", "0-1": "Star", "1-0": "n/a"}, SCALES)
    assert result == {"score": 8, "total": 8, "percentage": 100}

    partial = score_answers(SECTIONS, {"0-0": 2}, SCALES)
    assert partial == {"score": 2, "total": 8, "percentage": 25}


def test_score_without_rating_questions_is_zero() -> None:
    text_only = [{"title": "Notes", "questions": [{"text": "Thoughts", "type": "text"}]}]
    assert score_answers(text_only, {"0-0": "great"}, SCALES) == {"score": 0, "total": 0, "percentage": 0}


def test_score_falls_back_to_default_grades_without_scales() -> None:
    assert score_answers(SECTIONS[:1], {"0-0": 5, "0-1": 5}, {}) == {"score": 10, "total": 10, "percentage": 100}


@pytest.mark.parametrize(
    "self_value, manager_value, expected",
    [(3, 4, "improved"), (4, 3, "declined"), (3, 3, "equal"), (None, 3, "equal")],
)
def test_compare_ratings(self_value, manager_value, expected) -> None:
    assert compare_ratings(self_value, manager_value) == expected


def test_identical_answers_compare_equal_everywhere() -> None:
    answers = {"0-0": "Good", "0-1": 2, "1-0": "Keep it up"}
    summary = summarize_evaluation(SECTIONS, answers, dict(answers), SCALES)

    ratings = [row for row in summary["questions"] if row["type"] == "rating"]
    assert [row["comparison"] for row in ratings] == ["equal", "equal"]
    assert summary["self"]["percentage"] == summary["manager"]["percentage"]
    assert "comparison" not in summary["questions"][2]


def test_summary_highlights_changes() -> None:
    summary = summarize_evaluation(SECTIONS, {"0-0": 2, "0-1": "Star"}, {"0-0": "- Very Good", "0-1": 1}, SCALES)
    rows = {row["key"]: row for row in summary["questions"]}
    assert rows["0-0"]["comparison"] == "improved"
    assert rows["0-1"]["comparison"] == "declined"
    assert rows["0-0"]["section"] == "Guest Service"
    assert summary["manager"] == {"score": 5, "total": 8, "percentage": 63}
