from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

DEFAULT_GRADES: List[Dict[str, Any]] = [
    {"value": 1, "label": "Poor"},
    {"value": 2, "label": "Fair"},
    {"value": 3, "label": "Good"},
    {"value": 4, "label": "Very Good"},
    {"value": 5, "label": "Excellent"},
]

_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)(?:\s*-\s*.*)?$")


def question_key(section_index: int, question_index: int) -> str:
    return f"{section_index}-{question_index}"


def iter_questions(sections: Sequence[Mapping[str, Any]]) -> Iterator[Tuple[str, int, Mapping[str, Any], Mapping[str, Any]]]:
    """Yield (key, section_index, section, question) for every question of a template."""
    for s_idx, section in enumerate(sections or []):
        for q_idx, question in enumerate(section.get("questions") or []):
            yield question_key(s_idx, q_idx), s_idx, section, question


def grades_for(question: Mapping[str, Any], scales: Mapping[Any, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    scale_id = question.get("grading_scale_id")
    if scale_id is not None and scale_id in scales:
        return scales[scale_id]
    if None in scales:
        return scales[None]
    return DEFAULT_GRADES


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def resolve_rating(answer: Any, grades: Sequence[Mapping[str, Any]]) -> Optional[float]:
    """Turn a stored answer into the ordinal value of its grade.

    Numbers are taken as-is. Strings may be numeric ("4", "4 - Very Good") or
    a label, optionally carrying the legacy "- " prefix. Labels match exactly
    (case-insensitive) first, then the first grade in scale order whose label
    is contained in the answer. Overlapping labels make the containment step
    ambiguous; earlier grades win.
    """
    number = _number(answer)
    if number is not None:
        return number
    if not isinstance(answer, str):
        return None
    text = answer.strip()
    if not text:
        return None
    match = _LEADING_NUMBER.match(text)
    if match:
        raw = match.group(1)
        return float(raw) if "." in raw else int(raw)
    if text.startswith("- "):
        text = text[2:].strip()
    lowered = text.lower()
    for grade in grades:
        label = str(grade.get("label") or "").strip().lower()
        if label and label == lowered:
            return grade.get("value")
    for grade in grades:
        label = str(grade.get("label") or "").strip().lower()
        if label and label in lowered:
            return grade.get("value")
    return None


def score_answers(
    sections: Sequence[Mapping[str, Any]],
    answers: Mapping[str, Any],
    scales: Mapping[Any, List[Dict[str, Any]]],
) -> Dict[str, Any]:
    score = 0
    total = 0
    for key, _, _, question in iter_questions(sections):
        if question.get("type", "rating") != "rating":
            continue
        grades = grades_for(question, scales)
        total += len(grades)
        value = resolve_rating(answers.get(key), grades)
        if value is not None:
            score += value
    # Half-up rounding so 62.5 reads as 63.
    percentage = int(math.floor(100 * score / total + 0.5)) if total > 0 else 0
    return {"score": score, "total": total, "percentage": percentage}


def compare_ratings(self_value: Optional[float], manager_value: Optional[float]) -> str:
    if self_value is None or manager_value is None:
        return "equal"
    if manager_value > self_value:
        return "improved"
    if manager_value < self_value:
        return "declined"
    return "equal"


def summarize_evaluation(
    sections: Sequence[Mapping[str, Any]],
    self_answers: Mapping[str, Any],
    manager_answers: Mapping[str, Any],
    scales: Mapping[Any, List[Dict[str, Any]]],
) -> Dict[str, Any]:
    rows: List[Dict[str, Any]] = []
    for key, s_idx, section, question in iter_questions(sections):
        kind = question.get("type", "rating")
        row: Dict[str, Any] = {
            "key": key,
            "section_index": s_idx,
            "section": section.get("title", ""),
            "question": question.get("text", ""),
            "type": kind,
            "self_answer": self_answers.get(key),
            "manager_answer": manager_answers.get(key),
        }
        if kind == "rating":
            grades = grades_for(question, scales)
            row["self_value"] = resolve_rating(self_answers.get(key), grades)
            row["manager_value"] = resolve_rating(manager_answers.get(key), grades)
            row["comparison"] = compare_ratings(row["self_value"], row["manager_value"])
        rows.append(row)
    return {
        "questions": rows,
        "self": score_answers(sections, self_answers, scales),
        "manager": score_answers(sections, manager_answers, scales),
    }
