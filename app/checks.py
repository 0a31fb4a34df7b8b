"""Recorded checks on food-safety work items.

A work item with a ``check_type`` needs a recorded value when it is completed.
The value is graded against the item's validation rules into ``pass``,
``warning`` or ``fail``, and an instance's score counts a warning as half a pass.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, Optional

from errors import ValidationError

CHECK_TYPES = ("yes_no", "temperature", "text")
CHECK_RESULTS = ("pass", "warning", "fail")
# Band above the passing score that still reports a warning overall.
WARNING_BAND = 10

_ALIASES = {
    "minTemp": "min_temp",
    "maxTemp": "max_temp",
    "requiredValue": "required_value",
    "requiredPattern": "required_pattern",
    "warningThreshold": "warning_threshold",
    "criticalThreshold": "critical_threshold",
}


def _number(raw, field: str) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field}' must be a number.", [{"field": field, "value": raw}]) from None


def normalize_validation(check_type: Optional[str], raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate the rules for one check and return them with snake_case keys."""
    if check_type is None:
        return {}
    if check_type not in CHECK_TYPES:
        raise ValidationError(f"Unsupported check type '{check_type}'.", [{"field": "type", "value": check_type}])
    rules = {_ALIASES.get(key, key): value for key, value in (raw or {}).items()}

    if check_type == "temperature":
        if rules.get("min_temp") is None or rules.get("max_temp") is None:
            raise ValidationError(
                "Temperature checks need a minimum and a maximum.",
                [{"field": "validation.min_temp"}, {"field": "validation.max_temp"}],
            )
        low = _number(rules["min_temp"], "min_temp")
        high = _number(rules["max_temp"], "max_temp")
        if low > high:
            raise ValidationError("min_temp must not exceed max_temp.", [{"field": "validation.min_temp", "value": low}])
        warning = _number(rules.get("warning_threshold") or 0, "warning_threshold")
        critical = _number(rules.get("critical_threshold") or 0, "critical_threshold")
        if warning < 0 or critical < warning:
            raise ValidationError(
                "Thresholds must satisfy 0 <= warning_threshold <= critical_threshold.",
                [{"field": "validation.warning_threshold", "value": warning}],
            )
        return {
            "min_temp": low,
            "max_temp": high,
            "warning_threshold": warning,
            "critical_threshold": critical,
        }

    if check_type == "yes_no":
        required = str(rules.get("required_value") or "yes").lower()
        if required not in ("yes", "no"):
            raise ValidationError("required_value must be 'yes' or 'no'.", [{"field": "validation.required_value", "value": required}])
        return {"required_value": required}

    pattern = rules.get("required_pattern")
    if pattern:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValidationError(
                f"required_pattern is not a valid regular expression: {exc}",
                [{"field": "validation.required_pattern", "value": pattern}],
            ) from None
        return {"required_pattern": pattern}
    return {}


def grade_check(check_type: str, validation: Dict[str, Any], value) -> str:
    """Grade a recorded value against its rules."""
    if check_type == "temperature":
        temp = _number(value, "value")
        low, high = validation["min_temp"], validation["max_temp"]
        critical = validation.get("critical_threshold", 0)
        warning = validation.get("warning_threshold", 0)
        if temp < low - critical or temp > high + critical:
            return "fail"
        if temp < low - warning or temp > high + warning:
            return "warning"
        return "pass"
    if check_type == "yes_no":
        answer = str(value).strip().lower()
        if answer not in ("yes", "no"):
            raise ValidationError("Yes/no checks take 'yes' or 'no'.", [{"field": "value", "value": value}])
        return "pass" if answer == validation.get("required_value", "yes") else "fail"
    text = str(value or "").strip()
    pattern = validation.get("required_pattern")
    if pattern:
        return "pass" if re.search(pattern, text) else "fail"
    return "pass" if text else "fail"


def score_checks(work_items: Iterable, passing_score: int) -> Dict[str, Any]:
    """Score the graded checks of one instance.

    Only checks with a result count. A failed critical check fails the
    instance outright; otherwise the score decides, with a warning band just
    above the passing score.
    """
    graded = [item for item in work_items if item.check_type and item.result]
    if not graded:
        return {"score": None, "overall_status": None, "critical_failures": []}
    points = sum(1.0 if item.result == "pass" else 0.5 if item.result == "warning" else 0.0 for item in graded)
    score = int(100 * points / len(graded) + 0.5)
    critical_failures = [item.id for item in graded if item.is_critical and item.result == "fail"]
    if critical_failures or score < passing_score:
        overall = "fail"
    elif score < passing_score + WARNING_BAND:
        overall = "warning"
    else:
        overall = "pass"
    return {"score": score, "overall_status": overall, "critical_failures": critical_failures}
