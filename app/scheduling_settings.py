from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Tuple

from database import get_store_settings, upsert_store_settings
from settings_defaults import (
    CYCLE_START_CHOICES,
    EVALUATION_SCHEDULING_DEFAULTS,
    LEGACY_SCHEDULING_KEYS,
    LEGACY_TRANSITION_MODES,
    MAX_FREQUENCY_DAYS,
    MAX_HORIZON_DAYS,
    TASK_DEFAULTS,
    TRANSITION_MODES,
    build_default_settings,
)

logger = logging.getLogger(__name__)


def load_store_settings(conn, store_id: int) -> Dict:
    """Return the store's settings document with defaults applied.

    ``conn`` may be a session, a session factory or ``None`` for the default
    settings database.
    """
    if callable(conn):
        with conn() as session:
            record = get_store_settings(session, store_id)
            return _normalized_with_log(record.params_dict() if record else {}, store_id)
    record = get_store_settings(conn, store_id)
    return _normalized_with_log(record.params_dict() if record else {}, store_id)


def _normalized_with_log(payload: Dict, store_id: int) -> Dict:
    normalized, repairs = normalize_settings(payload)
    if payload and repairs:
        logger.info("Repaired settings for store %s: %s", store_id, "; ".join(repairs))
    return normalized


def _coerce_int(value: Any, default: int, *, minimum: int, maximum: int) -> Tuple[int, bool]:
    if isinstance(value, bool):
        return default, True
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default, True
    if number < minimum or number > maximum:
        return default, True
    return number, False


def _coerce_bool(value: Any) -> Tuple[bool, bool]:
    if isinstance(value, bool):
        return value, False
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value), False
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "yes", "no", "1", "0"}:
        return value.strip().lower() in {"true", "yes", "1"}, False
    return False, True


def normalize_settings(payload: Dict) -> Tuple[Dict, List[str]]:
    """Fill missing values, repair invalid ones and migrate legacy keys.

    Returns the normalized document and a list of human readable repairs so
    callers can surface what changed.
    """
    repairs: List[str] = []
    normalized = copy.deepcopy(payload) if isinstance(payload, dict) else {}
    if payload is not None and not isinstance(payload, dict):
        repairs.append("settings document was not an object; defaults restored")
    defaults = build_default_settings()

    evaluations_cfg = normalized.get("evaluations")
    if not isinstance(evaluations_cfg, dict):
        evaluations_cfg = {}
    normalized["evaluations"] = evaluations_cfg
    scheduling = evaluations_cfg.get("scheduling")
    if not isinstance(scheduling, dict):
        if scheduling is not None:
            repairs.append("evaluations.scheduling was not an object; defaults restored")
        scheduling = {}
    for legacy_key, key in LEGACY_SCHEDULING_KEYS.items():
        if legacy_key in scheduling:
            value = scheduling.pop(legacy_key)
            if key not in scheduling:
                scheduling[key] = value
                repairs.append(f"evaluations.scheduling.{legacy_key} renamed to {key}")

    merged = copy.deepcopy(EVALUATION_SCHEDULING_DEFAULTS)
    merged.update({key: value for key, value in scheduling.items() if key in EVALUATION_SCHEDULING_DEFAULTS})

    if "auto_schedule" in scheduling:
        flag, repaired = _coerce_bool(scheduling["auto_schedule"])
        merged["auto_schedule"] = flag
        if repaired:
            repairs.append("evaluations.scheduling.auto_schedule reset to false")

    frequency, repaired = _coerce_int(
        merged["frequency_days"],
        EVALUATION_SCHEDULING_DEFAULTS["frequency_days"],
        minimum=1,
        maximum=MAX_FREQUENCY_DAYS,
    )
    merged["frequency_days"] = frequency
    if repaired:
        repairs.append(f"evaluations.scheduling.frequency_days reset to {frequency}")

    grace, repaired = _coerce_int(
        merged["past_due_grace_days"],
        EVALUATION_SCHEDULING_DEFAULTS["past_due_grace_days"],
        minimum=0,
        maximum=MAX_FREQUENCY_DAYS,
    )
    merged["past_due_grace_days"] = grace
    if repaired:
        repairs.append(f"evaluations.scheduling.past_due_grace_days reset to {grace}")

    cycle_start = str(merged.get("cycle_start") or "").strip().lower()
    if cycle_start in {"hiredate", "hire"}:
        cycle_start = "hire_date"
    elif cycle_start in {"lastevaluation", "last"}:
        cycle_start = "last_evaluation"
    if cycle_start not in CYCLE_START_CHOICES:
        repairs.append("evaluations.scheduling.cycle_start reset to hire_date")
        cycle_start = EVALUATION_SCHEDULING_DEFAULTS["cycle_start"]
    merged["cycle_start"] = cycle_start

    mode = str(merged.get("transition_mode") or "").strip().lower()
    if mode in LEGACY_TRANSITION_MODES:
        repairs.append(f"evaluations.scheduling.transition_mode {mode} read as {LEGACY_TRANSITION_MODES[mode]}")
        mode = LEGACY_TRANSITION_MODES[mode]
    if mode not in TRANSITION_MODES:
        repairs.append("evaluations.scheduling.transition_mode reset to complete_cycle")
        mode = EVALUATION_SCHEDULING_DEFAULTS["transition_mode"]
    merged["transition_mode"] = mode
    evaluations_cfg["scheduling"] = merged

    tasks_cfg = normalized.get("tasks")
    if not isinstance(tasks_cfg, dict):
        tasks_cfg = copy.deepcopy(defaults["tasks"])
    horizon_raw = tasks_cfg.get("upcoming_horizon_days", tasks_cfg.pop("upcomingHorizonDays", None))
    if horizon_raw is None:
        horizon_raw = TASK_DEFAULTS["upcoming_horizon_days"]
    horizon, repaired = _coerce_int(
        horizon_raw,
        TASK_DEFAULTS["upcoming_horizon_days"],
        minimum=0,
        maximum=MAX_HORIZON_DAYS,
    )
    if repaired:
        repairs.append(f"tasks.upcoming_horizon_days reset to {horizon}")
    tasks_cfg["upcoming_horizon_days"] = horizon
    normalized["tasks"] = tasks_cfg
    return normalized, repairs


def evaluation_scheduling(settings: Dict) -> Dict[str, Any]:
    evaluations_cfg = settings.get("evaluations") if isinstance(settings, dict) else {}
    scheduling = evaluations_cfg.get("scheduling") if isinstance(evaluations_cfg, dict) else None
    if not isinstance(scheduling, dict):
        return copy.deepcopy(EVALUATION_SCHEDULING_DEFAULTS)
    return scheduling


def upcoming_horizon_days(settings: Dict) -> int:
    tasks_cfg = settings.get("tasks") if isinstance(settings, dict) else {}
    if not isinstance(tasks_cfg, dict):
        return TASK_DEFAULTS["upcoming_horizon_days"]
    return int(tasks_cfg.get("upcoming_horizon_days", TASK_DEFAULTS["upcoming_horizon_days"]))


def save_evaluation_scheduling(session, store_id: int, updates: Dict[str, Any], *, edited_by: str = "system") -> Dict:
    """Merge ``updates`` into the store's scheduling block and persist the normalized document."""
    current = load_store_settings(session, store_id)
    scheduling = evaluation_scheduling(current)
    scheduling.update(updates or {})
    current.setdefault("evaluations", {})["scheduling"] = scheduling
    normalized, _ = normalize_settings(current)
    upsert_store_settings(session, store_id, normalized, edited_by=edited_by)
    return normalized


def ensure_default_settings(session_factory, store_id: int) -> None:
    """Seed the default settings document for a store exactly once."""

    with session_factory() as session:
        if get_store_settings(session, store_id):
            return
        upsert_store_settings(session, store_id, build_default_settings(), edited_by="system")
