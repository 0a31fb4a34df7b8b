from __future__ import annotations

import copy
from typing import Any, Dict


CYCLE_START_CHOICES = ("hire_date", "last_evaluation")
TRANSITION_MODES = ("complete_cycle", "immediate", "next_period")
LEGACY_TRANSITION_MODES: Dict[str, str] = {"align_next": "next_period"}

DEFAULT_FREQUENCY_DAYS = 90
DEFAULT_PAST_DUE_GRACE_DAYS = 30
DEFAULT_UPCOMING_HORIZON_DAYS = 30
MAX_FREQUENCY_DAYS = 730
MAX_HORIZON_DAYS = 366


EVALUATION_SCHEDULING_DEFAULTS: Dict[str, Any] = {
    "auto_schedule": False,
    "frequency_days": DEFAULT_FREQUENCY_DAYS,
    "cycle_start": "hire_date",
    "transition_mode": "complete_cycle",
    "past_due_grace_days": DEFAULT_PAST_DUE_GRACE_DAYS,
}

TASK_DEFAULTS: Dict[str, Any] = {
    "upcoming_horizon_days": DEFAULT_UPCOMING_HORIZON_DAYS,
}

# camelCase keys written by older clients.
LEGACY_SCHEDULING_KEYS: Dict[str, str] = {
    "autoSchedule": "auto_schedule",
    "frequency": "frequency_days",
    "frequencyDays": "frequency_days",
    "cycleStart": "cycle_start",
    "transitionMode": "transition_mode",
    "pastDueGraceDays": "past_due_grace_days",
}


def build_default_settings() -> Dict[str, Any]:
    return {
        "evaluations": {"scheduling": copy.deepcopy(EVALUATION_SCHEDULING_DEFAULTS)},
        "tasks": copy.deepcopy(TASK_DEFAULTS),
    }
