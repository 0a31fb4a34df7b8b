from __future__ import annotations

import datetime
import logging
from typing import Callable, Dict, Optional

from .scheduler import EvaluationCycleScheduler
from scheduling_settings import evaluation_scheduling, load_store_settings
from database import EmployeeSessionLocal, SettingsSessionLocal, list_configured_store_ids

logger = logging.getLogger(__name__)


def schedule_due_evaluations(
    session_factory: Callable,
    today: datetime.date,
    *,
    actor: str = "system",
    store_ids: Optional[list] = None,
    employee_session_factory: Callable = EmployeeSessionLocal,
    settings_session_factory: Callable = SettingsSessionLocal,
) -> Dict:
    """Daily scheduling run across every store with auto scheduling switched on.

    A failing store is logged and reported; the remaining stores still run.
    """
    if today is None:
        raise ValueError("today is required.")
    results: Dict = {"today": today, "stores": [], "errors": []}
    with settings_session_factory() as settings_session:
        candidates = store_ids if store_ids is not None else list_configured_store_ids(settings_session)
        enabled = [
            store_id
            for store_id in candidates
            if evaluation_scheduling(load_store_settings(settings_session, store_id)).get("auto_schedule")
        ]
    for store_id in enabled:
        try:
            with session_factory() as session, employee_session_factory() as employee_session:
                with settings_session_factory() as settings_session:
                    scheduler = EvaluationCycleScheduler(
                        session,
                        employee_session=employee_session,
                        settings_session=settings_session,
                        actor=actor or "system",
                    )
                    results["stores"].append(scheduler.run_due(store_id, today=today))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Scheduled evaluation run failed for store %s", store_id)
            results["errors"].append({"store_id": store_id, "error": str(exc)})
    results["scheduled"] = sum(entry["scheduled"] for entry in results["stores"])
    return results
