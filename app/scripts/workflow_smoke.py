from __future__ import annotations

import argparse
import datetime
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    Employee,
    EmployeeSessionLocal,
    Evaluation,
    EvaluationTemplate,
    GradingScale,
    SessionLocal,
    SettingsSessionLocal,
    create_scheduled_item,
    init_database,
    list_scheduled_items,
)
from evaluations.scheduler import EvaluationCycleScheduler  # noqa: E402
from evaluations.scoring import DEFAULT_GRADES  # noqa: E402
from evaluations.workflow import EvaluationWorkflow  # noqa: E402
from instances import get_or_create_instance, instance_metrics, set_work_item_status  # noqa: E402
from scheduling_settings import ensure_default_settings  # noqa: E402
from upcoming import project_upcoming  # noqa: E402

DEMO_SECTIONS: List[Dict[str, Any]] = [
    {
        "title": "Guest Service",
        "questions": [
            {"text": "Greets guests promptly", "type": "rating", "required": True},
            {"text": "Handles complaints calmly", "type": "rating", "required": True},
        ],
    },
    {
        "title": "Growth",
        "questions": [
            {"text": "Goals for next quarter", "type": "text", "required": False},
        ],
    },
]


def _seed_store(
    session_factory: Callable,
    employee_session_factory: Callable,
    store_id: int,
    today: datetime.date,
) -> Dict[str, Any]:
    with employee_session_factory() as employee_session:
        existing = list(employee_session.scalars(select(Employee).where(Employee.store_id == store_id)))
        if not existing:
            manager = Employee(store_id=store_id, full_name="Morgan Manager", position="Manager", hire_date=today)
            employee_session.add(manager)
            employee_session.flush()
            employee_session.add_all(
                [
                    Employee(
                        store_id=store_id,
                        full_name="Riley Server",
                        department="FOH",
                        hire_date=today - datetime.timedelta(days=95),
                        evaluator_id=manager.id,
                    ),
                    Employee(
                        store_id=store_id,
                        full_name="Casey Cook",
                        department="BOH",
                        hire_date=today - datetime.timedelta(days=20),
                        evaluator_id=manager.id,
                    ),
                ]
            )
            # Managers evaluate themselves in the demo store.
            manager.evaluator_id = manager.id
            employee_session.commit()

    with session_factory() as session:
        if not session.scalars(select(EvaluationTemplate).where(EvaluationTemplate.store_id == store_id)).first():
            session.add(
                GradingScale(
                    store_id=store_id,
                    name="Standard 5-Point Scale",
                    gradesJSON=json.dumps(DEFAULT_GRADES),
                    is_default=True,
                )
            )
            session.add(
                EvaluationTemplate(store_id=store_id, name="Quarterly Review", sectionsJSON=json.dumps(DEMO_SECTIONS))
            )
            session.commit()
        if not list_scheduled_items(session, store_id):
            create_scheduled_item(
                session,
                {
                    "store_id": store_id,
                    "kind": "food_safety",
                    "name": "Line Temperature Check",
                    "recurrence": {"kind": "daily"},
                    "items": [
                        {
                            "title": "Walk-in cooler",
                            "type": "temperature",
                            "isCritical": True,
                            "validation": {"minTemp": 33, "maxTemp": 41, "warningThreshold": 2, "criticalThreshold": 5},
                        },
                        {
                            "title": "Hot holding",
                            "type": "temperature",
                            "isCritical": True,
                            "validation": {"minTemp": 135, "maxTemp": 165},
                        },
                    ],
                },
            )
            create_scheduled_item(
                session,
                {
                    "store_id": store_id,
                    "kind": "task_list",
                    "name": "Deep Clean Fryers",
                    "recurrence": {"kind": "weekly", "weekly_day": "monday"},
                    "items": ["Drain oil", "Scrub baskets"],
                },
            )
    return {"store_id": store_id}


def run_smoke(
    session_factory: Callable,
    employee_session_factory: Callable,
    settings_session_factory: Callable,
    today: datetime.date,
    *,
    actor: str = "workflow_smoke",
    store_id: int = 1,
) -> Dict[str, Any]:
    """Seed a demo store and drive checklists plus one evaluation end to end.

    Returns a summary dict and a list of problems; an empty list means every
    step behaved.
    """
    ensure_default_settings(settings_session_factory, store_id)
    _seed_store(session_factory, employee_session_factory, store_id, today)
    errors: List[str] = []
    result: Dict[str, Any] = {"today": today, "errors": errors}

    with session_factory() as session:
        items = list_scheduled_items(session, store_id)
        result["upcoming_days"] = len(project_upcoming(items, today, 14))
        daily = next(item for item in items if item.recurrence and item.recurrence.kind == "daily")
        first = get_or_create_instance(session, daily, today, actor=actor)
        second = get_or_create_instance(session, daily.id, today, actor=actor)
        if first.id != second.id:
            errors.append("Daily checklist was materialized twice for the same day.")
        readings = {"Walk-in cooler": "38", "Hot holding": "150"}
        for work_item in list(first.work_items):
            set_work_item_status(
                session, first.id, work_item.id, "completed", actor_id=0, value=readings.get(work_item.title)
            )
        metrics = instance_metrics(first)
        result["checklist"] = metrics
        if first.status != "completed":
            errors.append("Checklist did not complete after every work item was checked off.")
        if metrics["overall_status"] != "pass":
            errors.append(f"Checklist readings graded {metrics['overall_status']} instead of pass.")

    with session_factory() as session, employee_session_factory() as employee_session:
        with settings_session_factory() as settings_session:
            scheduler = EvaluationCycleScheduler(
                session, employee_session=employee_session, settings_session=settings_session, actor=actor
            )
            tally = scheduler.set_auto_schedule(store_id, True, today=today)
            result["scheduling"] = {key: tally[key] for key in ("scheduled", "skipped", "transition_mode")}
            if not tally["evaluation_ids"]:
                errors.append("Enabling auto scheduling created no evaluations.")
                return result
            workflow = EvaluationWorkflow(
                session, employee_session=employee_session, settings_session=settings_session, actor=actor
            )
            evaluation = session.get(Evaluation, tally["evaluation_ids"][0])
            answers = {"0-0": "Very Good", "0-1": 4}
            workflow.submit_self_evaluation(evaluation.id, answers, actor_id=evaluation.employee_id)
            workflow.start_review_now(evaluation.id, actor_id=evaluation.evaluator_id)
            workflow.complete_evaluation(
                evaluation.id,
                {"0-0": 5, "0-1": "- Good"},
                "Strong quarter.",
                actor_id=evaluation.evaluator_id,
            )
            workflow.acknowledge(evaluation.id, actor_id=evaluation.employee_id)
            summary = workflow.evaluation_summary(evaluation.id)
            result["evaluation"] = {
                "id": evaluation.id,
                "status": summary["status"],
                "self": summary["self"],
                "manager": summary["manager"],
                "acknowledged": summary["acknowledged"],
            }
            if summary["status"] != "completed" or not summary["acknowledged"]:
                errors.append("Evaluation did not reach an acknowledged completion.")
    return result


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds a demo store, materializes today's "
            "checklists, enables evaluation auto scheduling and walks one evaluation to sign-off."
        )
    )
    parser.add_argument("--today", help="ISO date (YYYY-MM-DD) to treat as today. Defaults to the current date.")
    parser.add_argument("--store-id", type=int, default=1, help="Store to seed and exercise.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.today:
        try:
            today = datetime.date.fromisoformat(args.today)
        except ValueError as exc:
            raise SystemExit(f"Invalid --today value: {exc}") from exc
    else:
        today = datetime.date.today()
    result = run_smoke(
        SessionLocal,
        EmployeeSessionLocal,
        SettingsSessionLocal,
        today,
        actor=args.actor,
        store_id=args.store_id,
    )
    print(f"[workflow] Upcoming days with work in the next two weeks: {result.get('upcoming_days')}")
    checklist = result.get("checklist") or {}
    print(
        f"[workflow] Checklist {checklist.get('completed')}/{checklist.get('total')} items complete, "
        f"score {checklist.get('score')} ({checklist.get('overall_status')})."
    )
    scheduling = result.get("scheduling") or {}
    print(f"[workflow] Auto scheduling: {scheduling.get('scheduled', 0)} scheduled, {scheduling.get('skipped', 0)} skipped.")
    evaluation = result.get("evaluation")
    if evaluation:
        print(
            f"[workflow] Evaluation {evaluation['id']}: self {evaluation['self']['percentage']}% | "
            f"manager {evaluation['manager']['percentage']}%"
        )
    if result["errors"]:
        for err in result["errors"]:
            print(f"[workflow][error] {err}")
        raise SystemExit(1)
    print("[workflow] All steps passed.")


if __name__ == "__main__":
    main()
