from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import (
    Employee,
    _coerce_employee_session,
    get_active_template,
    last_completed_evaluation_dates,
    list_store_employees,
    open_evaluations_by_employee,
    record_audit_log,
)
from errors import ConfigurationError, NotFoundError, StateConflict, ValidationError
from recurrence import _as_date, cadence_due_date
from scheduling_settings import evaluation_scheduling, load_store_settings, save_evaluation_scheduling
from settings_defaults import LEGACY_TRANSITION_MODES, TRANSITION_MODES
from .workflow import EvaluationWorkflow

logger = logging.getLogger(__name__)


def next_evaluation_date(
    anchor: datetime.date,
    frequency_days: int,
    today: datetime.date,
    grace_days: int = 0,
) -> datetime.date:
    """First cadence date (anchor + n * frequency, n >= 1) not older than the grace window."""
    bound = _as_date(today) - datetime.timedelta(days=max(0, int(grace_days or 0)))
    return cadence_due_date(anchor, frequency_days, bound)


def normalize_transition_mode(policy: Optional[str]) -> str:
    mode = str(policy or "").strip().lower()
    mode = LEGACY_TRANSITION_MODES.get(mode, mode)
    if mode not in TRANSITION_MODES:
        raise ValidationError(
            f"Unknown transition mode '{policy}'.",
            [{"field": "transition_mode", "value": policy, "allowed": list(TRANSITION_MODES)}],
        )
    return mode


def apply_transition_policy(
    policy: str,
    today: datetime.date,
    current_cycle_end: Optional[datetime.date],
    frequency_days: int,
) -> datetime.date:
    """Next evaluation date for an employee who is mid-cycle when auto scheduling is re-enabled."""
    mode = normalize_transition_mode(policy)
    today = _as_date(today)
    if mode == "immediate":
        return today
    if mode == "next_period":
        return today + datetime.timedelta(days=int(frequency_days))
    return _as_date(current_cycle_end) if current_cycle_end is not None else today


class EvaluationCycleScheduler:
    def __init__(
        self,
        session,
        *,
        employee_session=None,
        settings_session=None,
        actor: str = "system",
    ) -> None:
        self.session = session
        self.employee_session = employee_session
        self.settings_session = settings_session
        self.actor = actor or "system"

    def _scheduling(self, store_id: int) -> Dict[str, Any]:
        return evaluation_scheduling(load_store_settings(self.settings_session, store_id))

    def validate_auto_scheduling(self, store_id: int) -> Dict[str, Any]:
        employees = list_store_employees(self.employee_session, store_id)
        unassigned = [employee for employee in employees if not employee.has_evaluator_assigned]
        template = get_active_template(self.session, store_id)
        issues = {
            "unassigned_evaluators": len(unassigned),
            "total_employees": len(employees),
            "employees_without_evaluators": [
                {"id": employee.id, "name": employee.full_name} for employee in unassigned
            ],
            "template": {"id": template.id, "name": template.name} if template else None,
        }
        return {"valid": not unassigned and template is not None, "configuration_issues": issues}

    def set_auto_schedule(
        self,
        store_id: int,
        enabled: bool,
        policy: Optional[str] = None,
        *,
        today: datetime.date,
    ) -> Dict[str, Any]:
        scheduling = self._scheduling(store_id)
        mode = normalize_transition_mode(policy or scheduling.get("transition_mode"))
        today = _as_date(today)
        if not enabled:
            save_evaluation_scheduling(
                self.settings_session, store_id, {"auto_schedule": False}, edited_by=self.actor
            )
            record_audit_log(
                self.session,
                user_id=self.actor,
                action="AUTO_SCHEDULE_DISABLE",
                target_type="Store",
                target_id=store_id,
            )
            return self._empty_tally(store_id, today, mode, auto_schedule=False)

        report = self.validate_auto_scheduling(store_id)
        if not report["valid"]:
            issues = report["configuration_issues"]
            if issues["unassigned_evaluators"]:
                message = (
                    f"{issues['unassigned_evaluators']} of {issues['total_employees']} employees "
                    "have no evaluator assigned."
                )
            else:
                message = f"Store {store_id} has no active evaluation template."
            logger.warning("Auto scheduling rejected for store %s: %s", store_id, message)
            raise ConfigurationError(message, issues)

        tally = self._schedule_store(store_id, scheduling, today, mode=mode)
        save_evaluation_scheduling(
            self.settings_session,
            store_id,
            {"auto_schedule": True, "transition_mode": mode},
            edited_by=self.actor,
        )
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="AUTO_SCHEDULE_ENABLE",
            target_type="Store",
            target_id=store_id,
            payload={key: tally[key] for key in ("scheduled", "skipped", "transition_mode")},
        )
        tally["auto_schedule"] = True
        return tally

    def run_due(self, store_id: int, *, today: datetime.date) -> Dict[str, Any]:
        """Daily trigger: create evaluations whose stored next date has arrived."""
        scheduling = self._scheduling(store_id)
        today = _as_date(today)
        mode = scheduling.get("transition_mode", "complete_cycle")
        if not scheduling.get("auto_schedule"):
            return self._empty_tally(store_id, today, mode, auto_schedule=False)
        tally = self._schedule_store(store_id, scheduling, today, mode=None)
        tally["transition_mode"] = mode
        tally["auto_schedule"] = True
        return tally

    def refresh_after_completion(self, employee_id: int, completed_on: datetime.date) -> Optional[datetime.date]:
        """Recompute an employee's next evaluation date once an evaluation is signed off."""
        employee_session, close_session = _coerce_employee_session(self.employee_session)
        try:
            employee = employee_session.get(Employee, employee_id)
            if employee is None:
                raise NotFoundError(f"Employee {employee_id} was not found.")
            scheduling = self._scheduling(employee.store_id)
            completed_on = _as_date(completed_on)
            if scheduling.get("cycle_start") == "last_evaluation":
                anchor = completed_on
            else:
                anchor = employee.hire_date or completed_on
            next_date = cadence_due_date(
                anchor, scheduling["frequency_days"], completed_on + datetime.timedelta(days=1)
            )
            employee.next_evaluation_date = next_date
            employee_session.commit()
            logger.info("Employee %s next evaluation moved to %s", employee_id, next_date.isoformat())
            return next_date
        finally:
            if close_session:
                employee_session.close()

    # ------------------------------------------------------------------

    @staticmethod
    def _empty_tally(store_id: int, today: datetime.date, mode: str, *, auto_schedule: bool) -> Dict[str, Any]:
        return {
            "store_id": store_id,
            "today": today,
            "scheduled": 0,
            "skipped": 0,
            "skipped_details": [],
            "errors": [],
            "evaluation_ids": [],
            "auto_schedule": auto_schedule,
            "transition_mode": mode,
        }

    def _plan_employee(
        self,
        employee: Employee,
        scheduling: Dict[str, Any],
        today: datetime.date,
        *,
        mode: Optional[str],
        open_evaluation,
        last_completed: Optional[datetime.date],
    ) -> Dict[str, Any]:
        frequency = int(scheduling["frequency_days"])
        grace = int(scheduling.get("past_due_grace_days", 0))
        plan: Dict[str, Any] = {"employee": employee, "action": "skip", "reason": None, "next_date": None}
        if not employee.has_evaluator_assigned:
            plan["reason"] = "no_evaluator"
            return plan
        if open_evaluation is not None:
            plan["reason"] = "open_evaluation"
            if mode is not None:
                cycle_end = open_evaluation.scheduled_date + datetime.timedelta(days=frequency)
                plan["next_date"] = apply_transition_policy(mode, today, cycle_end, frequency)
            return plan

        if employee.next_evaluation_date is not None:
            if mode is None:
                due = employee.next_evaluation_date
            else:
                due = apply_transition_policy(mode, today, employee.next_evaluation_date, frequency)
        else:
            if scheduling.get("cycle_start") == "last_evaluation" and last_completed is not None:
                anchor = last_completed
            else:
                anchor = employee.hire_date
            if anchor is None:
                plan["reason"] = "no_hire_date"
                return plan
            due = next_evaluation_date(anchor, frequency, today, grace)

        if due <= today:
            plan["action"] = "create"
            plan["due_date"] = due
            plan["next_date"] = due + datetime.timedelta(days=frequency)
        else:
            plan["reason"] = "not_due"
            plan["next_date"] = due
        return plan

    def _schedule_store(
        self,
        store_id: int,
        scheduling: Dict[str, Any],
        today: datetime.date,
        *,
        mode: Optional[str],
    ) -> Dict[str, Any]:
        tally = self._empty_tally(store_id, today, mode or scheduling.get("transition_mode"), auto_schedule=True)
        employee_session, close_session = _coerce_employee_session(self.employee_session)
        try:
            employees = list_store_employees(employee_session, store_id)
            ids = [employee.id for employee in employees]
            open_by_employee = open_evaluations_by_employee(self.session, ids)
            last_completed = last_completed_evaluation_dates(self.session, ids)

            plans: List[Dict[str, Any]] = []
            for employee in employees:
                try:
                    plans.append(
                        self._plan_employee(
                            employee,
                            scheduling,
                            today,
                            mode=mode,
                            open_evaluation=open_by_employee.get(employee.id),
                            last_completed=last_completed.get(employee.id),
                        )
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Could not plan evaluation for employee %s", employee.id)
                    tally["errors"].append({"employee_id": employee.id, "error": str(exc)})

            template = get_active_template(self.session, store_id)
            workflow = EvaluationWorkflow(
                self.session,
                employee_session=employee_session,
                settings_session=self.settings_session,
                actor=self.actor,
            )
            for plan in plans:
                employee = plan["employee"]
                if plan["action"] == "create":
                    if template is None:
                        plan["action"] = "skip"
                        plan["reason"] = "no_template"
                    else:
                        # one savepoint per employee so a failed insert leaves the rest of the batch intact
                        try:
                            with self.session.begin_nested():
                                evaluation = workflow.create_evaluation(
                                    store_id=store_id,
                                    employee_id=employee.id,
                                    evaluator_id=employee.evaluator_id,
                                    scheduled_date=plan["due_date"],
                                    template_id=template.id,
                                    commit=False,
                                )
                        except (StateConflict, ValidationError, NotFoundError) as exc:
                            tally["errors"].append({"employee_id": employee.id, "error": str(exc)})
                            continue
                        except SQLAlchemyError as exc:
                            logger.warning("Could not create evaluation for employee %s: %s", employee.id, exc)
                            tally["errors"].append({"employee_id": employee.id, "error": str(exc)})
                            continue
                        tally["scheduled"] += 1
                        tally["evaluation_ids"].append(evaluation.id)
                if plan["action"] == "skip":
                    tally["skipped"] += 1
                    tally["skipped_details"].append(
                        {
                            "employee_id": employee.id,
                            "name": employee.full_name,
                            "reason": plan["reason"],
                            "next_evaluation_date": plan["next_date"],
                        }
                    )
                if plan["next_date"] is not None:
                    persistent = employee_session.get(Employee, employee.id)
                    persistent.next_evaluation_date = plan["next_date"]
            self.session.commit()
            employee_session.commit()
        finally:
            if close_session:
                employee_session.close()
        logger.info(
            "Store %s evaluation scheduling on %s: %s scheduled, %s skipped, %s errors",
            store_id,
            today.isoformat(),
            tally["scheduled"],
            tally["skipped"],
            len(tally["errors"]),
        )
        return tally
