from __future__ import annotations

import datetime
import json
import sys
import unittest
from pathlib import Path
from typing import Optional

import pytest
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    AuditLog,
    Base,
    Employee,
    EmployeeBase,
    Evaluation,
    EvaluationTemplate,
    SettingsBase,
)
from errors import ConfigurationError, ValidationError  # noqa: E402
from evaluations.api import schedule_due_evaluations  # noqa: E402
from evaluations.scheduler import (  # noqa: E402
    EvaluationCycleScheduler,
    apply_transition_policy,
    next_evaluation_date,
)
from scheduling_settings import evaluation_scheduling, load_store_settings, save_evaluation_scheduling  # noqa: E402

SECTIONS = [{"title": "Service", "questions": [{"text": "Greets guests", "type": "rating", "required": True}]}]


class SchedulerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.employee_engine = create_engine("sqlite:///:memory:", future=True)
        EmployeeBase.metadata.create_all(self.employee_engine)
        self.settings_engine = create_engine("sqlite:///:memory:", future=True)
        SettingsBase.metadata.create_all(self.settings_engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.employee_factory = sessionmaker(bind=self.employee_engine, expire_on_commit=False, future=True)
        self.settings_factory = sessionmaker(bind=self.settings_engine, expire_on_commit=False, future=True)
        self.session = self.session_factory()
        self.employee_session = self.employee_factory()
        self.settings_session = self.settings_factory()
        self.store_id = 1
        self.today = datetime.date(2024, 4, 15)
        self.manager = self._add_employee("Morgan Manager", datetime.date(2020, 1, 1), evaluator=False)

    def tearDown(self) -> None:
        self.session.close()
        self.employee_session.close()
        self.settings_session.close()
        self.engine.dispose()
        self.employee_engine.dispose()
        self.settings_engine.dispose()

    def _add_template(self, store_id: Optional[int] = None) -> EvaluationTemplate:
        template = EvaluationTemplate(
            store_id=store_id or self.store_id,
            name="Quarterly",
            sectionsJSON=json.dumps(SECTIONS),
        )
        self.session.add(template)
        self.session.commit()
        return template

    def _add_employee(
        self,
        name: str,
        hire_date: Optional[datetime.date],
        *,
        evaluator: bool = True,
        store_id: Optional[int] = None,
    ) -> Employee:
        employee = Employee(
            store_id=store_id or self.store_id,
            full_name=name,
            hire_date=hire_date,
            evaluator_id=self.manager.id if evaluator else None,
        )
        self.employee_session.add(employee)
        self.employee_session.commit()
        return employee

    def _scheduler(self) -> EvaluationCycleScheduler:
        return EvaluationCycleScheduler(
            self.session,
            employee_session=self.employee_session,
            settings_session=self.settings_session,
            actor="gm",
        )

    def _evaluations(self, employee_id: Optional[int] = None):
        stmt = select(Evaluation)
        if employee_id is not None:
            stmt = stmt.where(Evaluation.employee_id == employee_id)
        return list(self.session.scalars(stmt.order_by(Evaluation.id)))

    def _scheduling(self):
        return evaluation_scheduling(load_store_settings(self.settings_session, self.store_id))


class EnableAutoScheduleTests(SchedulerTestCase):
    def setUp(self) -> None:
        super().setUp()
        # The manager evaluates themself so validation does not trip on them.
        self.manager.evaluator_id = self.manager.id
        self.employee_session.commit()

    def test_first_due_date_inside_grace_window_creates_evaluation(self) -> None:
        self._add_template()
        employee = self._add_employee("Riley", datetime.date(2024, 1, 1))

        tally = self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        evaluations = self._evaluations(employee.id)
        self.assertEqual(len(evaluations), 1)
        self.assertEqual(evaluations[0].scheduled_date, datetime.date(2024, 3, 31))
        self.assertEqual(evaluations[0].status, "pending_self_evaluation")
        self.assertEqual(evaluations[0].evaluator_id, self.manager.id)
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 6, 29))
        self.assertEqual(tally["scheduled"], 1)
        self.assertEqual(tally["skipped"], 1)  # the manager, hired long ago, is not due
        self.assertTrue(self._scheduling()["auto_schedule"])

    def test_failed_insert_for_one_employee_keeps_the_rest_of_the_batch(self) -> None:
        self._add_template()
        first = self._add_employee("Riley", datetime.date(2024, 1, 1))
        rejected = self._add_employee("Sam", datetime.date(2024, 1, 1))
        last = self._add_employee("Taylor", datetime.date(2024, 1, 1))
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TRIGGER reject_evaluation BEFORE INSERT ON evaluations "
                    f"WHEN NEW.employee_id = {rejected.id} "
                    "BEGIN SELECT RAISE(ABORT, 'rejected'); END"
                )
            )

        tally = self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        self.assertEqual(tally["scheduled"], 2)
        self.assertEqual([entry["employee_id"] for entry in tally["errors"]], [rejected.id])
        self.assertIn("rejected", tally["errors"][0]["error"])
        self.assertEqual(len(self._evaluations(first.id)), 1)
        self.assertEqual(len(self._evaluations(last.id)), 1)
        self.assertEqual(self._evaluations(rejected.id), [])
        self.assertIsNone(rejected.next_evaluation_date)
        self.assertEqual(last.next_evaluation_date, datetime.date(2024, 6, 29))
        creates = self.session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "EVALUATION_CREATE")
        )
        self.assertEqual(creates, 2)

    def test_future_due_date_is_only_persisted(self) -> None:
        self._add_template()
        employee = self._add_employee("Casey", datetime.date(2024, 3, 1))

        tally = self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        self.assertEqual(self._evaluations(employee.id), [])
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 5, 30))
        details = {entry["employee_id"]: entry for entry in tally["skipped_details"]}
        self.assertEqual(details[employee.id]["reason"], "not_due")

    def test_long_overdue_employees_roll_forward_to_the_grace_window(self) -> None:
        self._add_template()
        employee = self._add_employee("Jordan", datetime.date(2023, 1, 1))

        self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        evaluations = self._evaluations(employee.id)
        self.assertEqual([e.scheduled_date for e in evaluations], [datetime.date(2024, 3, 26)])

    def test_unassigned_evaluators_reject_everything(self) -> None:
        self._add_template()
        for idx in range(7):
            self._add_employee(f"Assigned {idx}", datetime.date(2024, 1, 1))
        for idx in range(3):
            self._add_employee(f"Unassigned {idx}", datetime.date(2024, 1, 1), evaluator=False)

        with self.assertRaises(ConfigurationError) as ctx:
            self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        issues = ctx.exception.configuration_issues
        self.assertEqual(issues["unassigned_evaluators"], 3)
        self.assertEqual(issues["total_employees"], 11)
        self.assertEqual(len(issues["employees_without_evaluators"]), 3)
        self.assertEqual(self._evaluations(), [])
        self.assertFalse(self._scheduling()["auto_schedule"])
        next_dates = self.employee_session.scalars(select(Employee.next_evaluation_date)).all()
        self.assertTrue(all(value is None for value in next_dates))
        self.assertEqual(self.session.scalar(select(func.count(AuditLog.id))), 0)

    def test_missing_template_is_a_configuration_issue(self) -> None:
        self._add_employee("Riley", datetime.date(2024, 1, 1))
        with self.assertRaises(ConfigurationError) as ctx:
            self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)
        self.assertIsNone(ctx.exception.configuration_issues["template"])
        self.assertEqual(ctx.exception.configuration_issues["unassigned_evaluators"], 0)

    def test_validation_report_does_not_raise(self) -> None:
        self._add_employee("Unassigned", datetime.date(2024, 1, 1), evaluator=False)
        report = self._scheduler().validate_auto_scheduling(self.store_id)
        self.assertFalse(report["valid"])
        self.assertEqual(report["configuration_issues"]["unassigned_evaluators"], 1)

    def test_open_evaluation_blocks_a_second_one(self) -> None:
        template = self._add_template()
        employee = self._add_employee("Riley", datetime.date(2024, 1, 1))
        self.session.add(
            Evaluation(
                store_id=self.store_id,
                employee_id=employee.id,
                evaluator_id=self.manager.id,
                template_id=template.id,
                scheduled_date=datetime.date(2024, 4, 1),
            )
        )
        self.session.commit()

        tally = self._scheduler().set_auto_schedule(self.store_id, True, "complete_cycle", today=self.today)

        self.assertEqual(len(self._evaluations(employee.id)), 1)
        details = {entry["employee_id"]: entry for entry in tally["skipped_details"]}
        self.assertEqual(details[employee.id]["reason"], "open_evaluation")
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 6, 30))

    def test_disabling_leaves_evaluations_and_dates_alone(self) -> None:
        self._add_template()
        employee = self._add_employee("Riley", datetime.date(2024, 1, 1))
        scheduler = self._scheduler()
        scheduler.set_auto_schedule(self.store_id, True, today=self.today)

        tally = scheduler.set_auto_schedule(self.store_id, False, today=self.today)

        self.assertFalse(tally["auto_schedule"])
        self.assertFalse(self._scheduling()["auto_schedule"])
        self.assertEqual(len(self._evaluations(employee.id)), 1)
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 6, 29))

    def test_unknown_transition_mode_is_rejected(self) -> None:
        self._add_template()
        with self.assertRaises(ValidationError):
            self._scheduler().set_auto_schedule(self.store_id, True, "someday", today=self.today)


class TransitionPolicyTests(SchedulerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager.evaluator_id = self.manager.id
        self.employee_session.commit()
        self._add_template()
        self.employee = self._add_employee("Riley", datetime.date(2024, 1, 1))
        # Mid-cycle: an earlier enablement stored the next date, then scheduling was switched off.
        self.employee.next_evaluation_date = datetime.date(2024, 5, 1)
        self.employee_session.commit()

    def test_complete_cycle_keeps_the_current_cycle_end(self) -> None:
        self._scheduler().set_auto_schedule(self.store_id, True, "complete_cycle", today=self.today)
        self.assertEqual(self._evaluations(self.employee.id), [])
        self.assertEqual(self.employee.next_evaluation_date, datetime.date(2024, 5, 1))
        self.assertEqual(self._scheduling()["transition_mode"], "complete_cycle")

    def test_immediate_creates_an_evaluation_today(self) -> None:
        tally = self._scheduler().set_auto_schedule(self.store_id, True, "immediate", today=self.today)
        evaluations = self._evaluations(self.employee.id)
        self.assertEqual([e.scheduled_date for e in evaluations], [self.today])
        self.assertEqual(self.employee.next_evaluation_date, datetime.date(2024, 7, 14))
        self.assertEqual(tally["transition_mode"], "immediate")

    def test_next_period_defers_a_full_cycle(self) -> None:
        self._scheduler().set_auto_schedule(self.store_id, True, "next_period", today=self.today)
        self.assertEqual(self._evaluations(self.employee.id), [])
        self.assertEqual(self.employee.next_evaluation_date, datetime.date(2024, 7, 14))

    def test_legacy_align_next_reads_as_next_period(self) -> None:
        tally = self._scheduler().set_auto_schedule(self.store_id, True, "align_next", today=self.today)
        self.assertEqual(tally["transition_mode"], "next_period")
        self.assertEqual(self._scheduling()["transition_mode"], "next_period")


class RunDueTests(SchedulerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.manager.evaluator_id = self.manager.id
        self.employee_session.commit()
        self.template = self._add_template()

    def test_run_due_creates_once_and_respects_the_toggle(self) -> None:
        employee = self._add_employee("Riley", datetime.date(2024, 3, 1))
        scheduler = self._scheduler()
        self.assertEqual(scheduler.run_due(self.store_id, today=self.today)["auto_schedule"], False)

        scheduler.set_auto_schedule(self.store_id, True, today=self.today)
        self.assertEqual(self._evaluations(employee.id), [])

        due_day = datetime.date(2024, 5, 30)
        first = scheduler.run_due(self.store_id, today=due_day)
        second = scheduler.run_due(self.store_id, today=due_day)

        self.assertEqual(first["scheduled"], 1)
        self.assertEqual(second["scheduled"], 0)
        self.assertEqual([e.scheduled_date for e in self._evaluations(employee.id)], [due_day])
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 8, 28))

    def test_last_evaluation_anchor(self) -> None:
        save_evaluation_scheduling(self.settings_session, self.store_id, {"cycle_start": "last_evaluation"})
        employee = self._add_employee("Riley", datetime.date(2023, 6, 1))
        self.session.add(
            Evaluation(
                store_id=self.store_id,
                employee_id=employee.id,
                evaluator_id=self.manager.id,
                template_id=self.template.id,
                status="completed",
                scheduled_date=datetime.date(2024, 1, 25),
                completed_at=datetime.datetime(2024, 2, 1, 15, 0),
            )
        )
        self.session.commit()

        self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)

        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 5, 1))
        self.assertEqual(len(self._evaluations(employee.id)), 1)

    def test_refresh_after_completion(self) -> None:
        employee = self._add_employee("Riley", datetime.date(2023, 6, 1))
        scheduler = self._scheduler()

        self.assertEqual(
            scheduler.refresh_after_completion(employee.id, datetime.date(2024, 4, 15)),
            datetime.date(2024, 5, 26),
        )
        save_evaluation_scheduling(self.settings_session, self.store_id, {"cycle_start": "last_evaluation"})
        self.assertEqual(
            scheduler.refresh_after_completion(employee.id, datetime.date(2024, 4, 15)),
            datetime.date(2024, 7, 14),
        )
        self.assertEqual(employee.next_evaluation_date, datetime.date(2024, 7, 14))

    def test_batch_entry_point_only_runs_enabled_stores(self) -> None:
        self._add_employee("Riley", datetime.date(2024, 1, 1))
        other = self._add_employee("Sam", datetime.date(2024, 1, 1), store_id=2)
        self._add_template(store_id=2)
        self._scheduler().set_auto_schedule(self.store_id, True, today=self.today)
        save_evaluation_scheduling(self.settings_session, 2, {"auto_schedule": False})

        result = schedule_due_evaluations(
            self.session_factory,
            datetime.date(2024, 6, 29),
            employee_session_factory=self.employee_factory,
            settings_session_factory=self.settings_factory,
        )

        self.assertEqual([entry["store_id"] for entry in result["stores"]], [self.store_id])
        self.assertEqual(result["errors"], [])
        self.assertEqual(self._evaluations(other.id), [])


@pytest.mark.parametrize(
    "policy, expected",
    [
        ("complete_cycle", datetime.date(2024, 5, 1)),
        ("immediate", datetime.date(2024, 4, 15)),
        ("next_period", datetime.date(2024, 7, 14)),
        ("align_next", datetime.date(2024, 7, 14)),
    ],
)
def test_apply_transition_policy(policy, expected) -> None:
    assert apply_transition_policy(policy, datetime.date(2024, 4, 15), datetime.date(2024, 5, 1), 90) == expected


def test_apply_transition_policy_without_cycle_end_and_bad_mode() -> None:
    assert apply_transition_policy("complete_cycle", datetime.date(2024, 4, 15), None, 90) == datetime.date(2024, 4, 15)
    with pytest.raises(ValidationError):
        apply_transition_policy("whenever", datetime.date(2024, 4, 15), None, 90)


def test_next_evaluation_date_grace_window() -> None:
    hire = datetime.date(2024, 1, 1)
    assert next_evaluation_date(hire, 90, datetime.date(2024, 4, 15), 30) == datetime.date(2024, 3, 31)
    assert next_evaluation_date(hire, 90, datetime.date(2024, 4, 15), 0) == datetime.date(2024, 6, 29)
