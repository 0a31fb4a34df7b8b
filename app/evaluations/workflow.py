from __future__ import annotations

import datetime
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import update

from database import (
    Evaluation,
    _utcnow,
    get_evaluation,
    get_active_template,
    grading_scales_for_store,
    open_evaluations_by_employee,
    record_audit_log,
)
from errors import AccessDenied, NotFoundError, StateConflict, ValidationError
from scheduling_settings import evaluation_scheduling, load_store_settings
from .scoring import iter_questions, summarize_evaluation

logger = logging.getLogger(__name__)

STATUS_PENDING_SELF = "pending_self_evaluation"
STATUS_PENDING_MANAGER = "pending_manager_review"
STATUS_IN_REVIEW = "in_review_session"
STATUS_COMPLETED = "completed"
EVALUATION_STATUSES = (STATUS_PENDING_SELF, STATUS_PENDING_MANAGER, STATUS_IN_REVIEW, STATUS_COMPLETED)
OPEN_STATUSES = (STATUS_PENDING_SELF, STATUS_PENDING_MANAGER, STATUS_IN_REVIEW)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return not value
    return False


def missing_required_answers(sections: Sequence[Mapping[str, Any]], answers: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Every required question without a usable answer, section by section."""
    missing: List[Dict[str, Any]] = []
    for key, s_idx, section, question in iter_questions(sections):
        if not question.get("required", False):
            continue
        if _is_blank(answers.get(key)):
            missing.append(
                {
                    "section": section.get("title", f"Section {s_idx + 1}"),
                    "question": question.get("text", ""),
                    "key": key,
                }
            )
    return missing


def _clean_answers(answers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if answers is None:
        return {}
    if not isinstance(answers, Mapping):
        raise ValidationError("Answers must be an object keyed by question.", [{"field": "answers"}])
    return {str(key): value for key, value in answers.items()}


def _local_date(moment: datetime.datetime) -> datetime.date:
    """Calendar day of ``moment`` on the server clock; naive values are taken as local already."""
    if moment.tzinfo is None:
        return moment.date()
    return moment.astimezone().date()


class EvaluationWorkflow:
    """Drives an evaluation through self review, manager review, the review session and sign-off.

    Every transition is a conditional UPDATE guarded on the expected status so
    two concurrent submissions cannot both succeed; the loser gets a
    ``StateConflict`` and should refetch.
    """

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

    # ------------------------------------------------------------------
    # Creation

    def create_evaluation(
        self,
        *,
        store_id: int,
        employee_id: int,
        evaluator_id: int,
        scheduled_date: datetime.date,
        template_id: Optional[int] = None,
        commit: bool = True,
    ) -> Evaluation:
        if evaluator_id is None:
            raise ValidationError("An evaluator is required.", [{"field": "evaluator_id"}])
        if template_id is None:
            template = get_active_template(self.session, store_id)
            if template is None:
                raise NotFoundError(f"Store {store_id} has no active evaluation template.")
            template_id = template.id
        if employee_id in open_evaluations_by_employee(self.session, [employee_id]):
            raise StateConflict(
                f"Employee {employee_id} already has an open evaluation.",
                expected="no open evaluation",
                actual="open evaluation",
            )
        evaluation = Evaluation(
            store_id=store_id,
            employee_id=employee_id,
            evaluator_id=evaluator_id,
            template_id=template_id,
            status=STATUS_PENDING_SELF,
            scheduled_date=scheduled_date,
            created_by=self.actor,
        )
        self.session.add(evaluation)
        self.session.flush()
        record_audit_log(
            self.session,
            user_id=self.actor,
            action="EVALUATION_CREATE",
            target_id=evaluation.id,
            payload={"employee_id": employee_id, "scheduled_date": scheduled_date.isoformat()},
            commit=False,
        )
        if commit:
            self.session.commit()
        return evaluation

    # ------------------------------------------------------------------
    # Guards

    def _load(self, evaluation_id: int) -> Evaluation:
        evaluation = get_evaluation(self.session, evaluation_id)
        self.session.refresh(evaluation)
        return evaluation

    @staticmethod
    def _require_status(evaluation: Evaluation, allowed: Tuple[str, ...]) -> None:
        if evaluation.status not in allowed:
            raise StateConflict(
                f"Evaluation {evaluation.id} is {evaluation.status}; expected {' or '.join(allowed)}.",
                expected=allowed[0] if len(allowed) == 1 else list(allowed),
                actual=evaluation.status,
            )

    @staticmethod
    def _require_party(evaluation: Evaluation, actor_id: int, party: str) -> None:
        allowed = evaluation.employee_id if party == "employee" else evaluation.evaluator_id
        if actor_id != allowed:
            raise AccessDenied(f"Only the {party} may perform this step on evaluation {evaluation.id}.")

    def _validate_answers(self, evaluation: Evaluation, answers: Mapping[str, Any]) -> None:
        missing = missing_required_answers(evaluation.template.sections, answers)
        if missing:
            raise ValidationError("Required questions are unanswered.", missing)

    def _transition(
        self,
        evaluation: Evaluation,
        expected: Tuple[str, ...],
        values: Dict[str, Any],
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        actor_id: Any = None,
    ) -> Evaluation:
        values = dict(values)
        values["updated_at"] = _utcnow()
        stmt = (
            update(Evaluation)
            .where(Evaluation.id == evaluation.id, Evaluation.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            self.session.refresh(evaluation)
            raise StateConflict(
                f"Evaluation {evaluation.id} changed concurrently; it is now {evaluation.status}.",
                expected=expected[0] if len(expected) == 1 else list(expected),
                actual=evaluation.status,
            )
        record_audit_log(
            self.session,
            user_id=actor_id if actor_id is not None else self.actor,
            action=action,
            target_id=evaluation.id,
            payload=payload,
            commit=False,
        )
        self.session.commit()
        self.session.refresh(evaluation)
        logger.debug("Evaluation %s: %s", evaluation.id, action)
        return evaluation

    # ------------------------------------------------------------------
    # Transitions

    def submit_self_evaluation(self, evaluation_id: int, answers: Mapping[str, Any], *, actor_id: int) -> Evaluation:
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, (STATUS_PENDING_SELF,))
        self._require_party(evaluation, actor_id, "employee")
        merged = dict(evaluation.self_ratings)
        merged.update(_clean_answers(answers))
        self._validate_answers(evaluation, merged)
        return self._transition(
            evaluation,
            (STATUS_PENDING_SELF,),
            {"selfRatingsJSON": json.dumps(merged), "status": STATUS_PENDING_MANAGER},
            "EVALUATION_SELF_SUBMIT",
            actor_id=actor_id,
        )

    def schedule_review_session(
        self, evaluation_id: int, when: datetime.datetime, *, actor_id: int
    ) -> Evaluation:
        if not isinstance(when, datetime.datetime):
            if isinstance(when, datetime.date):
                when = datetime.datetime.combine(when, datetime.time(), tzinfo=datetime.timezone.utc)
            else:
                raise ValidationError("Review session needs a date.", [{"field": "review_session_date", "value": when}])
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, (STATUS_PENDING_MANAGER,))
        self._require_party(evaluation, actor_id, "evaluator")
        return self._transition(
            evaluation,
            (STATUS_PENDING_MANAGER,),
            {"review_session_date": when, "status": STATUS_IN_REVIEW},
            "EVALUATION_REVIEW_SCHEDULED",
            {"review_session_date": when.isoformat()},
            actor_id=actor_id,
        )

    def start_review_now(self, evaluation_id: int, *, actor_id: int) -> Evaluation:
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, (STATUS_PENDING_MANAGER,))
        self._require_party(evaluation, actor_id, "evaluator")
        return self._transition(
            evaluation,
            (STATUS_PENDING_MANAGER,),
            {"status": STATUS_IN_REVIEW},
            "EVALUATION_REVIEW_STARTED",
            actor_id=actor_id,
        )

    def save_draft(self, evaluation_id: int, answers: Mapping[str, Any], *, actor_id: int) -> Evaluation:
        """Merge partial answers into the caller's own answer set; the status never moves."""
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, OPEN_STATUSES)
        if actor_id == evaluation.employee_id:
            column, current = "selfRatingsJSON", evaluation.self_ratings
        elif actor_id == evaluation.evaluator_id:
            column, current = "managerRatingsJSON", evaluation.manager_ratings
        else:
            raise AccessDenied(f"Only the employee or evaluator may save drafts on evaluation {evaluation.id}.")
        merged = dict(current)
        merged.update(_clean_answers(answers))
        return self._transition(
            evaluation,
            (evaluation.status,),
            {column: json.dumps(merged)},
            "EVALUATION_DRAFT_SAVE",
            {"answer_set": "self" if column == "selfRatingsJSON" else "manager"},
            actor_id=actor_id,
        )

    def complete_evaluation(
        self,
        evaluation_id: int,
        manager_answers: Mapping[str, Any],
        overall_comments: Optional[str] = None,
        *,
        actor_id: int,
        now: Optional[datetime.datetime] = None,
    ) -> Evaluation:
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, (STATUS_IN_REVIEW,))
        self._require_party(evaluation, actor_id, "evaluator")
        merged = dict(evaluation.manager_ratings)
        merged.update(_clean_answers(manager_answers))
        self._validate_answers(evaluation, merged)
        completed_at = now or _utcnow()
        evaluation = self._transition(
            evaluation,
            (STATUS_IN_REVIEW,),
            {
                "managerRatingsJSON": json.dumps(merged),
                "overall_comments": overall_comments,
                "status": STATUS_COMPLETED,
                "completed_at": completed_at,
            },
            "EVALUATION_COMPLETE",
            actor_id=actor_id,
        )
        scheduling = evaluation_scheduling(load_store_settings(self.settings_session, evaluation.store_id))
        if scheduling.get("cycle_start") == "last_evaluation":
            from .scheduler import EvaluationCycleScheduler  # late import to avoid circular deps

            scheduler = EvaluationCycleScheduler(
                self.session,
                employee_session=self.employee_session,
                settings_session=self.settings_session,
                actor=self.actor,
            )
            try:
                scheduler.refresh_after_completion(evaluation.employee_id, _local_date(completed_at))
            except NotFoundError:
                # completion is already committed
                logger.warning(
                    "Evaluation %s completed but employee %s is gone; next evaluation not rescheduled",
                    evaluation.id,
                    evaluation.employee_id,
                )
        return evaluation

    def acknowledge(
        self, evaluation_id: int, *, actor_id: int, now: Optional[datetime.datetime] = None
    ) -> Evaluation:
        evaluation = self._load(evaluation_id)
        self._require_status(evaluation, (STATUS_COMPLETED,))
        self._require_party(evaluation, actor_id, "employee")
        if evaluation.acknowledged:
            return evaluation
        stmt = (
            update(Evaluation)
            .where(
                Evaluation.id == evaluation.id,
                Evaluation.status == STATUS_COMPLETED,
                Evaluation.acknowledged.is_(False),
            )
            .values(acknowledged=True, acknowledged_at=now or _utcnow(), updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            # Acknowledged concurrently.
            self.session.rollback()
            self.session.refresh(evaluation)
            return evaluation
        record_audit_log(
            self.session,
            user_id=actor_id,
            action="EVALUATION_ACKNOWLEDGE",
            target_id=evaluation.id,
            commit=False,
        )
        self.session.commit()
        self.session.refresh(evaluation)
        return evaluation

    # ------------------------------------------------------------------
    # Views

    def evaluation_summary(self, evaluation_id: int) -> Dict[str, Any]:
        evaluation = self._load(evaluation_id)
        scales = grading_scales_for_store(self.session, evaluation.store_id)
        summary = summarize_evaluation(
            evaluation.template.sections,
            evaluation.self_ratings,
            evaluation.manager_ratings,
            scales,
        )
        summary.update(
            {
                "evaluation_id": evaluation.id,
                "employee_id": evaluation.employee_id,
                "evaluator_id": evaluation.evaluator_id,
                "status": evaluation.status,
                "scheduled_date": evaluation.scheduled_date,
                "review_session_date": evaluation.review_session_date,
                "overall_comments": evaluation.overall_comments,
                "acknowledged": evaluation.acknowledged,
            }
        )
        return summary
