"""Materialization of dated instances for task lists and food-safety checklists.

An instance is keyed by ``(scheduled_item_id, bucket_key)`` where the bucket is
the ISO date for recurring items and ``"once"`` for one-off items. The unique
constraint on that pair is what keeps two concurrent callers from creating two
checklists for the same day; the lookup before the insert is only a fast path.
"""

from __future__ import annotations

import datetime
import logging
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from checks import grade_check, score_checks
from database import (
    DEFAULT_PASSING_SCORE,
    ONE_OFF_BUCKET,
    InstanceWorkItem,
    ItemInstance,
    ScheduledItem,
    _utcnow,
    record_audit_log,
)
from errors import AccessDenied, NotFoundError, ValidationError
from recurrence import _as_date

logger = logging.getLogger(__name__)

WORK_ITEM_STATUSES = ("pending", "completed")


def bucket_key_for(item: ScheduledItem, on_date: datetime.date) -> str:
    if item.is_recurring:
        return _as_date(on_date).isoformat()
    return ONE_OFF_BUCKET


def _find_instance(session, item: ScheduledItem, on_date: datetime.date) -> Optional[ItemInstance]:
    """Existing instance for ``on_date``, looked up by what it covers, not by bucket.

    Items can switch between one-off and recurring, so a one-off item takes
    its earliest instance whatever bucket it was filed under, and a recurring
    item takes any instance already dated ``on_date``.
    """
    stmt = select(ItemInstance).where(ItemInstance.scheduled_item_id == item.id)
    if item.is_recurring:
        stmt = stmt.where(ItemInstance.date == on_date)
    stmt = stmt.order_by(ItemInstance.date.asc(), ItemInstance.id.asc())
    return session.scalars(stmt).first()


def _resolve_item(session, item_or_id) -> ScheduledItem:
    item_id = item_or_id.id if isinstance(item_or_id, ScheduledItem) else int(item_or_id)
    item = session.get(ScheduledItem, item_id)
    if item is None:
        raise NotFoundError(f"Scheduled item {item_id} was not found.")
    return item


def get_or_create_instance(
    session,
    item_or_id,
    on_date: datetime.date,
    *,
    actor: str = "system",
) -> ItemInstance:
    """Return the instance of ``item`` for ``on_date``, creating it at most once.

    One-off items own a single instance regardless of the date asked for.
    Recurring items own one instance per local calendar day. Deactivated items
    keep serving their existing instances but never get new ones.
    """
    on_date = _as_date(on_date)
    item = _resolve_item(session, item_or_id)
    item_id = item.id
    key = bucket_key_for(item, on_date)
    existing = _find_instance(session, item, on_date)
    if existing is not None:
        return existing
    if not item.active:
        raise NotFoundError(f"Scheduled item {item_id} is inactive; no new instances are created.")

    instance = ItemInstance(
        scheduled_item_id=item_id,
        date=on_date,
        bucket_key=key,
        status="in_progress",
        created_by=actor or "system",
    )
    for work_item in item.items:
        instance.work_items.append(
            InstanceWorkItem(
                position=work_item.position,
                title=work_item.title,
                description=work_item.description,
                estimated_minutes=work_item.estimated_minutes,
                is_critical=work_item.is_critical,
                check_type=work_item.check_type,
                validationJSON=work_item.validationJSON,
                status="pending",
            )
        )
    session.add(instance)
    try:
        session.flush()
        record_audit_log(
            session,
            user_id=actor or "system",
            action="INSTANCE_CREATE",
            target_type="ItemInstance",
            target_id=instance.id,
            payload={"scheduled_item_id": item_id, "bucket_key": key, "version": item.version},
            commit=False,
        )
        session.commit()
    except IntegrityError:
        session.rollback()
        winner = _find_instance(session, item, on_date)
        if winner is None:
            raise
        logger.debug("Instance for item %s bucket %s created concurrently; reusing %s", item_id, key, winner.id)
        return winner
    session.refresh(instance)
    return instance


def get_instance(session, instance_id: int) -> ItemInstance:
    instance = session.get(ItemInstance, instance_id)
    if instance is None:
        raise NotFoundError(f"Instance {instance_id} was not found.")
    return instance


def _get_work_item(instance: ItemInstance, work_item_id: int) -> InstanceWorkItem:
    for work_item in instance.work_items:
        if work_item.id == work_item_id:
            return work_item
    raise NotFoundError(f"Work item {work_item_id} is not part of instance {instance.id}.")


def _sync_instance_status(instance: ItemInstance, now: datetime.datetime) -> None:
    if instance.work_items and all(item.status == "completed" for item in instance.work_items):
        if instance.status != "completed":
            instance.status = "completed"
            instance.completed_at = now
    else:
        instance.status = "in_progress"
        instance.completed_at = None


def set_work_item_status(
    session,
    instance_id: int,
    work_item_id: int,
    status: str,
    *,
    actor_id: int,
    value: Any = None,
    now: Optional[datetime.datetime] = None,
) -> ItemInstance:
    """Complete or reopen one work item.

    Checks need a recorded ``value`` to complete; it is graded on the spot
    and re-recording a value on a completed check regrades it.
    """
    if status not in WORK_ITEM_STATUSES:
        raise ValidationError(f"Unsupported work item status '{status}'.", [{"field": "status", "value": status}])
    instance = get_instance(session, instance_id)
    work_item = _get_work_item(instance, work_item_id)
    if work_item.assigned_to is not None and work_item.assigned_to != actor_id:
        raise AccessDenied(f"Work item {work_item_id} is assigned to another employee.")
    now = now or _utcnow()
    if status == "completed":
        if work_item.check_type:
            if value is None or str(value).strip() == "":
                raise ValidationError(
                    f"Check '{work_item.title}' needs a recorded value.",
                    [{"field": "value", "work_item_id": work_item.id}],
                )
            work_item.result = grade_check(work_item.check_type, work_item.validation, value)
            work_item.value = str(value).strip()
        if work_item.status != "completed":
            work_item.status = "completed"
            work_item.completed_by = actor_id
            work_item.completed_at = now
        if work_item.result == "fail":
            logger.warning(
                "Check %s on instance %s failed with value %r%s",
                work_item.id,
                instance.id,
                work_item.value,
                " (critical)" if work_item.is_critical else "",
            )
    else:
        work_item.status = "pending"
        work_item.value = None
        work_item.result = None
        work_item.completed_by = None
        work_item.completed_at = None
    _sync_instance_status(instance, now)
    session.commit()
    return instance


def assign_work_item(session, instance_id: int, work_item_id: int, employee_id: Optional[int]) -> InstanceWorkItem:
    instance = get_instance(session, instance_id)
    work_item = _get_work_item(instance, work_item_id)
    work_item.assigned_to = employee_id
    session.commit()
    return work_item


def complete_instance(
    session,
    instance_id: int,
    *,
    actor: str = "system",
    now: Optional[datetime.datetime] = None,
) -> ItemInstance:
    instance = get_instance(session, instance_id)
    pending = [item for item in instance.work_items if item.status != "completed"]
    if pending:
        raise ValidationError(
            "All work items must be completed first.",
            [{"work_item_id": item.id, "title": item.title} for item in pending],
        )
    if instance.status != "completed":
        instance.status = "completed"
        instance.completed_at = now or _utcnow()
        record_audit_log(
            session,
            user_id=actor,
            action="INSTANCE_COMPLETE",
            target_type="ItemInstance",
            target_id=instance.id,
            commit=False,
        )
        session.commit()
    return instance


def list_instances(
    session,
    item_id: int,
    *,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> List[ItemInstance]:
    stmt = select(ItemInstance).where(ItemInstance.scheduled_item_id == item_id)
    if start is not None:
        stmt = stmt.where(ItemInstance.date >= start)
    if end is not None:
        stmt = stmt.where(ItemInstance.date <= end)
    stmt = stmt.order_by(ItemInstance.date.asc(), ItemInstance.id.asc())
    return list(session.scalars(stmt))


def delete_instance(session, instance_id: int) -> None:
    instance = session.get(ItemInstance, instance_id)
    if instance is None:
        return
    session.delete(instance)
    session.commit()


def instance_metrics(instance: ItemInstance) -> Dict[str, Any]:
    """Completion figures for one instance, recomputed from its work items."""
    work_items = list(instance.work_items)
    total = len(work_items)
    completed = sum(1 for item in work_items if item.status == "completed")
    remaining = sum(int(item.estimated_minutes or 0) for item in work_items if item.status != "completed")
    passing_score = instance.scheduled_item.passing_score if instance.scheduled_item else DEFAULT_PASSING_SCORE
    checks = score_checks(work_items, passing_score)
    return {
        "instance_id": instance.id,
        "date": instance.date,
        "status": instance.status,
        "total": total,
        "completed": completed,
        "completion_rate": round(100 * completed / total) if total else 0,
        "remaining_minutes": remaining,
        "score": checks["score"],
        "overall_status": checks["overall_status"],
        "critical_failures": checks["critical_failures"],
    }


def summarize_instances(instances: Iterable[ItemInstance]) -> Dict[str, Any]:
    instances = list(instances)
    rows = [instance_metrics(instance) for instance in instances]
    completions: Counter = Counter()
    for instance in instances:
        for item in instance.work_items:
            if item.status == "completed" and item.completed_by is not None:
                completions[item.completed_by] += 1
    average = round(sum(row["completion_rate"] for row in rows) / len(rows)) if rows else 0
    return {
        "total_instances": len(rows),
        "completed_instances": sum(1 for row in rows if row["status"] == "completed"),
        "average_completion_rate": average,
        "completions_by_user": dict(completions),
        "instances": rows,
    }
