from __future__ import annotations

import datetime
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from database import ItemInstance, ScheduledItem, list_scheduled_items
from recurrence import _as_date, enumerate_occurrences, matches
from scheduling_settings import load_store_settings, upcoming_horizon_days


def project_upcoming(
    items: Iterable[ScheduledItem],
    from_date: datetime.date,
    horizon_days: int = 30,
) -> List[Dict[str, Any]]:
    """Group active recurring items by the dates they fall on in (from_date, from_date + horizon].

    Display only; nothing is materialized. One-off items never appear.
    """
    by_date: Dict[datetime.date, List[ScheduledItem]] = defaultdict(list)
    for item in items:
        spec = item.recurrence
        if not item.active or spec is None:
            continue
        for occurrence in enumerate_occurrences(spec, from_date, horizon_days):
            by_date[occurrence].append(item)
    return [{"date": day, "items": by_date[day]} for day in sorted(by_date)]


def items_due_on(
    items: Iterable[ScheduledItem],
    on_date: datetime.date,
    instances_by_item: Optional[Dict[int, Any]] = None,
) -> List[ScheduledItem]:
    """Items a store should work on ``on_date``.

    Recurring items whose rule matches the day, plus one-off items whose
    single instance (if any) is not completed yet.
    """
    on_date = _as_date(on_date)
    instances_by_item = instances_by_item or {}
    due: List[ScheduledItem] = []
    for item in items:
        if not item.active:
            continue
        spec = item.recurrence
        if spec is not None:
            if matches(spec, on_date):
                due.append(item)
            continue
        if item.is_recurring:
            continue
        instance = instances_by_item.get(item.id)
        if instance is None or instance.status != "completed":
            due.append(item)
    return due


def upcoming_for_store(
    session,
    store_id: int,
    from_date: datetime.date,
    horizon_days: Optional[int] = None,
    *,
    kind: Optional[str] = None,
    settings_session=None,
) -> List[Dict[str, Any]]:
    if horizon_days is None:
        horizon_days = upcoming_horizon_days(load_store_settings(settings_session, store_id))
    items = list_scheduled_items(session, store_id, kind=kind)
    return project_upcoming(items, from_date, horizon_days)


def due_for_store(session, store_id: int, on_date: datetime.date, *, kind: Optional[str] = None) -> List[ScheduledItem]:
    items = list_scheduled_items(session, store_id, kind=kind)
    one_off_ids = [item.id for item in items if not item.is_recurring]
    instances: Dict[int, Any] = {}
    if one_off_ids:
        stmt = select(ItemInstance).where(ItemInstance.scheduled_item_id.in_(one_off_ids))
        instances = {instance.scheduled_item_id: instance for instance in session.scalars(stmt)}
    return items_due_on(items, on_date, instances)
