from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path
from types import SimpleNamespace

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Base,
    ScheduledItem,
    SettingsBase,
    create_scheduled_item,
    upsert_store_settings,
)
from instances import get_or_create_instance, set_work_item_status  # noqa: E402
from recurrence import RecurrenceSpec  # noqa: E402
from settings_defaults import build_default_settings  # noqa: E402
from upcoming import due_for_store, items_due_on, project_upcoming, upcoming_for_store  # noqa: E402


def _item(item_id: int, name: str, spec=None, *, active: bool = True) -> ScheduledItem:
    item = ScheduledItem(id=item_id, store_id=1, name=name, kind="task_list", active=active)
    item.apply_recurrence(spec)
    return item


class ProjectUpcomingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.monday = datetime.date(2024, 1, 1)
        self.weekly = _item(1, "Deep Clean", RecurrenceSpec(kind="weekly", weekly_day=0))
        self.monthly = _item(2, "Inventory", RecurrenceSpec(kind="monthly", monthly_week=1, monthly_day=1))
        self.one_off = _item(3, "Patio Setup")
        self.retired = _item(4, "Old List", RecurrenceSpec(kind="daily"), active=False)

    def test_groups_recurring_items_by_date_and_skips_empty_days(self) -> None:
        groups = project_upcoming([self.weekly, self.monthly, self.one_off, self.retired], self.monday, 14)

        self.assertEqual(
            [group["date"] for group in groups],
            [datetime.date(2024, 1, 2), datetime.date(2024, 1, 8), datetime.date(2024, 1, 15)],
        )
        self.assertEqual(groups[0]["items"], [self.monthly])
        self.assertEqual(groups[1]["items"], [self.weekly])

    def test_daily_items_fill_every_day_and_share_dates(self) -> None:
        daily = _item(5, "Line Check", RecurrenceSpec(kind="daily"))
        groups = project_upcoming([daily, self.weekly], self.monday, 7)

        self.assertEqual(len(groups), 7)
        self.assertEqual(groups[-1]["date"], datetime.date(2024, 1, 8))
        self.assertEqual(groups[-1]["items"], [daily, self.weekly])

    def test_one_off_items_never_project(self) -> None:
        self.assertEqual(project_upcoming([self.one_off], self.monday, 60), [])

    def test_due_view_includes_unfinished_one_off_items(self) -> None:
        items = [self.weekly, self.monthly, self.one_off]
        self.assertEqual(items_due_on(items, self.monday), [self.weekly, self.one_off])

        finished = {3: SimpleNamespace(status="completed")}
        self.assertEqual(items_due_on(items, self.monday, finished), [self.weekly])

        open_instance = {3: SimpleNamespace(status="in_progress")}
        self.assertEqual(items_due_on(items, datetime.date(2024, 1, 2), open_instance), [self.monthly, self.one_off])


class StoreUpcomingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.settings_engine = create_engine("sqlite:///:memory:", future=True)
        SettingsBase.metadata.create_all(self.settings_engine)
        self.session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)()
        self.settings_session = sessionmaker(bind=self.settings_engine, expire_on_commit=False, future=True)()
        self.monday = datetime.date(2024, 1, 1)
        create_scheduled_item(
            self.session,
            {"store_id": 1, "name": "Deep Clean", "recurrence": {"kind": "weekly", "weekly_day": "monday"}},
        )
        create_scheduled_item(
            self.session,
            {
                "store_id": 1,
                "kind": "food_safety",
                "name": "Inventory",
                "recurrence": {"kind": "monthly", "monthly_week": 1, "monthly_day": "tuesday"},
            },
        )
        create_scheduled_item(
            self.session,
            {"store_id": 2, "name": "Other Store", "recurrence": {"kind": "daily"}},
        )

    def tearDown(self) -> None:
        self.session.close()
        self.settings_session.close()
        self.engine.dispose()
        self.settings_engine.dispose()

    def test_store_horizon_comes_from_settings(self) -> None:
        settings = build_default_settings()
        settings["tasks"]["upcoming_horizon_days"] = 5
        upsert_store_settings(self.settings_session, 1, settings, edited_by="tests")

        groups = upcoming_for_store(self.session, 1, self.monday, settings_session=self.settings_session)
        self.assertEqual([group["date"] for group in groups], [datetime.date(2024, 1, 2)])

        wider = upcoming_for_store(self.session, 1, self.monday, 14, settings_session=self.settings_session)
        self.assertEqual(len(wider), 3)

    def test_default_horizon_and_kind_filter(self) -> None:
        groups = upcoming_for_store(self.session, 1, self.monday, settings_session=self.settings_session)
        self.assertEqual(len(groups), 5)  # four Mondays plus the first Tuesday within 30 days

        checklists = upcoming_for_store(
            self.session, 1, self.monday, kind="food_safety", settings_session=self.settings_session
        )
        self.assertEqual([group["date"] for group in checklists], [datetime.date(2024, 1, 2)])

    def test_due_for_store_drops_completed_one_off_items(self) -> None:
        one_off = create_scheduled_item(
            self.session, {"store_id": 1, "name": "Patio Setup", "items": ["Stack chairs"]}
        )
        names = [item.name for item in due_for_store(self.session, 1, self.monday)]
        self.assertEqual(names, ["Deep Clean", "Patio Setup"])

        instance = get_or_create_instance(self.session, one_off, self.monday)
        set_work_item_status(self.session, instance.id, instance.work_items[0].id, "completed", actor_id=1)
        names = [item.name for item in due_for_store(self.session, 1, self.monday)]
        self.assertEqual(names, ["Deep Clean"])
