"""Recurrence rules shared by task lists, food-safety checklists and evaluation cycles.

Only three shapes exist: every day, one weekday per week, and one
"Nth weekday" per month where the week of month is derived from the day of
month (days 1-7 are week 1, 8-14 week 2, ...). Days 29-31 fall in week 5 and
therefore never match a monthly rule.
"""

from __future__ import annotations

import datetime
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule

from errors import ValidationError

RECURRENCE_KINDS = ("daily", "weekly", "monthly")
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
WEEKDAY_TOKENS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
MAX_MONTHLY_WEEK = 4
RRULE_WEEKDAYS = [MO, TU, WE, TH, FR, SA, SU]


def _as_date(value: datetime.date | datetime.datetime) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    raise TypeError("Expected a date or datetime instance.")


def parse_weekday(value: Any) -> int:
    """Return 0 (Monday) .. 6 (Sunday) for an int, a day name or a short token."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid weekday '{value}'.", [{"field": "weekday", "value": value}])
    if isinstance(value, int):
        if 0 <= value <= 6:
            return value
        raise ValidationError(f"Weekday index {value} is out of range.", [{"field": "weekday", "value": value}])
    if isinstance(value, str):
        token = value.strip().lower()
        if token.isdigit():
            return parse_weekday(int(token))
        for idx, name in enumerate(WEEKDAY_NAMES):
            if token == name or token == name[:3]:
                return idx
    raise ValidationError(f"Invalid weekday '{value}'.", [{"field": "weekday", "value": value}])


def week_of_month(date_value: datetime.date) -> int:
    return math.ceil(_as_date(date_value).day / 7)


@dataclass(frozen=True)
class RecurrenceSpec:
    kind: str
    weekly_day: Optional[int] = None
    monthly_week: Optional[int] = None
    monthly_day: Optional[int] = None

    def __post_init__(self) -> None:
        problems = []
        if self.kind not in RECURRENCE_KINDS:
            problems.append({"field": "kind", "value": self.kind})
        elif self.kind == "weekly":
            if self.weekly_day is None or not 0 <= self.weekly_day <= 6:
                problems.append({"field": "weekly_day", "value": self.weekly_day})
        elif self.kind == "monthly":
            if self.monthly_week is None or not 1 <= self.monthly_week <= MAX_MONTHLY_WEEK:
                problems.append({"field": "monthly_week", "value": self.monthly_week})
            if self.monthly_day is None or not 0 <= self.monthly_day <= 6:
                problems.append({"field": "monthly_day", "value": self.monthly_day})
        if problems:
            raise ValidationError("Malformed recurrence rule.", problems)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecurrenceSpec":
        if not isinstance(payload, Mapping):
            raise ValidationError("Recurrence rule must be a mapping.", [{"field": "recurrence", "value": payload}])
        kind = payload.get("kind") or payload.get("frequency") or payload.get("recurringType")
        kind = str(kind).strip().lower() if kind else ""
        weekly_raw = payload.get("weekly_day", payload.get("weeklyDay"))
        monthly_week_raw = payload.get("monthly_week", payload.get("monthlyWeek"))
        monthly_day_raw = payload.get("monthly_day", payload.get("monthlyDay"))
        weekly_day = parse_weekday(weekly_raw) if kind == "weekly" and weekly_raw is not None else None
        monthly_day = parse_weekday(monthly_day_raw) if kind == "monthly" and monthly_day_raw is not None else None
        monthly_week = None
        if kind == "monthly" and monthly_week_raw is not None:
            try:
                monthly_week = int(monthly_week_raw)
            except (TypeError, ValueError):
                raise ValidationError(
                    "Malformed recurrence rule.", [{"field": "monthly_week", "value": monthly_week_raw}]
                ) from None
        return cls(kind=kind, weekly_day=weekly_day, monthly_week=monthly_week, monthly_day=monthly_day)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind}
        if self.kind == "weekly":
            payload["weekly_day"] = WEEKDAY_NAMES[self.weekly_day]
        elif self.kind == "monthly":
            payload["monthly_week"] = self.monthly_week
            payload["monthly_day"] = WEEKDAY_NAMES[self.monthly_day]
        return payload

    @property
    def label(self) -> str:
        if self.kind == "weekly":
            return f"Every {WEEKDAY_TOKENS[self.weekly_day]}"
        if self.kind == "monthly":
            ordinal = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th"}[self.monthly_week]
            return f"{ordinal} {WEEKDAY_TOKENS[self.monthly_day]} of the month"
        return "Daily"


def matches(spec: RecurrenceSpec, date_value: datetime.date) -> bool:
    day = _as_date(date_value)
    if spec.kind == "daily":
        return True
    if spec.kind == "weekly":
        return day.weekday() == spec.weekly_day
    if spec.kind == "monthly":
        return day.weekday() == spec.monthly_day and week_of_month(day) == spec.monthly_week
    return False


class OccurrenceWindow:
    """Restartable view over the dates in (start, start + horizon_days] matching a rule."""

    def __init__(self, spec: RecurrenceSpec, from_date: datetime.date, horizon_days: int) -> None:
        if horizon_days < 0:
            raise ValidationError("Horizon must not be negative.", [{"field": "horizon_days", "value": horizon_days}])
        self.spec = spec
        self.from_date = _as_date(from_date)
        self.horizon_days = int(horizon_days)

    def to_rrule(self) -> rrule:
        start = datetime.datetime.combine(self.from_date + datetime.timedelta(days=1), datetime.time())
        until = datetime.datetime.combine(self.from_date + datetime.timedelta(days=self.horizon_days), datetime.time())
        if self.spec.kind == "weekly":
            return rrule(WEEKLY, dtstart=start, until=until, byweekday=RRULE_WEEKDAYS[self.spec.weekly_day])
        if self.spec.kind == "monthly":
            # Nth weekday of the month is the same as week_of_month == N for N <= 4
            nth = RRULE_WEEKDAYS[self.spec.monthly_day](self.spec.monthly_week)
            return rrule(MONTHLY, dtstart=start, until=until, byweekday=nth)
        return rrule(DAILY, dtstart=start, until=until)

    def __iter__(self) -> Iterator[datetime.date]:
        if self.horizon_days == 0:
            return
        for occurrence in self.to_rrule():
            yield occurrence.date()

    def __repr__(self) -> str:
        return f"OccurrenceWindow({self.spec!r}, {self.from_date.isoformat()}, {self.horizon_days})"


def enumerate_occurrences(
    spec: RecurrenceSpec, from_date: datetime.date, horizon_days: int
) -> OccurrenceWindow:
    return OccurrenceWindow(spec, from_date, horizon_days)


def cadence_due_date(
    anchor: datetime.date, frequency_days: int, on_or_after: datetime.date
) -> datetime.date:
    """Return anchor + n * frequency_days for the smallest n >= 1 that lands on or after the bound."""
    anchor = _as_date(anchor)
    on_or_after = _as_date(on_or_after)
    frequency = int(frequency_days)
    if frequency < 1:
        raise ValidationError("Frequency must be at least one day.", [{"field": "frequency_days", "value": frequency_days}])
    gap = (on_or_after - anchor).days
    periods = max(1, math.ceil(gap / frequency))
    return anchor + datetime.timedelta(days=periods * frequency)
