"""Expand a weekday-pattern shift request into concrete shift instances.

Weeks are walked Sunday-first, matching how the roster calendar lays them
out: the walk begins at the Sunday on or before the requested start and moves
forward one (weekly) or two (fortnightly) weeks at a time. Inside a visited
week every selected weekday produces one instance, in calendar order, as long
as it falls on or after the requested start and, when a boundary date is
given, on or before it.

An empty weekday set, or a boundary date before the start, yields nothing.
The expander never raises for those cases; callers decide what an empty
result means.
"""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Union


DEFAULT_SHIFT_LENGTH = datetime.timedelta(hours=8)
DEFAULT_OCCURRENCES = 6
MAX_OCCURRENCES = 52
# Upper bound on instances produced under end-date termination.
END_DATE_SAFETY_CAP = 100


class Weekday(str, enum.Enum):
    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"

    @property
    def offset(self) -> int:
        """Days after the Sunday that starts the week."""
        return _WEEK_ORDER.index(self)

    @classmethod
    def of(cls, value: Union[datetime.date, datetime.datetime]) -> "Weekday":
        # date.weekday() counts from Monday = 0.
        return _WEEK_ORDER[(value.weekday() + 1) % 7]

    @classmethod
    def parse(cls, label: str) -> "Weekday":
        normalized = (label or "").strip().lower()
        for day in cls:
            if day.value == normalized or day.value[:3] == normalized:
                return day
        raise ValueError(f"Unknown weekday: {label!r}")


_WEEK_ORDER = list(Weekday)


class Cadence(str, enum.Enum):
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"

    @property
    def step(self) -> datetime.timedelta:
        return datetime.timedelta(days=14 if self is Cadence.FORTNIGHTLY else 7)


@dataclass(frozen=True)
class ShiftInstance:
    start: datetime.datetime
    end: datetime.datetime
    weekday: Weekday


Boundary = Union[datetime.date, datetime.datetime]


def _past_boundary(moment: datetime.datetime, boundary: Optional[Boundary]) -> bool:
    if boundary is None:
        return False
    if isinstance(boundary, datetime.datetime):
        return moment > boundary
    # A plain date covers that whole day.
    return moment.date() > boundary


def _week_start(moment: datetime.datetime) -> datetime.date:
    day = moment.date()
    return day - datetime.timedelta(days=Weekday.of(day).offset)


def expand_weekly_pattern(
    start: datetime.datetime,
    weekdays: Iterable[Weekday],
    cadence: Cadence = Cadence.WEEKLY,
    *,
    end: Optional[datetime.datetime] = None,
    occurrences: Optional[int] = None,
    until: Optional[Boundary] = None,
) -> List[ShiftInstance]:
    """Return the shift instances described by a weekday pattern.

    Exactly one of ``occurrences`` (count termination) or ``until`` (boundary
    date termination) should be supplied. With neither, ``DEFAULT_OCCURRENCES``
    applies. ``end`` defaults to ``start`` plus eight hours; every instance
    keeps the same duration and the time of day of ``start``.
    """
    if occurrences is not None and until is not None:
        raise ValueError("Pass either occurrences or until, not both")
    if end is not None and end <= start:
        raise ValueError("end must be after start")

    selected: FrozenSet[Weekday] = frozenset(weekdays)
    if not selected:
        return []
    if until is not None and _past_boundary(start, until):
        return []

    if until is not None:
        limit = END_DATE_SAFETY_CAP
    else:
        limit = DEFAULT_OCCURRENCES if occurrences is None else occurrences
    if limit <= 0:
        return []

    duration = (end - start) if end is not None else DEFAULT_SHIFT_LENGTH
    ordered_days = sorted(selected, key=lambda day: day.offset)
    week = _week_start(start)
    instances: List[ShiftInstance] = []

    while len(instances) < limit:
        week_moment = datetime.datetime.combine(week, start.timetz())
        if _past_boundary(week_moment, until):
            break
        for day in ordered_days:
            moment = datetime.datetime.combine(week + datetime.timedelta(days=day.offset), start.timetz())
            if moment < start:
                continue
            if _past_boundary(moment, until):
                break
            instances.append(ShiftInstance(start=moment, end=moment + duration, weekday=day))
            if len(instances) >= limit:
                break
        week += cadence.step

    return instances
