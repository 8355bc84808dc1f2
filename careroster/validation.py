from __future__ import annotations

import datetime
from collections import defaultdict
from typing import Any, Dict, List

from sqlalchemy import select

from . import config
from .availability import approved_availability, is_available
from .database import Shift, User, ensure_aware


ACTIVE_STATUSES = ("assigned", "requested", "cancellation_requested", "in-progress", "unassigned")


def _overlaps(first: Shift, second: Shift) -> bool:
    return ensure_aware(first.start_time) < ensure_aware(second.end_time) and ensure_aware(
        second.start_time
    ) < ensure_aware(first.end_time)


def _iso_week(moment: datetime.datetime) -> str:
    year, week, _ = ensure_aware(moment).astimezone(config.LOCAL_TIMEZONE).isocalendar()
    return f"{year} W{week:02d}"


def validate_roster(session, tenant_id: int, start: datetime.datetime, end: datetime.datetime) -> Dict[str, Any]:
    """Return validation findings for the tenant's shifts between ``start`` and ``end``."""
    start, end = ensure_aware(start), ensure_aware(end)
    shifts = list(
        session.scalars(
            select(Shift)
            .where(
                Shift.tenant_id == tenant_id,
                Shift.status.in_(ACTIVE_STATUSES),
                Shift.start_time < end,
                Shift.end_time > start,
            )
            .order_by(Shift.start_time.asc(), Shift.id.asc())
        )
    )
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []

    by_user: Dict[int, List[Shift]] = defaultdict(list)
    for shift in shifts:
        if ensure_aware(shift.end_time) <= ensure_aware(shift.start_time):
            issues.append(
                {
                    "type": "invalid_times",
                    "severity": "error",
                    "shift_id": shift.id,
                    "message": f"Shift '{shift.title}' ends before it starts.",
                }
            )
        if shift.user_id is None:
            warnings.append(
                {
                    "type": "unassigned",
                    "severity": "warning",
                    "shift_id": shift.id,
                    "message": f"Shift '{shift.title}' on {ensure_aware(shift.start_time).date().isoformat()} has no staff member.",
                }
            )
            continue
        by_user[shift.user_id].append(shift)

    names = {
        user.id: user.full_name or user.username
        for user in session.scalars(select(User).where(User.tenant_id == tenant_id, User.id.in_(list(by_user))))
    }
    availability = approved_availability(session, tenant_id, list(by_user))
    for user_id, user_shifts in by_user.items():
        name = names.get(user_id, f"User {user_id}")
        if user_id in availability:
            for shift in user_shifts:
                if not is_available(availability[user_id], shift):
                    warnings.append(
                        {
                            "type": "outside_availability",
                            "severity": "warning",
                            "user_id": user_id,
                            "shift_id": shift.id,
                            "message": f"{name} has not offered availability for shift '{shift.title}'.",
                        }
                    )
        for index, shift in enumerate(user_shifts):
            for other in user_shifts[index + 1:]:
                if ensure_aware(other.start_time) >= ensure_aware(shift.end_time):
                    break
                if _overlaps(shift, other):
                    issues.append(
                        {
                            "type": "double_booked",
                            "severity": "error",
                            "user_id": user_id,
                            "shift_ids": [shift.id, other.id],
                            "message": f"{name} is booked on overlapping shifts {shift.id} and {other.id}.",
                        }
                    )
        weekly_hours: Dict[str, float] = defaultdict(float)
        for shift in user_shifts:
            weekly_hours[_iso_week(shift.start_time)] += shift.scheduled_hours
        for week, hours in sorted(weekly_hours.items()):
            if hours > config.WEEKLY_HOURS_LIMIT:
                warnings.append(
                    {
                        "type": "hours_limit",
                        "severity": "warning",
                        "user_id": user_id,
                        "week": week,
                        "hours": round(hours, 2),
                        "message": f"{name} is rostered {hours:.1f}h in {week} (limit {config.WEEKLY_HOURS_LIMIT}h).",
                    }
                )

    return {
        "start": ensure_aware(start).isoformat(),
        "end": ensure_aware(end).isoformat(),
        "shift_count": len(shifts),
        "issues": issues,
        "warnings": warnings,
    }
