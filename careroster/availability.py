"""Staff availability submissions.

Each staff member has at most one active submission. A new submission
supersedes the previous one and waits for a manager's approval; only the
approved submission is checked when a roster is validated.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from . import config
from .budget import classify_shift_type
from .database import (
    InvalidStateError,
    Shift,
    StaffAvailability,
    User,
    ensure_aware,
    get_tenant_record,
    record_activity,
)
from .logging_setup import get_logger
from .pricing import SHIFT_TYPES
from .recurrence import Weekday


AVAILABILITY_STATUSES = ("pending", "approved", "rejected")
# Indexed by ``datetime.weekday()``.
WEEKDAY_NAMES = (
    Weekday.MONDAY.value,
    Weekday.TUESDAY.value,
    Weekday.WEDNESDAY.value,
    Weekday.THURSDAY.value,
    Weekday.FRIDAY.value,
    Weekday.SATURDAY.value,
    Weekday.SUNDAY.value,
)


def normalise_availability(raw: Dict[str, Any]) -> Dict[str, List[str]]:
    """Validate a ``{weekday: [shift types]}`` mapping, keeping weekday order."""
    if not isinstance(raw, dict):
        raise ValueError("availability must map weekdays to shift types")
    raw = {str(day).strip().lower(): types for day, types in raw.items()}
    unknown_days = set(raw) - set(WEEKDAY_NAMES)
    if unknown_days:
        raise ValueError(f"Unknown weekday(s): {', '.join(sorted(unknown_days))}")
    cleaned: Dict[str, List[str]] = {}
    for day in WEEKDAY_NAMES:
        types = raw.get(day) or []
        bad = [shift_type for shift_type in types if shift_type not in SHIFT_TYPES]
        if bad:
            raise ValueError(f"{day}: shift types must be drawn from {', '.join(SHIFT_TYPES)}")
        if types:
            cleaned[day] = [shift_type for shift_type in SHIFT_TYPES if shift_type in types]
    return cleaned


def submit_availability(
    session,
    tenant_id: int,
    user: User,
    payload: Dict[str, Any],
    *,
    logger: Optional[logging.Logger] = None,
) -> StaffAvailability:
    log = get_logger(__name__, logger)
    availability = normalise_availability(payload.get("availability") or {})
    superseded = list(
        session.scalars(
            select(StaffAvailability).where(
                StaffAvailability.tenant_id == tenant_id,
                StaffAvailability.user_id == user.id,
                StaffAvailability.is_active.is_(True),
            )
        )
    )
    for previous in superseded:
        previous.is_active = False
    record = StaffAvailability(
        tenant_id=tenant_id,
        user_id=user.id,
        availability=availability,
        pattern_name=payload.get("pattern_name"),
        is_quick_pattern=bool(payload.get("is_quick_pattern")),
        status="pending",
        is_active=True,
    )
    session.add(record)
    session.flush()
    record_activity(
        session,
        tenant_id,
        user.id,
        "create_availability",
        resource_type="staff_availability",
        resource_id=record.id,
        details={"superseded": [previous.id for previous in superseded]} if superseded else None,
        commit=False,
    )
    session.commit()
    log.info("availability submitted", extra={"user_id": user.id, "availability_id": record.id})
    return record


def current_availability(session, tenant_id: int, user_id: int) -> Optional[StaffAvailability]:
    return session.scalars(
        select(StaffAvailability)
        .where(
            StaffAvailability.tenant_id == tenant_id,
            StaffAvailability.user_id == user_id,
            StaffAvailability.is_active.is_(True),
        )
        .order_by(StaffAvailability.id.desc())
    ).first()


def list_availability(
    session, tenant_id: int, *, status: Optional[str] = None, include_archived: bool = False
) -> List[StaffAvailability]:
    stmt = select(StaffAvailability).where(StaffAvailability.tenant_id == tenant_id)
    if not include_archived:
        stmt = stmt.where(StaffAvailability.is_active.is_(True))
    if status:
        if status not in AVAILABILITY_STATUSES:
            raise ValueError(f"status must be one of {', '.join(AVAILABILITY_STATUSES)}")
        stmt = stmt.where(StaffAvailability.status == status)
    return list(session.scalars(stmt.order_by(StaffAvailability.created_at.desc(), StaffAvailability.id.desc())))


def review_availability(
    session,
    tenant_id: int,
    availability_id: int,
    reviewer: User,
    approve: bool,
    *,
    availability: Optional[Dict[str, Any]] = None,
) -> StaffAvailability:
    """Approve or reject a submission; a manager may amend the days while approving."""
    record: StaffAvailability = get_tenant_record(session, StaffAvailability, tenant_id, availability_id)
    if not record.is_active:
        raise InvalidStateError("Archived availability cannot be reviewed")
    if availability is not None:
        record.availability = normalise_availability(availability)
        record.override_by_manager = True
    record.status = "approved" if approve else "rejected"
    record.reviewed_by = reviewer.id
    record_activity(
        session,
        tenant_id,
        reviewer.id,
        "approve_availability" if approve else "reject_availability",
        resource_type="staff_availability",
        resource_id=record.id,
        details={"override": True} if availability is not None else None,
        commit=False,
    )
    session.commit()
    return record


def archive_availability(session, tenant_id: int, availability_id: int, actor_id: Optional[int] = None) -> StaffAvailability:
    record: StaffAvailability = get_tenant_record(session, StaffAvailability, tenant_id, availability_id)
    record.is_active = False
    record_activity(
        session,
        tenant_id,
        actor_id,
        "archive_availability",
        resource_type="staff_availability",
        resource_id=record.id,
        commit=False,
    )
    session.commit()
    return record


def approved_availability(session, tenant_id: int, user_ids: List[int]) -> Dict[int, Dict[str, List[str]]]:
    if not user_ids:
        return {}
    rows = session.scalars(
        select(StaffAvailability).where(
            StaffAvailability.tenant_id == tenant_id,
            StaffAvailability.user_id.in_(user_ids),
            StaffAvailability.is_active.is_(True),
            StaffAvailability.status == "approved",
        )
    )
    return {row.user_id: row.availability or {} for row in rows}


def is_available(availability: Dict[str, List[str]], shift: Shift) -> bool:
    local_start = ensure_aware(shift.start_time).astimezone(config.LOCAL_TIMEZONE)
    day = WEEKDAY_NAMES[local_start.weekday()]
    return classify_shift_type(shift.start_time, shift.end_time) in availability.get(day, [])


def availability_to_dict(record: StaffAvailability) -> Dict[str, Any]:
    return {
        "id": record.id,
        "userId": record.user_id,
        "availability": record.availability or {},
        "patternName": record.pattern_name,
        "isQuickPattern": record.is_quick_pattern,
        "status": record.status,
        "overrideByManager": record.override_by_manager,
        "reviewedBy": record.reviewed_by,
        "isActive": record.is_active,
        "createdAt": ensure_aware(record.created_at).isoformat(),
    }
