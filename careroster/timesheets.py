from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select

from . import config
from .database import (
    TIMESHEET_STATUSES,
    HourAllocation,
    InvalidStateError,
    Shift,
    Timesheet,
    TimesheetEntry,
    User,
    ensure_aware,
    get_tenant_record,
    get_user_in_tenant,
    record_activity,
    utcnow,
)
from .logging_setup import get_logger


def pay_period_for(day: datetime.date) -> Tuple[datetime.date, datetime.date]:
    """Return the fortnightly pay period (start, end inclusive) containing ``day``."""
    offset = (day - config.PAY_PERIOD_ANCHOR).days // config.PAY_PERIOD_DAYS
    start = config.PAY_PERIOD_ANCHOR + datetime.timedelta(days=offset * config.PAY_PERIOD_DAYS)
    return start, start + datetime.timedelta(days=config.PAY_PERIOD_DAYS - 1)


def local_date(moment: datetime.datetime) -> datetime.date:
    return ensure_aware(moment).astimezone(config.LOCAL_TIMEZONE).date()


def get_or_create_timesheet(session, tenant_id: int, user_id: int, on_date: datetime.date) -> Timesheet:
    period_start, period_end = pay_period_for(on_date)
    timesheet = session.execute(
        select(Timesheet).where(
            Timesheet.tenant_id == tenant_id,
            Timesheet.user_id == user_id,
            Timesheet.pay_period_start == period_start,
        )
    ).scalar_one_or_none()
    if timesheet:
        return timesheet
    timesheet = Timesheet(
        tenant_id=tenant_id,
        user_id=user_id,
        pay_period_start=period_start,
        pay_period_end=period_end,
        status="draft",
    )
    session.add(timesheet)
    session.commit()
    return timesheet


def refresh_totals(timesheet: Timesheet) -> None:
    timesheet.total_hours = round(sum(entry.total_hours for entry in timesheet.entries), 2)
    timesheet.total_earnings = round(sum(entry.gross_pay for entry in timesheet.entries), 2)


def add_entry_from_shift(session, shift: Shift, *, logger: Optional[logging.Logger] = None) -> Optional[TimesheetEntry]:
    """Record a completed shift on its worker's timesheet. Safe to call twice."""
    log = get_logger(__name__, logger)
    if shift.user_id is None:
        return None
    start = shift.start_timestamp or shift.start_time
    end = shift.end_timestamp or shift.end_time
    hours = round((ensure_aware(end) - ensure_aware(start)).total_seconds() / 3600.0, 2)
    if hours <= 0:
        return None

    timesheet = get_or_create_timesheet(session, shift.tenant_id, shift.user_id, local_date(start))
    existing = session.execute(
        select(TimesheetEntry).where(
            TimesheetEntry.timesheet_id == timesheet.id, TimesheetEntry.shift_id == shift.id
        )
    ).scalar_one_or_none()
    if existing:
        return existing
    if timesheet.status not in ("draft", "rejected"):
        log.warning(
            "timesheet closed, entry not added",
            extra={"timesheet_id": timesheet.id, "shift_id": shift.id, "status": timesheet.status},
        )
        return None

    user = session.get(User, shift.user_id)
    rate = user.hourly_rate if user else 0.0
    entry = TimesheetEntry(
        timesheet_id=timesheet.id,
        shift_id=shift.id,
        entry_date=local_date(start),
        start_time=start,
        end_time=end,
        break_minutes=0,
        total_hours=hours,
        hourly_rate=rate,
        gross_pay=round(hours * rate, 2),
        is_auto_generated=True,
    )
    timesheet.entries.append(entry)
    refresh_totals(timesheet)
    session.commit()
    log.info("timesheet entry added", extra={"timesheet_id": timesheet.id, "shift_id": shift.id, "hours": hours})
    return entry


def current_timesheet(session, tenant_id: int, user_id: int, today: Optional[datetime.date] = None) -> Timesheet:
    return get_or_create_timesheet(session, tenant_id, user_id, today or local_date(utcnow()))


def list_timesheets(session, tenant_id: int, *, user_id: Optional[int] = None, status: Optional[str] = None) -> List[Timesheet]:
    if status and status not in TIMESHEET_STATUSES:
        raise ValueError(f"Unknown timesheet status: {status}")
    stmt = select(Timesheet).where(Timesheet.tenant_id == tenant_id)
    if user_id is not None:
        stmt = stmt.where(Timesheet.user_id == user_id)
    if status:
        stmt = stmt.where(Timesheet.status == status)
    return list(session.scalars(stmt.order_by(Timesheet.pay_period_start.desc())))


def submit_timesheet(session, tenant_id: int, timesheet_id: int, user_id: int) -> Timesheet:
    timesheet: Timesheet = get_tenant_record(session, Timesheet, tenant_id, timesheet_id)
    if timesheet.user_id != user_id:
        raise PermissionError("Only the owner can submit a timesheet")
    if timesheet.status not in ("draft", "rejected"):
        raise InvalidStateError(f"Timesheet is already {timesheet.status}")
    timesheet.status = "submitted"
    timesheet.submitted_at = utcnow()
    timesheet.rejection_reason = None
    record_activity(
        session, tenant_id, user_id, "submit_timesheet", resource_type="timesheet", resource_id=timesheet.id, commit=False
    )
    session.commit()
    return timesheet


def _review(
    session, tenant_id: int, timesheet_id: int, reviewer_id: int, status: str, action: str, reason: Optional[str]
) -> Timesheet:
    timesheet: Timesheet = get_tenant_record(session, Timesheet, tenant_id, timesheet_id)
    if timesheet.status != "submitted":
        raise InvalidStateError("Only submitted timesheets can be reviewed")
    timesheet.status = status
    if status == "approved":
        timesheet.approved_at = utcnow()
        timesheet.approved_by = reviewer_id
    else:
        timesheet.rejection_reason = (reason or "").strip() or None
    record_activity(
        session,
        tenant_id,
        reviewer_id,
        action,
        resource_type="timesheet",
        resource_id=timesheet.id,
        details={"reason": reason} if reason else None,
        commit=False,
    )
    session.commit()
    return timesheet


def approve_timesheet(session, tenant_id: int, timesheet_id: int, reviewer_id: int) -> Timesheet:
    return _review(session, tenant_id, timesheet_id, reviewer_id, "approved", "approve_timesheet", None)


def reject_timesheet(session, tenant_id: int, timesheet_id: int, reviewer_id: int, reason: Optional[str] = None) -> Timesheet:
    return _review(session, tenant_id, timesheet_id, reviewer_id, "rejected", "reject_timesheet", reason)


def timesheet_to_dict(timesheet: Timesheet) -> Dict[str, Any]:
    return {
        "id": timesheet.id,
        "userId": timesheet.user_id,
        "payPeriodStart": timesheet.pay_period_start.isoformat(),
        "payPeriodEnd": timesheet.pay_period_end.isoformat(),
        "status": timesheet.status,
        "totalHours": timesheet.total_hours,
        "totalEarnings": timesheet.total_earnings,
        "submittedAt": ensure_aware(timesheet.submitted_at).isoformat() if timesheet.submitted_at else None,
        "approvedAt": ensure_aware(timesheet.approved_at).isoformat() if timesheet.approved_at else None,
        "approvedBy": timesheet.approved_by,
        "rejectionReason": timesheet.rejection_reason,
        "entries": [
            {
                "id": entry.id,
                "shiftId": entry.shift_id,
                "entryDate": entry.entry_date.isoformat(),
                "startTime": ensure_aware(entry.start_time).isoformat(),
                "endTime": ensure_aware(entry.end_time).isoformat(),
                "breakMinutes": entry.break_minutes,
                "totalHours": entry.total_hours,
                "hourlyRate": entry.hourly_rate,
                "grossPay": entry.gross_pay,
                "isAutoGenerated": entry.is_auto_generated,
            }
            for entry in timesheet.entries
        ],
    }


# ---------------------------------------------------------------------------
# Hour allocations


def create_allocation(
    session,
    tenant_id: int,
    staff_id: int,
    max_hours: float,
    allocation_period: str = "weekly",
    actor_id: Optional[int] = None,
) -> HourAllocation:
    get_user_in_tenant(session, tenant_id, staff_id)
    if max_hours <= 0:
        raise ValueError("max_hours must be greater than zero")
    for previous in session.scalars(
        select(HourAllocation).where(
            HourAllocation.tenant_id == tenant_id,
            HourAllocation.staff_id == staff_id,
            HourAllocation.is_active.is_(True),
        )
    ):
        previous.is_active = False
    allocation = HourAllocation(
        tenant_id=tenant_id,
        staff_id=staff_id,
        allocation_period=allocation_period,
        max_hours=round(float(max_hours), 2),
        hours_used=0.0,
        remaining_hours=round(float(max_hours), 2),
        is_active=True,
    )
    session.add(allocation)
    session.flush()
    record_activity(
        session,
        tenant_id,
        actor_id,
        "create_hour_allocation",
        resource_type="hour_allocation",
        resource_id=allocation.id,
        details={"staffId": staff_id, "maxHours": allocation.max_hours},
        commit=False,
    )
    session.commit()
    return allocation


def active_allocation(session, tenant_id: int, staff_id: int) -> Optional[HourAllocation]:
    return session.execute(
        select(HourAllocation).where(
            HourAllocation.tenant_id == tenant_id,
            HourAllocation.staff_id == staff_id,
            HourAllocation.is_active.is_(True),
        )
    ).scalar_one_or_none()


def adjust_allocation(session, tenant_id: int, staff_id: int, hours: float) -> Optional[HourAllocation]:
    """Move ``hours`` into (positive) or out of (negative) the staff member's active allocation."""
    allocation = active_allocation(session, tenant_id, staff_id)
    if allocation is None or not hours:
        return allocation
    allocation.hours_used = round(max(0.0, allocation.hours_used + hours), 2)
    allocation.remaining_hours = round(allocation.max_hours - allocation.hours_used, 2)
    session.commit()
    return allocation


def list_allocations(session, tenant_id: int, *, active_only: bool = True) -> List[HourAllocation]:
    stmt = select(HourAllocation).where(HourAllocation.tenant_id == tenant_id)
    if active_only:
        stmt = stmt.where(HourAllocation.is_active.is_(True))
    return list(session.scalars(stmt.order_by(HourAllocation.staff_id.asc())))


def allocation_to_dict(allocation: HourAllocation) -> Dict[str, Any]:
    return {
        "id": allocation.id,
        "staffId": allocation.staff_id,
        "allocationPeriod": allocation.allocation_period,
        "maxHours": allocation.max_hours,
        "hoursUsed": allocation.hours_used,
        "remainingHours": allocation.remaining_hours,
        "isActive": allocation.is_active,
    }
