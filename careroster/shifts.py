"""Shift persistence and lifecycle.

A recurring series is stored as independent rows sharing a ``series_id``.
Each instance is written with its own commit, so a failure part way through
leaves the earlier instances in place; the returned ``SeriesResult`` says
how far the series got. Submitting the same series twice creates a second,
separate set of rows.
"""

from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .budget import DeductionResult, deduct_for_shift, shift_hours
from .database import (
    FUNDING_CATEGORIES,
    SHIFT_STATUSES,
    STAFF_RATIOS,
    CancellationRequest,
    ConflictError,
    InvalidStateError,
    Shift,
    ShiftCancellation,
    TimesheetEntry,
    User,
    ensure_aware,
    get_client_in_tenant,
    get_tenant_record,
    get_user_in_tenant,
    record_activity,
    utcnow,
)
from .logging_setup import get_logger
from .recurrence import DEFAULT_SHIFT_LENGTH, Cadence, Weekday, expand_weekly_pattern
from .roles import Permission, has_permission
from .timesheets import add_entry_from_shift, adjust_allocation


CLOSED_STATUSES = {"completed", "cancelled"}


class ShiftStateError(InvalidStateError):
    pass


@dataclass
class ShiftSeriesRequest:
    title: str
    start: datetime.datetime
    weekdays: Iterable[Weekday]
    cadence: Cadence = Cadence.WEEKLY
    end: Optional[datetime.datetime] = None
    occurrences: Optional[int] = None
    until: Optional[datetime.date] = None
    user_id: Optional[int] = None
    client_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    funding_category: Optional[str] = None
    staff_ratio: str = "1:1"


@dataclass
class SeriesResult:
    series_id: str
    requested: int
    created: List[Shift] = field(default_factory=list)
    failed_index: Optional[int] = None
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.failed_index is None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seriesId": self.series_id,
            "requested": self.requested,
            "created": len(self.created),
            "shiftIds": [shift.id for shift in self.created],
            "complete": self.complete,
            "failedIndex": self.failed_index,
            "error": self.error,
        }


def new_series_id() -> str:
    return f"series_{uuid.uuid4().hex[:16]}"


def _check_times(start: datetime.datetime, end: datetime.datetime) -> None:
    if ensure_aware(end) <= ensure_aware(start):
        raise ValueError("Shift end must be after its start")


def _check_funding(funding_category: Optional[str], staff_ratio: Optional[str]) -> None:
    if funding_category and funding_category not in FUNDING_CATEGORIES:
        raise ValueError(f"fundingCategory must be one of {', '.join(FUNDING_CATEGORIES)}")
    if staff_ratio and staff_ratio not in STAFF_RATIOS:
        raise ValueError(f"staffRatio must be one of {', '.join(STAFF_RATIOS)}")


def create_shift(
    session,
    tenant_id: int,
    payload: Dict[str, Any],
    actor_id: Optional[int] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> Shift:
    """Persist one shift and log its creation."""
    log = get_logger(__name__, logger)
    title = (payload.get("title") or "").strip()
    if not title:
        raise ValueError("Shift title is required")
    start = payload.get("start_time")
    if not isinstance(start, datetime.datetime):
        raise TypeError("start_time must be a datetime")
    start = ensure_aware(start)
    end = ensure_aware(payload.get("end_time") or start + DEFAULT_SHIFT_LENGTH)
    _check_times(start, end)
    _check_funding(payload.get("funding_category"), payload.get("staff_ratio"))

    user_id = payload.get("user_id")
    client_id = payload.get("client_id")
    if user_id is not None:
        get_user_in_tenant(session, tenant_id, user_id)
    if client_id is not None:
        get_client_in_tenant(session, tenant_id, client_id)

    shift = Shift(
        tenant_id=tenant_id,
        title=title,
        description=payload.get("description"),
        start_time=start,
        end_time=end,
        user_id=user_id,
        client_id=client_id,
        status="assigned" if user_id is not None else "unassigned",
        location=payload.get("location"),
        series_id=payload.get("series_id"),
        weekday=payload.get("weekday"),
        is_recurring=bool(payload.get("series_id")),
        recurrence_type=payload.get("recurrence_type"),
        funding_category=payload.get("funding_category"),
        staff_ratio=payload.get("staff_ratio") or "1:1",
    )
    session.add(shift)
    session.flush()
    record_activity(
        session,
        tenant_id,
        actor_id,
        "create_shift",
        resource_id=shift.id,
        description=f"Created shift '{shift.title}'",
        details={"seriesId": shift.series_id} if shift.series_id else None,
        commit=False,
    )
    session.commit()
    if user_id is not None:
        adjust_allocation(session, tenant_id, user_id, shift.scheduled_hours)
    log.debug("shift created", extra={"shift_id": shift.id, "series_id": shift.series_id})
    return shift


def create_shift_series(
    session,
    tenant_id: int,
    request: ShiftSeriesRequest,
    actor_id: Optional[int] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> SeriesResult:
    """Expand ``request`` and create one shift per instance, each in its own transaction."""
    log = get_logger(__name__, logger)
    instances = expand_weekly_pattern(
        request.start,
        request.weekdays,
        request.cadence,
        end=request.end,
        occurrences=request.occurrences,
        until=request.until,
    )
    result = SeriesResult(series_id=new_series_id(), requested=len(instances))
    for index, instance in enumerate(instances):
        payload = {
            "title": request.title,
            "description": request.description,
            "start_time": instance.start,
            "end_time": instance.end,
            "user_id": request.user_id,
            "client_id": request.client_id,
            "location": request.location,
            "funding_category": request.funding_category,
            "staff_ratio": request.staff_ratio,
            "series_id": result.series_id,
            "weekday": instance.weekday.value,
            "recurrence_type": request.cadence.value,
        }
        try:
            shift = create_shift(session, tenant_id, payload, actor_id, logger=log)
        except (SQLAlchemyError, LookupError, ValueError, TypeError) as exc:
            session.rollback()
            result.failed_index = index
            result.error = str(exc)
            log.error(
                "shift series interrupted",
                extra={"series_id": result.series_id, "failed_index": index, "created": len(result.created)},
                exc_info=True,
            )
            break
        result.created.append(shift)

    log.info(
        "shift series created",
        extra={"series_id": result.series_id, "requested": result.requested, "created": len(result.created)},
    )
    return result


def get_shift(session, tenant_id: int, shift_id: int) -> Shift:
    return get_tenant_record(session, Shift, tenant_id, shift_id)


def list_shifts(
    session,
    tenant_id: int,
    *,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    user_id: Optional[int] = None,
    client_id: Optional[int] = None,
    status: Optional[str] = None,
    series_id: Optional[str] = None,
) -> List[Shift]:
    stmt = select(Shift).where(Shift.tenant_id == tenant_id)
    if start is not None:
        stmt = stmt.where(Shift.end_time > ensure_aware(start))
    if end is not None:
        stmt = stmt.where(Shift.start_time < ensure_aware(end))
    if user_id is not None:
        stmt = stmt.where(Shift.user_id == user_id)
    if client_id is not None:
        stmt = stmt.where(Shift.client_id == client_id)
    if status:
        stmt = stmt.where(Shift.status == status)
    if series_id:
        stmt = stmt.where(Shift.series_id == series_id)
    return list(session.scalars(stmt.order_by(Shift.start_time.asc(), Shift.id.asc())))


def _ensure_open(shift: Shift) -> None:
    if shift.status in CLOSED_STATUSES:
        raise ShiftStateError(f"Shift {shift.id} is already {shift.status}")


def _ensure_worker_or_manager(shift: Shift, user: User) -> None:
    if shift.user_id == user.id:
        return
    if has_permission(user.role, Permission.MANAGE_SHIFTS):
        return
    raise PermissionError("Shift is assigned to another staff member")


def update_shift(session, tenant_id: int, shift_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None) -> Shift:
    shift = get_shift(session, tenant_id, shift_id)
    _ensure_open(shift)
    previous_user = shift.user_id
    previous_hours = shift.scheduled_hours

    for key in ("title", "description", "location"):
        if key in changes and changes[key] is not None:
            setattr(shift, key, changes[key])
    if "start_time" in changes or "end_time" in changes:
        start = ensure_aware(changes.get("start_time") or shift.start_time)
        end = ensure_aware(changes.get("end_time") or shift.end_time)
        _check_times(start, end)
        shift.start_time, shift.end_time = start, end
    if "funding_category" in changes or "staff_ratio" in changes:
        _check_funding(changes.get("funding_category"), changes.get("staff_ratio"))
        if "funding_category" in changes:
            shift.funding_category = changes["funding_category"]
        if changes.get("staff_ratio"):
            shift.staff_ratio = changes["staff_ratio"]
    if "client_id" in changes:
        if changes["client_id"] is not None:
            get_client_in_tenant(session, tenant_id, changes["client_id"])
        shift.client_id = changes["client_id"]
    if "user_id" in changes:
        if changes["user_id"] is not None:
            get_user_in_tenant(session, tenant_id, changes["user_id"])
        shift.user_id = changes["user_id"]
        if shift.user_id is None:
            shift.status = "unassigned"
        elif shift.status == "unassigned":
            shift.status = "assigned"
    if changes.get("status"):
        status = changes["status"]
        if status not in SHIFT_STATUSES or status in CLOSED_STATUSES | {"in-progress", "cancellation_requested"}:
            raise ShiftStateError(f"Status cannot be set to {status!r} directly")
        if status in ("assigned", "requested") and shift.user_id is None:
            raise ShiftStateError("A shift needs a staff member before it can be assigned")
        shift.status = status

    record_activity(
        session,
        tenant_id,
        actor_id,
        "update_shift",
        resource_id=shift.id,
        details={"fields": sorted(key for key in changes if key != "status") or None, "status": shift.status},
        commit=False,
    )
    session.commit()

    # Requested and assigned shifts both hold hours; only a change of worker or
    # length moves them.
    if previous_user != shift.user_id or previous_hours != shift.scheduled_hours:
        if previous_user is not None:
            adjust_allocation(session, tenant_id, previous_user, -previous_hours)
        if shift.user_id is not None:
            adjust_allocation(session, tenant_id, shift.user_id, shift.scheduled_hours)
    return shift


def request_shift(session, tenant_id: int, shift_id: int, user: User) -> Shift:
    """A staff member claims an unassigned shift for themselves."""
    shift = get_shift(session, tenant_id, shift_id)
    if shift.status != "unassigned" or shift.user_id is not None:
        raise ShiftStateError("Only unassigned shifts can be requested")
    shift.user_id = user.id
    shift.status = "requested"
    record_activity(
        session,
        tenant_id,
        user.id,
        "request_shift",
        resource_id=shift.id,
        description=f"{user.username} requested shift '{shift.title}'",
        commit=False,
    )
    session.commit()
    adjust_allocation(session, tenant_id, user.id, shift.scheduled_hours)
    return shift


def start_shift(session, tenant_id: int, shift_id: int, user: User, *, now: Optional[datetime.datetime] = None) -> Shift:
    shift = get_shift(session, tenant_id, shift_id)
    _ensure_worker_or_manager(shift, user)
    if shift.status != "assigned":
        raise ShiftStateError(f"Cannot start a shift that is {shift.status}")
    shift.start_timestamp = ensure_aware(now or utcnow())
    shift.status = "in-progress"
    record_activity(session, tenant_id, user.id, "start_shift", resource_id=shift.id, commit=False)
    session.commit()
    return shift


@dataclass
class CompletionResult:
    shift: Shift
    deduction: Optional[DeductionResult] = None
    timesheet_entry: Optional[TimesheetEntry] = None


def complete_shift(
    session,
    tenant_id: int,
    shift_id: int,
    user: User,
    *,
    now: Optional[datetime.datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> CompletionResult:
    """Clock a shift out, then charge the client budget and record the worker's hours.

    The shift is committed as completed first. Budget and timesheet follow-ups
    are logged when they fail but never undo the completion.
    """
    log = get_logger(__name__, logger)
    shift = get_shift(session, tenant_id, shift_id)
    _ensure_worker_or_manager(shift, user)
    if shift.status not in ("assigned", "in-progress"):
        raise ShiftStateError(f"Cannot complete a shift that is {shift.status}")
    clock_out = now or utcnow()
    if shift.start_timestamp and ensure_aware(clock_out) <= ensure_aware(shift.start_timestamp):
        raise ShiftStateError("Clock-out must be after clock-in")
    scheduled = shift.scheduled_hours
    shift.end_timestamp = ensure_aware(clock_out)
    shift.status = "completed"
    record_activity(session, tenant_id, user.id, "complete_shift", resource_id=shift.id, commit=False)
    session.commit()

    result = CompletionResult(shift=shift)
    try:
        result.deduction = deduct_for_shift(session, shift, user.id, logger=log)
    except Exception:
        session.rollback()
        log.error("budget deduction failed", extra={"shift_id": shift.id}, exc_info=True)
    try:
        result.timesheet_entry = add_entry_from_shift(session, shift, logger=log)
    except Exception:
        session.rollback()
        log.error("timesheet entry failed", extra={"shift_id": shift.id}, exc_info=True)
    if shift.user_id is not None:
        adjust_allocation(session, tenant_id, shift.user_id, shift_hours(shift) - scheduled)
    return result


def cancel_shift(session, tenant_id: int, shift_id: int, actor_id: Optional[int] = None, reason: Optional[str] = None) -> Shift:
    shift = get_shift(session, tenant_id, shift_id)
    _ensure_open(shift)
    shift.status = "cancelled"
    record_activity(
        session,
        tenant_id,
        actor_id,
        "cancel_shift",
        resource_id=shift.id,
        details={"reason": reason} if reason else None,
        commit=False,
    )
    session.commit()
    if shift.user_id is not None:
        adjust_allocation(session, tenant_id, shift.user_id, -shift.scheduled_hours)
    return shift


def delete_shift(session, tenant_id: int, shift_id: int, actor_id: Optional[int] = None) -> None:
    shift = get_shift(session, tenant_id, shift_id)
    release = shift.user_id if shift.status not in CLOSED_STATUSES else None
    hours = shift.scheduled_hours
    session.delete(shift)
    record_activity(session, tenant_id, actor_id, "delete_shift", resource_id=shift_id, commit=False)
    session.commit()
    if release is not None:
        adjust_allocation(session, tenant_id, release, -hours)


# ---------------------------------------------------------------------------
# Worker cancellations

# Notice at or above this many hours releases a shift without review.
CANCELLATION_NOTICE_HOURS = 24


def _cancellation_snapshot(shift: Shift) -> Dict[str, Any]:
    return {
        "shift_title": shift.title,
        "shift_start_time": ensure_aware(shift.start_time),
        "shift_end_time": ensure_aware(shift.end_time),
        "client_name": shift.client.full_name if shift.client is not None else None,
    }


def _release_to_pool(shift: Shift) -> Optional[int]:
    released = shift.user_id
    shift.user_id = None
    shift.status = "unassigned"
    return released


def request_cancellation(
    session,
    tenant_id: int,
    shift_id: int,
    user: User,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime.datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Any]:
    """Drop a worker's own shift.

    With enough notice the shift goes straight back to the unassigned pool.
    Later than that, a pending request is raised for a manager to review and
    the worker stays rostered until it is decided.
    """
    log = get_logger(__name__, logger)
    shift = get_shift(session, tenant_id, shift_id)
    if shift.user_id != user.id:
        raise PermissionError("Only the rostered staff member can cancel this shift")
    if shift.status == "cancellation_requested":
        raise ConflictError("A cancellation request is already pending for this shift")
    if shift.status != "assigned":
        raise ShiftStateError(f"Cannot cancel a shift that is {shift.status}")
    moment = ensure_aware(now or utcnow())
    start = ensure_aware(shift.start_time)
    if start <= moment:
        raise ShiftStateError("Shift has already started")
    hours_notice = int((start - moment).total_seconds() // 3600)
    snapshot = _cancellation_snapshot(shift)
    name = user.full_name or user.username

    if hours_notice >= CANCELLATION_NOTICE_HOURS:
        hours = shift.scheduled_hours
        _release_to_pool(shift)
        session.add(
            ShiftCancellation(
                tenant_id=tenant_id,
                shift_id=shift.id,
                cancelled_by=user.id,
                cancelled_by_name=name,
                cancellation_type="immediate",
                cancellation_reason=reason,
                hours_notice=hours_notice,
                **snapshot,
            )
        )
        record_activity(
            session,
            tenant_id,
            user.id,
            "cancel_shift",
            resource_id=shift.id,
            description=f"{name} cancelled shift '{shift.title}' with {hours_notice} hours notice",
            details={"type": "immediate", "hoursNotice": hours_notice, "reason": reason},
            commit=False,
        )
        session.commit()
        adjust_allocation(session, tenant_id, user.id, -hours)
        log.info("shift cancelled", extra={"shift_id": shift.id, "hours_notice": hours_notice})
        return {"type": "immediate", "shift": shift, "request": None, "hoursNotice": hours_notice}

    request = CancellationRequest(
        tenant_id=tenant_id,
        shift_id=shift.id,
        requested_by=user.id,
        requested_by_name=name,
        request_reason=reason,
        hours_notice=hours_notice,
        status="pending",
        **snapshot,
    )
    session.add(request)
    shift.status = "cancellation_requested"
    session.flush()
    record_activity(
        session,
        tenant_id,
        user.id,
        "request_cancellation",
        resource_type="cancellation_request",
        resource_id=request.id,
        description=f"{name} asked to cancel shift '{shift.title}' with {hours_notice} hours notice",
        details={"shiftId": shift.id, "hoursNotice": hours_notice},
        commit=False,
    )
    session.commit()
    log.info("cancellation requested", extra={"shift_id": shift.id, "hours_notice": hours_notice})
    return {"type": "requested", "shift": shift, "request": request, "hoursNotice": hours_notice}


def review_cancellation(
    session,
    tenant_id: int,
    request_id: int,
    reviewer: User,
    approve: bool,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime.datetime] = None,
) -> CancellationRequest:
    request: CancellationRequest = get_tenant_record(session, CancellationRequest, tenant_id, request_id)
    if request.status != "pending":
        raise InvalidStateError(f"Cancellation request has already been {request.status}")
    shift = get_shift(session, tenant_id, request.shift_id)
    moment = ensure_aware(now or utcnow())
    reviewer_name = reviewer.full_name or reviewer.username
    request.status = "approved" if approve else "denied"
    request.reviewed_by = reviewer.id
    request.reviewed_by_name = reviewer_name
    request.reviewed_at = moment
    request.review_notes = notes

    released: Optional[int] = None
    hours = shift.scheduled_hours
    if approve:
        if shift.status == "cancellation_requested":
            released = _release_to_pool(shift)
        session.add(
            ShiftCancellation(
                tenant_id=tenant_id,
                shift_id=shift.id,
                cancelled_by=request.requested_by,
                cancelled_by_name=request.requested_by_name,
                shift_title=request.shift_title,
                shift_start_time=request.shift_start_time,
                shift_end_time=request.shift_end_time,
                client_name=request.client_name,
                cancellation_type="requested",
                cancellation_reason=request.request_reason,
                hours_notice=request.hours_notice,
                approved_by=reviewer.id,
                approved_by_name=reviewer_name,
                approved_at=moment,
            )
        )
    elif shift.status == "cancellation_requested":
        shift.status = "assigned"
    record_activity(
        session,
        tenant_id,
        reviewer.id,
        "approve_cancellation_request" if approve else "deny_cancellation_request",
        resource_type="cancellation_request",
        resource_id=request.id,
        details={"shiftId": shift.id, "notes": notes} if notes else {"shiftId": shift.id},
        commit=False,
    )
    session.commit()
    if released is not None:
        adjust_allocation(session, tenant_id, released, -hours)
    return request


def list_cancellation_requests(
    session, tenant_id: int, *, status: Optional[str] = None, requested_by: Optional[int] = None
) -> List[CancellationRequest]:
    stmt = select(CancellationRequest).where(CancellationRequest.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(CancellationRequest.status == status)
    if requested_by is not None:
        stmt = stmt.where(CancellationRequest.requested_by == requested_by)
    return list(session.scalars(stmt.order_by(CancellationRequest.created_at.desc(), CancellationRequest.id.desc())))


def list_shift_cancellations(session, tenant_id: int, *, cancelled_by: Optional[int] = None) -> List[ShiftCancellation]:
    stmt = select(ShiftCancellation).where(ShiftCancellation.tenant_id == tenant_id)
    if cancelled_by is not None:
        stmt = stmt.where(ShiftCancellation.cancelled_by == cancelled_by)
    return list(session.scalars(stmt.order_by(ShiftCancellation.created_at.desc(), ShiftCancellation.id.desc())))


def cancellation_request_to_dict(request: CancellationRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "shiftId": request.shift_id,
        "requestedBy": request.requested_by,
        "requestedByName": request.requested_by_name,
        "shiftTitle": request.shift_title,
        "shiftStartTime": ensure_aware(request.shift_start_time).isoformat(),
        "shiftEndTime": ensure_aware(request.shift_end_time).isoformat(),
        "clientName": request.client_name,
        "requestReason": request.request_reason,
        "hoursNotice": request.hours_notice,
        "status": request.status,
        "reviewedBy": request.reviewed_by,
        "reviewedByName": request.reviewed_by_name,
        "reviewedAt": ensure_aware(request.reviewed_at).isoformat() if request.reviewed_at else None,
        "reviewNotes": request.review_notes,
    }


def shift_cancellation_to_dict(record: ShiftCancellation) -> Dict[str, Any]:
    return {
        "id": record.id,
        "shiftId": record.shift_id,
        "cancelledBy": record.cancelled_by,
        "cancelledByName": record.cancelled_by_name,
        "shiftTitle": record.shift_title,
        "shiftStartTime": ensure_aware(record.shift_start_time).isoformat(),
        "shiftEndTime": ensure_aware(record.shift_end_time).isoformat(),
        "clientName": record.client_name,
        "cancellationType": record.cancellation_type,
        "cancellationReason": record.cancellation_reason,
        "hoursNotice": record.hours_notice,
        "approvedBy": record.approved_by,
        "approvedByName": record.approved_by_name,
        "approvedAt": ensure_aware(record.approved_at).isoformat() if record.approved_at else None,
        "createdAt": ensure_aware(record.created_at).isoformat(),
    }
