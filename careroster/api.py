"""HTTP API for careroster.

Every route below ``/api`` except login runs behind the session guard, which
re-validates the session user against its tenant on each request. Routes
declare the permission they need with ``require_permission``; all queries
are scoped to the caller's tenant.
"""

from __future__ import annotations

import datetime
import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__, availability, budget, config, records, timesheets
from . import database
from .auth import (
    AccountLockedError,
    authenticate,
    change_password,
    create_session,
    create_user,
    destroy_session,
    get_current_user,
    purge_expired_sessions,
    require_permission,
)
from .data_exchange import clients_payload, import_clients_payload
from .database import (
    ConflictError,
    RecordNotFound,
    Tenant,
    User,
    activity_to_dict,
    budget_to_dict,
    get_db,
    list_activity,
    shift_to_dict,
    user_to_dict,
)
from .logging_setup import RequestLoggingMiddleware, configure_logging
from .pricing import list_pricing, pricing_to_dict, seed_tenant_pricing, upsert_pricing
from .roles import Permission, has_permission, is_manager_role, permissions_for
from .schemas import (
    AvailabilityApprovalPayload,
    AvailabilityPayload,
    BudgetPayload,
    BudgetUpdatePayload,
    CancellationReviewPayload,
    CarePlanPayload,
    CarePlanUpdatePayload,
    CaseNotePayload,
    CaseNoteUpdatePayload,
    ChangePasswordPayload,
    ClientPayload,
    ClientUpdatePayload,
    HourAllocationPayload,
    IncidentClosurePayload,
    IncidentPayload,
    IncidentUpdatePayload,
    LoginPayload,
    MedicationPlanPayload,
    MedicationRecordPayload,
    ObservationPayload,
    PricingPayload,
    ShiftActionPayload,
    ShiftPayload,
    ShiftSeriesPayload,
    ShiftUpdatePayload,
    TimesheetReviewPayload,
    UserCreatePayload,
)
from .shifts import (
    ShiftSeriesRequest,
    cancel_shift,
    cancellation_request_to_dict,
    complete_shift,
    create_shift,
    create_shift_series,
    delete_shift,
    get_shift,
    list_cancellation_requests,
    list_shift_cancellations,
    list_shifts,
    request_cancellation,
    request_shift,
    review_cancellation,
    shift_cancellation_to_dict,
    start_shift,
    update_shift,
)
from .validation import validate_roster


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    database.init_database()
    with database.SessionLocal() as session:
        purged = purge_expired_sessions(session)
        if purged:
            logger.info("purged expired sessions", extra={"rows": purged})
        for tenant_id in session.scalars(select(Tenant.id)).all():
            added = seed_tenant_pricing(session, tenant_id)
            if added:
                logger.info("seeded baseline pricing", extra={"tenant_id": tenant_id, "rows": added})
    yield


app = FastAPI(title="careroster API", version=__version__, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _json(content: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    body = {"success": False, "message": message}
    body.update(extra)
    return _json(body, status_code=status_code)


def _local(moment: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Read naive instants as roster-local wall time."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=config.LOCAL_TIMEZONE)
    return moment.astimezone(config.LOCAL_TIMEZONE)


# ---------------------------------------------------------------------------
# Error handlers


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})
    return _error(status.HTTP_400_BAD_REQUEST, "Validation failed", errors=errors)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    try:
        phrase = HTTPStatus(exc.status_code).phrase
    except ValueError:
        phrase = "Error"
    return _json(
        {"success": False, "error": phrase, "message": exc.detail, "code": exc.status_code},
        status_code=exc.status_code,
    )


@app.exception_handler(RecordNotFound)
async def not_found_handler(_: Request, exc: RecordNotFound) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(ConflictError)
async def conflict_handler(_: Request, exc: ConflictError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, str(exc))


@app.exception_handler(PermissionError)
async def permission_handler(_: Request, exc: PermissionError) -> JSONResponse:
    return _error(status.HTTP_403_FORBIDDEN, str(exc) or "Insufficient permissions")


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled error",
        extra={"path": request.url.path, "request_id": getattr(request.state, "request_id", None)},
        exc_info=exc,
    )
    return _json({"success": False, "error": "Internal Server Error"}, status_code=500)


# ---------------------------------------------------------------------------
# Health and authentication


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/login")
def login(payload: LoginPayload, db: Session = Depends(get_db)) -> JSONResponse:
    try:
        user = authenticate(db, payload.username, payload.password, payload.tenant_id)
    except AccountLockedError as exc:
        return _error(423, f"Account locked until {exc.until.isoformat()}")
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    record = create_session(db, user)
    response = _json({"success": True, "user": {**user_to_dict(user), "permissions": permissions_for(user.role)}})
    response.set_cookie(
        key=config.SESSION_COOKIE_NAME,
        value=record.session_id,
        max_age=config.SESSION_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=config.SESSION_COOKIE_SECURE,
    )
    return response


@app.post("/api/logout")
def logout(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    destroy_session(db, request.cookies.get(config.SESSION_COOKIE_NAME))
    response = _json({"success": True})
    response.delete_cookie(config.SESSION_COOKIE_NAME)
    return response


@app.get("/api/auth/user")
def current_user(user: User = Depends(get_current_user)) -> JSONResponse:
    return _json({**user_to_dict(user), "permissions": permissions_for(user.role)})


@app.post("/api/auth/change-password")
def auth_change_password(
    payload: ChangePasswordPayload, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> JSONResponse:
    change_password(db, user, payload.current_password, payload.new_password)
    return _json({"success": True})


@app.get("/api/users")
def users_list(
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)), db: Session = Depends(get_db)
) -> JSONResponse:
    users = db.scalars(select(User).where(User.tenant_id == user.tenant_id).order_by(User.full_name.asc())).all()
    return _json([user_to_dict(item) for item in users])


@app.post("/api/users", status_code=201)
def users_create(
    payload: UserCreatePayload,
    user: User = Depends(require_permission(Permission.MANAGE_STAFF)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    created = create_user(
        db,
        user.tenant_id,
        payload.username,
        payload.password,
        role=payload.role,
        full_name=payload.full_name,
        email=payload.email,
        hourly_rate=payload.hourly_rate,
        employment_type=payload.employment_type,
        actor_id=user.id,
    )
    return _json(user_to_dict(created), status_code=201)


# ---------------------------------------------------------------------------
# Clients


@app.get("/api/clients")
def clients_list(
    search: Optional[str] = Query(None),
    include_inactive: bool = Query(False, alias="includeInactive"),
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    clients = records.list_clients(db, user.tenant_id, search=search, include_inactive=include_inactive)
    return _json([records.client_to_dict(client) for client in clients])


@app.post("/api/clients", status_code=201)
def clients_create(
    payload: ClientPayload,
    user: User = Depends(require_permission(Permission.MANAGE_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    client = records.create_client(db, user.tenant_id, payload.model_dump(), user.id)
    return _json(records.client_to_dict(client), status_code=201)


@app.get("/api/clients/{client_id}")
def clients_get(
    client_id: int,
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    client = database.get_client_in_tenant(db, user.tenant_id, client_id)
    return _json(records.client_to_dict(client))


@app.put("/api/clients/{client_id}")
def clients_update(
    client_id: int,
    payload: ClientUpdatePayload,
    user: User = Depends(require_permission(Permission.MANAGE_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    client = records.update_client(db, user.tenant_id, client_id, payload.model_dump(exclude_unset=True), user.id)
    return _json(records.client_to_dict(client))


@app.delete("/api/clients/{client_id}")
def clients_archive(
    client_id: int,
    user: User = Depends(require_permission(Permission.MANAGE_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    client = records.archive_client(db, user.tenant_id, client_id, user.id)
    return _json({"success": True, "client": records.client_to_dict(client)})


@app.get("/api/export/clients")
def clients_export(
    user: User = Depends(require_permission(Permission.EXPORT_DATA)), db: Session = Depends(get_db)
) -> JSONResponse:
    return _json(clients_payload(db, user.tenant_id))


@app.post("/api/import/clients")
def clients_import(
    payload: Dict[str, Any],
    user: User = Depends(require_permission(Permission.MANAGE_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    if not isinstance(payload.get("clients"), list):
        raise ValueError("Import must carry a clients list")
    created, updated = import_clients_payload(db, user.tenant_id, payload, user.id)
    return _json({"success": True, "created": created, "updated": updated})


# ---------------------------------------------------------------------------
# Shifts


@app.get("/api/shifts")
def shifts_list(
    start: Optional[datetime.datetime] = Query(None),
    end: Optional[datetime.datetime] = Query(None),
    user_id: Optional[int] = Query(None, alias="userId"),
    client_id: Optional[int] = Query(None, alias="clientId"),
    shift_status: Optional[str] = Query(None, alias="status"),
    series_id: Optional[str] = Query(None, alias="seriesId"),
    user: User = Depends(require_permission(Permission.VIEW_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    # Frontline staff see their own shifts, or the open ones they can request.
    if not is_manager_role(user.role) and shift_status != "unassigned":
        user_id = user.id
    shifts = list_shifts(
        db,
        user.tenant_id,
        start=_local(start),
        end=_local(end),
        user_id=user_id,
        client_id=client_id,
        status=shift_status,
        series_id=series_id,
    )
    return _json([shift_to_dict(shift) for shift in shifts])


@app.post("/api/shifts", status_code=201)
def shifts_create(
    payload: ShiftPayload,
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    data = payload.model_dump()
    data["start_time"] = _local(payload.start_time)
    data["end_time"] = _local(payload.end_time)
    shift = create_shift(db, user.tenant_id, data, user.id)
    return _json(shift_to_dict(shift), status_code=201)


@app.post("/api/shifts/series", status_code=201)
def shifts_create_series(
    payload: ShiftSeriesPayload,
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    request = ShiftSeriesRequest(
        title=payload.title,
        start=_local(payload.start_date_time),
        end=_local(payload.end_date_time),
        weekdays=payload.selected_weekdays,
        cadence=payload.recurrence_type,
        occurrences=payload.occurrence_count if payload.termination_mode == "occurrenceCount" else None,
        until=payload.end_date if payload.termination_mode == "endDate" else None,
        user_id=payload.assigned_user_id,
        client_id=payload.client_id,
        description=payload.description,
        location=payload.location,
        funding_category=payload.funding_category,
        staff_ratio=payload.staff_ratio,
    )
    result = create_shift_series(db, user.tenant_id, request, user.id)
    body: Dict[str, Any] = {
        "success": result.complete,
        **result.as_dict(),
        "shifts": [shift_to_dict(shift) for shift in result.created],
        "warnings": [],
    }
    if not result.complete:
        body["message"] = "Shift series was only partially created"
        return _json(body, status_code=500)
    if result.requested == 0:
        body["warnings"].append("No occurrences fall between the start and the end date")
    return _json(body, status_code=201)


@app.get("/api/shifts/validate")
def shifts_validate(
    start: datetime.datetime = Query(...),
    end: datetime.datetime = Query(...),
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    return _json(validate_roster(db, user.tenant_id, _local(start), _local(end)))


@app.get("/api/shifts/{shift_id}")
def shifts_get(
    shift_id: int,
    user: User = Depends(require_permission(Permission.VIEW_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    shift = get_shift(db, user.tenant_id, shift_id)
    if not is_manager_role(user.role) and shift.user_id not in (None, user.id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return _json(shift_to_dict(shift))


@app.patch("/api/shifts/{shift_id}")
def shifts_update(
    shift_id: int,
    payload: ShiftUpdatePayload,
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    changes = payload.model_dump(exclude_unset=True)
    for key in ("start_time", "end_time"):
        if changes.get(key) is not None:
            changes[key] = _local(changes[key])
    shift = update_shift(db, user.tenant_id, shift_id, changes, user.id)
    return _json(shift_to_dict(shift))


@app.delete("/api/shifts/{shift_id}")
def shifts_delete(
    shift_id: int,
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    delete_shift(db, user.tenant_id, shift_id, user.id)
    return _json({"success": True})


@app.post("/api/shifts/{shift_id}/request")
def shifts_request(
    shift_id: int,
    user: User = Depends(require_permission(Permission.WORK_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    return _json(shift_to_dict(request_shift(db, user.tenant_id, shift_id, user)))


@app.post("/api/shifts/{shift_id}/start")
def shifts_start(
    shift_id: int,
    user: User = Depends(require_permission(Permission.WORK_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    return _json(shift_to_dict(start_shift(db, user.tenant_id, shift_id, user)))


@app.post("/api/shifts/{shift_id}/complete")
def shifts_complete(
    shift_id: int,
    user: User = Depends(require_permission(Permission.WORK_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = complete_shift(db, user.tenant_id, shift_id, user)
    return _json(
        {
            **shift_to_dict(result.shift),
            "budgetDeduction": result.deduction.as_dict() if result.deduction else None,
            "timesheetEntryId": result.timesheet_entry.id if result.timesheet_entry else None,
        }
    )


@app.post("/api/shifts/{shift_id}/cancel")
def shifts_cancel(
    shift_id: int,
    payload: Optional[ShiftActionPayload] = None,
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    reason = payload.reason if payload else None
    return _json(shift_to_dict(cancel_shift(db, user.tenant_id, shift_id, user.id, reason)))


@app.post("/api/shifts/{shift_id}/cancellation-request")
def shifts_cancellation_request(
    shift_id: int,
    payload: Optional[ShiftActionPayload] = None,
    user: User = Depends(require_permission(Permission.WORK_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    outcome = request_cancellation(db, user.tenant_id, shift_id, user, payload.reason if payload else None)
    request = outcome["request"]
    return _json(
        {
            "success": True,
            "type": outcome["type"],
            "hoursNotice": outcome["hoursNotice"],
            "shift": shift_to_dict(outcome["shift"]),
            "request": cancellation_request_to_dict(request) if request is not None else None,
        },
        status_code=200 if request is None else 201,
    )


@app.get("/api/cancellation-requests")
def cancellation_requests_list(
    request_status: Optional[str] = Query(None, alias="status"),
    user: User = Depends(require_permission(Permission.WORK_SHIFTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    # Staff without review rights only see their own requests.
    mine = None if has_permission(user.role, Permission.REVIEW_CANCELLATIONS) else user.id
    items = list_cancellation_requests(db, user.tenant_id, status=request_status, requested_by=mine)
    return _json([cancellation_request_to_dict(item) for item in items])


@app.post("/api/cancellation-requests/{request_id}/review")
def cancellation_requests_review(
    request_id: int,
    payload: CancellationReviewPayload,
    user: User = Depends(require_permission(Permission.REVIEW_CANCELLATIONS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    request = review_cancellation(
        db, user.tenant_id, request_id, user, payload.action == "approve", payload.review_notes
    )
    return _json(cancellation_request_to_dict(request))


@app.get("/api/shift-cancellations")
def shift_cancellations_list(
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)), db: Session = Depends(get_db)
) -> JSONResponse:
    return _json([shift_cancellation_to_dict(item) for item in list_shift_cancellations(db, user.tenant_id)])


# ---------------------------------------------------------------------------
# NDIS budgets and pricing


@app.get("/api/ndis-budgets")
def budgets_list(
    user: User = Depends(require_permission(Permission.VIEW_BUDGETS)), db: Session = Depends(get_db)
) -> JSONResponse:
    return _json([budget_to_dict(item) for item in budget.list_budgets(db, user.tenant_id)])


@app.get("/api/ndis-budgets/client/{client_id}")
def budgets_for_client(
    client_id: int,
    user: User = Depends(require_permission(Permission.VIEW_BUDGETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    database.get_client_in_tenant(db, user.tenant_id, client_id)
    record = budget.active_budget_for_client(db, user.tenant_id, client_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active budget for this client")
    return _json(budget_to_dict(record))


@app.post("/api/ndis-budgets", status_code=201)
def budgets_create(
    payload: BudgetPayload,
    user: User = Depends(require_permission(Permission.MANAGE_BUDGETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    data = payload.model_dump()
    record = budget.create_budget(db, user.tenant_id, data.pop("client_id"), data, user.id)
    return _json(budget_to_dict(record), status_code=201)


@app.put("/api/ndis-budgets/{budget_id}")
def budgets_update(
    budget_id: int,
    payload: BudgetUpdatePayload,
    user: User = Depends(require_permission(Permission.MANAGE_BUDGETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    record = budget.update_budget(db, user.tenant_id, budget_id, payload.model_dump(exclude_unset=True), user.id)
    return _json(budget_to_dict(record))


@app.get("/api/budget-transactions")
def budget_transactions(
    budget_id: Optional[int] = Query(None, alias="budgetId"),
    user: User = Depends(require_permission(Permission.VIEW_BUDGETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    items = budget.list_transactions(db, user.tenant_id, budget_id=budget_id)
    return _json([budget.transaction_to_dict(item) for item in items])


@app.get("/api/ndis-pricing")
def pricing_list(
    user: User = Depends(require_permission(Permission.VIEW_BUDGETS)), db: Session = Depends(get_db)
) -> JSONResponse:
    return _json([pricing_to_dict(item) for item in list_pricing(db, user.tenant_id)])


@app.post("/api/ndis-pricing", status_code=201)
def pricing_upsert(
    payload: PricingPayload,
    user: User = Depends(require_permission(Permission.MANAGE_PRICING)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    record = upsert_pricing(
        db, user.tenant_id, payload.shift_type, payload.ratio, payload.rate, is_active=payload.is_active
    )
    database.record_activity(
        db,
        user.tenant_id,
        user.id,
        "update_pricing",
        resource_type="pricing",
        resource_id=record.id,
        details={"shiftType": record.shift_type, "ratio": record.ratio, "rate": record.rate},
    )
    return _json(pricing_to_dict(record), status_code=201)


# ---------------------------------------------------------------------------
# Incidents, medication and case notes


@app.get("/api/incident-reports")
def incidents_list(
    client_id: Optional[int] = Query(None, alias="clientId"),
    incident_status: Optional[str] = Query(None, alias="status"),
    user: User = Depends(require_permission(Permission.REPORT_INCIDENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    items = records.list_incidents(db, user.tenant_id, client_id=client_id, status=incident_status)
    return _json([records.incident_to_dict(item) for item in items])


@app.post("/api/incident-reports", status_code=201)
def incidents_create(
    payload: IncidentPayload,
    user: User = Depends(require_permission(Permission.REPORT_INCIDENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    incident = records.create_incident(db, user.tenant_id, payload.model_dump(), user.id)
    return _json(records.incident_to_dict(incident), status_code=201)


@app.put("/api/incident-reports/{incident_id}")
def incidents_update(
    incident_id: int,
    payload: IncidentUpdatePayload,
    user: User = Depends(require_permission(Permission.REPORT_INCIDENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    incident = records.update_incident(
        db, user.tenant_id, incident_id, payload.model_dump(exclude_unset=True), user.id
    )
    return _json(records.incident_to_dict(incident))


@app.post("/api/incident-reports/{incident_id}/close")
def incidents_close(
    incident_id: int,
    payload: IncidentClosurePayload,
    user: User = Depends(require_permission(Permission.CLOSE_INCIDENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    incident = records.close_incident(db, user.tenant_id, incident_id, payload.model_dump(), user.id)
    return _json(records.incident_to_dict(incident))


@app.delete("/api/incident-reports/{incident_id}")
def incidents_delete(
    incident_id: int,
    user: User = Depends(require_permission(Permission.CLOSE_INCIDENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    records.delete_incident(db, user.tenant_id, incident_id, user.id)
    return _json({"success": True})


@app.get("/api/clients/{client_id}/medication-plans")
def medication_plans_list(
    client_id: int,
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    database.get_client_in_tenant(db, user.tenant_id, client_id)
    plans = records.list_medication_plans(db, user.tenant_id, client_id)
    return _json([records.medication_plan_to_dict(plan) for plan in plans])


@app.post("/api/clients/{client_id}/medication-plans", status_code=201)
def medication_plans_create(
    client_id: int,
    payload: MedicationPlanPayload,
    user: User = Depends(require_permission(Permission.MANAGE_MEDICATION_PLANS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    plan = records.create_medication_plan(db, user.tenant_id, client_id, payload.model_dump(), user.id)
    return _json(records.medication_plan_to_dict(plan), status_code=201)


@app.get("/api/clients/{client_id}/medication-records")
def medication_records_list(
    client_id: int,
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    database.get_client_in_tenant(db, user.tenant_id, client_id)
    items = records.list_medication_records(db, user.tenant_id, client_id)
    return _json([records.medication_record_to_dict(item) for item in items])


@app.post("/api/clients/{client_id}/medication-records", status_code=201)
def medication_records_create(
    client_id: int,
    payload: MedicationRecordPayload,
    user: User = Depends(require_permission(Permission.RECORD_MEDICATION)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    record = records.record_medication(db, user.tenant_id, client_id, payload.model_dump(), user.id)
    return _json(records.medication_record_to_dict(record), status_code=201)


@app.get("/api/case-notes")
def case_notes_list(
    client_id: Optional[int] = Query(None, alias="clientId"),
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    notes = records.list_case_notes(db, user.tenant_id, client_id=client_id)
    return _json([records.case_note_to_dict(note) for note in notes])


@app.post("/api/case-notes", status_code=201)
def case_notes_create(
    payload: CaseNotePayload,
    user: User = Depends(require_permission(Permission.WRITE_CASE_NOTES)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    note = records.create_case_note(db, user.tenant_id, payload.model_dump(), user.id)
    return _json(records.case_note_to_dict(note), status_code=201)


@app.put("/api/case-notes/{note_id}")
def case_notes_update(
    note_id: int,
    payload: CaseNoteUpdatePayload,
    user: User = Depends(require_permission(Permission.WRITE_CASE_NOTES)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    note = records.update_case_note(db, user.tenant_id, note_id, payload.model_dump(exclude_unset=True), user.id)
    return _json(records.case_note_to_dict(note))


@app.delete("/api/case-notes/{note_id}")
def case_notes_delete(
    note_id: int,
    user: User = Depends(require_permission(Permission.WRITE_CASE_NOTES)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    records.delete_case_note(db, user.tenant_id, note_id, user.id)
    return _json({"success": True})


@app.get("/api/care-support-plans")
def care_plans_list(
    client_id: Optional[int] = Query(None, alias="clientId"),
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    plans = records.list_care_plans(db, user.tenant_id, client_id=client_id, user=user)
    return _json([records.care_plan_to_dict(plan) for plan in plans])


@app.get("/api/care-support-plans/{plan_id}")
def care_plans_get(
    plan_id: int,
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    return _json(records.care_plan_to_dict(records.get_care_plan(db, user.tenant_id, plan_id, user)))


@app.post("/api/care-support-plans", status_code=201)
def care_plans_create(
    payload: CarePlanPayload,
    user: User = Depends(require_permission(Permission.MANAGE_CARE_PLANS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    plan = records.create_care_plan(db, user.tenant_id, payload.model_dump(), user.id)
    return _json(records.care_plan_to_dict(plan), status_code=201)


@app.put("/api/care-support-plans/{plan_id}")
def care_plans_update(
    plan_id: int,
    payload: CarePlanUpdatePayload,
    user: User = Depends(require_permission(Permission.MANAGE_CARE_PLANS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    plan = records.update_care_plan(db, user.tenant_id, plan_id, payload.model_dump(exclude_unset=True), user.id)
    return _json(records.care_plan_to_dict(plan))


@app.delete("/api/care-support-plans/{plan_id}")
def care_plans_delete(
    plan_id: int,
    user: User = Depends(require_permission(Permission.DELETE_CARE_PLANS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    records.delete_care_plan(db, user.tenant_id, plan_id, user.id)
    return _json({"success": True})


@app.get("/api/hourly-observations")
def observations_list(
    client_id: Optional[int] = Query(None, alias="clientId"),
    observation_type: Optional[str] = Query(None, alias="type"),
    user: User = Depends(require_permission(Permission.VIEW_CLIENTS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    items = records.list_observations(
        db, user.tenant_id, client_id=client_id, observation_type=observation_type, user=user
    )
    return _json([records.observation_to_dict(item) for item in items])


@app.post("/api/hourly-observations", status_code=201)
def observations_create(
    payload: ObservationPayload,
    user: User = Depends(require_permission(Permission.RECORD_OBSERVATIONS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    data = payload.model_dump()
    data["timestamp"] = _local(payload.timestamp)
    observation = records.create_observation(db, user.tenant_id, data, user)
    return _json(records.observation_to_dict(observation), status_code=201)


@app.delete("/api/hourly-observations/{observation_id}")
def observations_delete(
    observation_id: int,
    user: User = Depends(require_permission(Permission.RECORD_OBSERVATIONS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    records.delete_observation(db, user.tenant_id, observation_id, user)
    return _json({"success": True})


# ---------------------------------------------------------------------------
# Timesheets and hour allocations


@app.get("/api/timesheet/current")
def timesheet_current(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> JSONResponse:
    sheet = timesheets.current_timesheet(db, user.tenant_id, user.id)
    return _json(timesheets.timesheet_to_dict(sheet))


@app.get("/api/timesheet/history")
def timesheet_history(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> JSONResponse:
    sheets = timesheets.list_timesheets(db, user.tenant_id, user_id=user.id)
    return _json([timesheets.timesheet_to_dict(sheet) for sheet in sheets])


@app.post("/api/timesheet/{timesheet_id}/submit")
def timesheet_submit(
    timesheet_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> JSONResponse:
    sheet = timesheets.submit_timesheet(db, user.tenant_id, timesheet_id, user.id)
    return _json(timesheets.timesheet_to_dict(sheet))


@app.get("/api/admin/timesheets")
def admin_timesheets(
    sheet_status: Optional[str] = Query(None, alias="status"),
    user: User = Depends(require_permission(Permission.APPROVE_TIMESHEETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    sheets = timesheets.list_timesheets(db, user.tenant_id, status=sheet_status)
    return _json([timesheets.timesheet_to_dict(sheet) for sheet in sheets])


@app.post("/api/admin/timesheets/{timesheet_id}/approve")
def admin_timesheet_approve(
    timesheet_id: int,
    user: User = Depends(require_permission(Permission.APPROVE_TIMESHEETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    sheet = timesheets.approve_timesheet(db, user.tenant_id, timesheet_id, user.id)
    return _json(timesheets.timesheet_to_dict(sheet))


@app.post("/api/admin/timesheets/{timesheet_id}/reject")
def admin_timesheet_reject(
    timesheet_id: int,
    payload: Optional[TimesheetReviewPayload] = None,
    user: User = Depends(require_permission(Permission.APPROVE_TIMESHEETS)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    reason = payload.reason if payload else None
    sheet = timesheets.reject_timesheet(db, user.tenant_id, timesheet_id, user.id, reason)
    return _json(timesheets.timesheet_to_dict(sheet))


@app.get("/api/hour-allocations")
def hour_allocations_list(
    user: User = Depends(require_permission(Permission.MANAGE_SHIFTS)), db: Session = Depends(get_db)
) -> JSONResponse:
    items = timesheets.list_allocations(db, user.tenant_id)
    return _json([timesheets.allocation_to_dict(item) for item in items])


@app.post("/api/hour-allocations", status_code=201)
def hour_allocations_create(
    payload: HourAllocationPayload,
    user: User = Depends(require_permission(Permission.MANAGE_STAFF)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    allocation = timesheets.create_allocation(
        db, user.tenant_id, payload.staff_id, payload.max_hours, payload.allocation_period, user.id
    )
    return _json(timesheets.allocation_to_dict(allocation), status_code=201)


# ---------------------------------------------------------------------------
# Staff availability


@app.post("/api/staff-availability", status_code=201)
def availability_submit(
    payload: AvailabilityPayload, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> JSONResponse:
    record = availability.submit_availability(db, user.tenant_id, user, payload.model_dump())
    return _json(availability.availability_to_dict(record), status_code=201)


@app.get("/api/staff-availability/current")
def availability_current(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> JSONResponse:
    record = availability.current_availability(db, user.tenant_id, user.id)
    return _json(availability.availability_to_dict(record) if record is not None else None)


@app.get("/api/staff-availability/admin")
def availability_admin(
    availability_status: Optional[str] = Query(None, alias="status"),
    archived: bool = Query(False),
    user: User = Depends(require_permission(Permission.MANAGE_AVAILABILITY)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    items = availability.list_availability(
        db, user.tenant_id, status=availability_status, include_archived=archived
    )
    return _json([availability.availability_to_dict(item) for item in items])


@app.put("/api/staff-availability/{availability_id}/approval")
def availability_approval(
    availability_id: int,
    payload: AvailabilityApprovalPayload,
    user: User = Depends(require_permission(Permission.MANAGE_AVAILABILITY)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    record = availability.review_availability(
        db, user.tenant_id, availability_id, user, payload.is_approved, availability=payload.availability
    )
    return _json(availability.availability_to_dict(record))


@app.post("/api/staff-availability/{availability_id}/archive")
def availability_archive(
    availability_id: int,
    user: User = Depends(require_permission(Permission.MANAGE_AVAILABILITY)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    record = availability.archive_availability(db, user.tenant_id, availability_id, user.id)
    return _json(availability.availability_to_dict(record))


# ---------------------------------------------------------------------------
# Activity


@app.get("/api/activity-logs")
def activity_logs(
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(require_permission(Permission.VIEW_ACTIVITY)),
    db: Session = Depends(get_db),
) -> JSONResponse:
    return _json([activity_to_dict(log) for log in list_activity(db, user.tenant_id, limit=limit)])
