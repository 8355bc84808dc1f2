from __future__ import annotations

import datetime
import secrets
from typing import Any, Dict, List, Optional

from pydantic.alias_generators import to_camel
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError

from .database import (
    CareSupportPlan,
    CaseNote,
    ConflictError,
    Client,
    HourlyObservation,
    IncidentClosure,
    IncidentReport,
    InvalidStateError,
    MedicationPlan,
    MedicationRecord,
    Shift,
    User,
    ensure_aware,
    get_client_in_tenant,
    get_tenant_record,
    record_activity,
    utcnow,
)
from .roles import Permission, has_permission


CLIENT_FIELDS = (
    "first_name",
    "last_name",
    "ndis_number",
    "date_of_birth",
    "address",
    "emergency_contact_name",
    "emergency_contact_phone",
    "ndis_goals",
    "allergies",
    "primary_diagnosis",
)
MEDICATION_RESULTS = {"Administered", "Refused", "Missed"}
CASE_NOTE_PRIORITIES = {"low", "normal", "high"}


def _code(prefix: str) -> str:
    stamp = utcnow().strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{secrets.token_hex(3).upper()}"


# ---------------------------------------------------------------------------
# Clients


def create_client(session, tenant_id: int, payload: Dict[str, Any], actor_id: Optional[int] = None) -> Client:
    first_name = (payload.get("first_name") or "").strip()
    last_name = (payload.get("last_name") or "").strip()
    if not first_name or not last_name:
        raise ValueError("Client first and last name are required")
    client_code = (payload.get("client_code") or "").strip() or _code("CL")
    taken = session.execute(
        select(Client.id).where(Client.tenant_id == tenant_id, Client.client_code == client_code)
    ).scalar_one_or_none()
    if taken is not None:
        raise ConflictError(f"Client code {client_code!r} is already in use")
    client = Client(
        tenant_id=tenant_id,
        client_code=client_code,
        full_name=f"{first_name} {last_name}",
    )
    for key in CLIENT_FIELDS:
        if payload.get(key) is not None:
            setattr(client, key, payload[key])
    client.first_name, client.last_name = first_name, last_name
    client.created_by = actor_id
    session.add(client)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f"Client code {client_code!r} is already in use") from exc
    record_activity(
        session,
        tenant_id,
        actor_id,
        "create_client",
        resource_type="client",
        resource_id=client.id,
        description=f"Created client {client.full_name}",
        commit=False,
    )
    session.commit()
    return client


def update_client(session, tenant_id: int, client_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None) -> Client:
    client = get_client_in_tenant(session, tenant_id, client_id)
    for key in CLIENT_FIELDS:
        if key in changes and changes[key] is not None:
            setattr(client, key, changes[key])
    if "is_active" in changes and changes["is_active"] is not None:
        client.is_active = bool(changes["is_active"])
    client.full_name = f"{client.first_name} {client.last_name}"
    record_activity(
        session, tenant_id, actor_id, "update_client", resource_type="client", resource_id=client.id, commit=False
    )
    session.commit()
    return client


def archive_client(session, tenant_id: int, client_id: int, actor_id: Optional[int] = None) -> Client:
    """Deactivate rather than delete; shifts, notes and budgets keep pointing at the client."""
    client = get_client_in_tenant(session, tenant_id, client_id)
    client.is_active = False
    record_activity(
        session, tenant_id, actor_id, "archive_client", resource_type="client", resource_id=client.id, commit=False
    )
    session.commit()
    return client


def list_clients(session, tenant_id: int, *, search: Optional[str] = None, include_inactive: bool = False) -> List[Client]:
    stmt = select(Client).where(Client.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(Client.is_active.is_(True))
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(
            or_(Client.full_name.ilike(pattern), Client.ndis_number.ilike(pattern), Client.client_code.ilike(pattern))
        )
    return list(session.scalars(stmt.order_by(Client.last_name.asc(), Client.first_name.asc())))


def client_to_dict(client: Client) -> Dict[str, Any]:
    return {
        "id": client.id,
        "clientCode": client.client_code,
        "firstName": client.first_name,
        "lastName": client.last_name,
        "fullName": client.full_name,
        "ndisNumber": client.ndis_number,
        "dateOfBirth": client.date_of_birth.isoformat() if client.date_of_birth else None,
        "address": client.address,
        "emergencyContactName": client.emergency_contact_name,
        "emergencyContactPhone": client.emergency_contact_phone,
        "ndisGoals": client.ndis_goals,
        "allergies": client.allergies,
        "primaryDiagnosis": client.primary_diagnosis,
        "isActive": client.is_active,
    }


# ---------------------------------------------------------------------------
# Incident reports


def create_incident(session, tenant_id: int, payload: Dict[str, Any], staff_id: int) -> IncidentReport:
    client = get_client_in_tenant(session, tenant_id, payload["client_id"])
    intensity = int(payload.get("intensity_rating") or 0)
    if not 1 <= intensity <= 10:
        raise ValueError("intensityRating must be between 1 and 10")
    description = (payload.get("description") or "").strip()
    if not description:
        raise ValueError("Incident description is required")
    incident = IncidentReport(
        tenant_id=tenant_id,
        incident_code=_code("IR"),
        client_id=client.id,
        staff_id=staff_id,
        date_time=payload.get("date_time") or utcnow(),
        location=(payload.get("location") or "").strip() or "Unspecified",
        witness_name=payload.get("witness_name"),
        types=list(payload.get("types") or []),
        is_ndis_reportable=bool(payload.get("is_ndis_reportable")),
        triggers=list(payload.get("triggers") or []),
        intensity_rating=intensity,
        staff_responses=list(payload.get("staff_responses") or []),
        description=description,
        status="Open",
    )
    session.add(incident)
    session.flush()
    record_activity(
        session,
        tenant_id,
        staff_id,
        "create_incident",
        resource_type="incident",
        resource_id=incident.id,
        description=f"Incident {incident.incident_code} reported for {client.full_name}",
        details={"ndisReportable": incident.is_ndis_reportable},
        commit=False,
    )
    session.commit()
    return incident


def update_incident(session, tenant_id: int, incident_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None) -> IncidentReport:
    incident: IncidentReport = get_tenant_record(session, IncidentReport, tenant_id, incident_id)
    if incident.status == "Closed":
        raise InvalidStateError("Closed incidents cannot be edited")
    for key in ("location", "witness_name", "description", "is_ndis_reportable", "date_time"):
        if key in changes and changes[key] is not None:
            setattr(incident, key, changes[key])
    for key in ("types", "triggers", "staff_responses"):
        if key in changes and changes[key] is not None:
            setattr(incident, key, list(changes[key]))
    if changes.get("intensity_rating") is not None:
        intensity = int(changes["intensity_rating"])
        if not 1 <= intensity <= 10:
            raise ValueError("intensityRating must be between 1 and 10")
        incident.intensity_rating = intensity
    record_activity(
        session, tenant_id, actor_id, "update_incident", resource_type="incident", resource_id=incident.id, commit=False
    )
    session.commit()
    return incident


def close_incident(session, tenant_id: int, incident_id: int, payload: Dict[str, Any], actor_id: int) -> IncidentReport:
    incident: IncidentReport = get_tenant_record(session, IncidentReport, tenant_id, incident_id)
    if incident.status == "Closed":
        raise InvalidStateError(f"Incident {incident.incident_code} is already closed")
    findings = (payload.get("findings") or "").strip()
    if not findings:
        raise ValueError("Closure findings are required")
    incident.closure = IncidentClosure(
        tenant_id=tenant_id,
        closed_by=actor_id,
        findings=findings,
        controls_reviewed=bool(payload.get("controls_reviewed")),
        improvements=payload.get("improvements"),
        outcome=payload.get("outcome"),
    )
    incident.status = "Closed"
    record_activity(
        session, tenant_id, actor_id, "close_incident", resource_type="incident", resource_id=incident.id, commit=False
    )
    session.commit()
    return incident


def delete_incident(session, tenant_id: int, incident_id: int, actor_id: Optional[int] = None) -> None:
    incident = get_tenant_record(session, IncidentReport, tenant_id, incident_id)
    session.delete(incident)
    record_activity(
        session, tenant_id, actor_id, "delete_incident", resource_type="incident", resource_id=incident_id, commit=False
    )
    session.commit()


def list_incidents(session, tenant_id: int, *, client_id: Optional[int] = None, status: Optional[str] = None) -> List[IncidentReport]:
    stmt = select(IncidentReport).where(IncidentReport.tenant_id == tenant_id)
    if client_id is not None:
        stmt = stmt.where(IncidentReport.client_id == client_id)
    if status:
        stmt = stmt.where(IncidentReport.status == status)
    return list(session.scalars(stmt.order_by(IncidentReport.date_time.desc())))


def incident_to_dict(incident: IncidentReport) -> Dict[str, Any]:
    closure = incident.closure
    return {
        "id": incident.id,
        "incidentId": incident.incident_code,
        "clientId": incident.client_id,
        "staffId": incident.staff_id,
        "dateTime": ensure_aware(incident.date_time).isoformat(),
        "location": incident.location,
        "witnessName": incident.witness_name,
        "types": list(incident.types or []),
        "isNdisReportable": incident.is_ndis_reportable,
        "triggers": list(incident.triggers or []),
        "intensityRating": incident.intensity_rating,
        "staffResponses": list(incident.staff_responses or []),
        "description": incident.description,
        "status": incident.status,
        "closure": (
            {
                "closedBy": closure.closed_by,
                "closureDate": ensure_aware(closure.closure_date).isoformat(),
                "findings": closure.findings,
                "controlsReviewed": closure.controls_reviewed,
                "improvements": closure.improvements,
                "outcome": closure.outcome,
            }
            if closure
            else None
        ),
    }


# ---------------------------------------------------------------------------
# Medication


def create_medication_plan(session, tenant_id: int, client_id: int, payload: Dict[str, Any], actor_id: Optional[int] = None) -> MedicationPlan:
    get_client_in_tenant(session, tenant_id, client_id)
    for key in ("medication_name", "dosage", "frequency", "route"):
        if not (payload.get(key) or "").strip():
            raise ValueError(f"{key} is required")
    start_date: Optional[datetime.date] = payload.get("start_date")
    end_date: Optional[datetime.date] = payload.get("end_date")
    if start_date and end_date and end_date < start_date:
        raise ValueError("Medication plan end date cannot precede its start date")
    plan = MedicationPlan(
        tenant_id=tenant_id,
        client_id=client_id,
        medication_name=payload["medication_name"].strip(),
        dosage=payload["dosage"].strip(),
        frequency=payload["frequency"].strip(),
        route=payload["route"].strip(),
        time_of_day=payload.get("time_of_day"),
        start_date=start_date,
        end_date=end_date,
        prescribed_by=payload.get("prescribed_by"),
        instructions=payload.get("instructions"),
        status="active",
        created_by=actor_id,
    )
    session.add(plan)
    session.flush()
    record_activity(
        session, tenant_id, actor_id, "create_medication_plan", resource_type="medication_plan", resource_id=plan.id, commit=False
    )
    session.commit()
    return plan


def list_medication_plans(session, tenant_id: int, client_id: int) -> List[MedicationPlan]:
    return list(
        session.scalars(
            select(MedicationPlan)
            .where(MedicationPlan.tenant_id == tenant_id, MedicationPlan.client_id == client_id)
            .order_by(MedicationPlan.status.asc(), MedicationPlan.medication_name.asc())
        )
    )


def record_medication(session, tenant_id: int, client_id: int, payload: Dict[str, Any], staff_id: int) -> MedicationRecord:
    get_client_in_tenant(session, tenant_id, client_id)
    result = payload.get("result") or "Administered"
    if result not in MEDICATION_RESULTS:
        raise ValueError(f"result must be one of {', '.join(sorted(MEDICATION_RESULTS))}")
    if result == "Refused" and not (payload.get("refusal_reason") or "").strip():
        raise ValueError("A refusal reason is required when medication is refused")

    plan: Optional[MedicationPlan] = None
    plan_id = payload.get("medication_plan_id")
    if plan_id is not None:
        plan = get_tenant_record(session, MedicationPlan, tenant_id, plan_id)
        if plan.client_id != client_id:
            raise ValueError("Medication plan belongs to a different client")
        if plan.status != "active":
            raise InvalidStateError("Cannot record against an inactive medication plan")
    medication_name = plan.medication_name if plan else (payload.get("medication_name") or "").strip()
    if not medication_name:
        raise ValueError("medication_name is required without a medication plan")

    record = MedicationRecord(
        tenant_id=tenant_id,
        medication_plan_id=plan.id if plan else None,
        client_id=client_id,
        administered_by=staff_id,
        medication_name=medication_name,
        scheduled_time=payload.get("scheduled_time"),
        actual_time=payload.get("actual_time") or utcnow(),
        route=payload.get("route") or (plan.route if plan else None),
        result=result,
        refusal_reason=payload.get("refusal_reason"),
        notes=payload.get("notes"),
        was_witnessed=bool(payload.get("was_witnessed")),
    )
    session.add(record)
    session.flush()
    record_activity(
        session,
        tenant_id,
        staff_id,
        "record_medication",
        resource_type="medication_record",
        resource_id=record.id,
        details={"result": result, "clientId": client_id},
        commit=False,
    )
    session.commit()
    return record


def list_medication_records(session, tenant_id: int, client_id: int) -> List[MedicationRecord]:
    return list(
        session.scalars(
            select(MedicationRecord)
            .where(MedicationRecord.tenant_id == tenant_id, MedicationRecord.client_id == client_id)
            .order_by(MedicationRecord.actual_time.desc())
        )
    )


def medication_plan_to_dict(plan: MedicationPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "clientId": plan.client_id,
        "medicationName": plan.medication_name,
        "dosage": plan.dosage,
        "frequency": plan.frequency,
        "route": plan.route,
        "timeOfDay": plan.time_of_day,
        "startDate": plan.start_date.isoformat() if plan.start_date else None,
        "endDate": plan.end_date.isoformat() if plan.end_date else None,
        "prescribedBy": plan.prescribed_by,
        "instructions": plan.instructions,
        "status": plan.status,
    }


def medication_record_to_dict(record: MedicationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "medicationPlanId": record.medication_plan_id,
        "clientId": record.client_id,
        "administeredBy": record.administered_by,
        "medicationName": record.medication_name,
        "scheduledTime": ensure_aware(record.scheduled_time).isoformat() if record.scheduled_time else None,
        "actualTime": ensure_aware(record.actual_time).isoformat(),
        "route": record.route,
        "result": record.result,
        "refusalReason": record.refusal_reason,
        "notes": record.notes,
        "wasWitnessed": record.was_witnessed,
    }


# ---------------------------------------------------------------------------
# Case notes


def create_case_note(session, tenant_id: int, payload: Dict[str, Any], author_id: int) -> CaseNote:
    get_client_in_tenant(session, tenant_id, payload["client_id"])
    title = (payload.get("title") or "").strip()
    content = (payload.get("content") or "").strip()
    if not title or not content:
        raise ValueError("Case notes need a title and content")
    priority = payload.get("priority") or "normal"
    if priority not in CASE_NOTE_PRIORITIES:
        raise ValueError(f"priority must be one of {', '.join(sorted(CASE_NOTE_PRIORITIES))}")
    linked_shift_id = payload.get("linked_shift_id")
    if linked_shift_id is not None:
        get_tenant_record(session, Shift, tenant_id, linked_shift_id)
    note = CaseNote(
        tenant_id=tenant_id,
        client_id=payload["client_id"],
        user_id=author_id,
        title=title,
        content=content,
        category=payload.get("category") or "Progress Note",
        priority=priority,
        linked_shift_id=linked_shift_id,
    )
    session.add(note)
    session.flush()
    record_activity(
        session, tenant_id, author_id, "create_case_note", resource_type="case_note", resource_id=note.id, commit=False
    )
    session.commit()
    return note


def update_case_note(session, tenant_id: int, note_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None) -> CaseNote:
    note: CaseNote = get_tenant_record(session, CaseNote, tenant_id, note_id)
    for key in ("title", "content", "category"):
        if changes.get(key):
            setattr(note, key, changes[key])
    if changes.get("priority"):
        if changes["priority"] not in CASE_NOTE_PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(sorted(CASE_NOTE_PRIORITIES))}")
        note.priority = changes["priority"]
    record_activity(
        session, tenant_id, actor_id, "update_case_note", resource_type="case_note", resource_id=note.id, commit=False
    )
    session.commit()
    return note


def delete_case_note(session, tenant_id: int, note_id: int, actor_id: Optional[int] = None) -> None:
    note = get_tenant_record(session, CaseNote, tenant_id, note_id)
    session.delete(note)
    record_activity(
        session, tenant_id, actor_id, "delete_case_note", resource_type="case_note", resource_id=note_id, commit=False
    )
    session.commit()


def list_case_notes(session, tenant_id: int, *, client_id: Optional[int] = None) -> List[CaseNote]:
    stmt = select(CaseNote).where(CaseNote.tenant_id == tenant_id)
    if client_id is not None:
        stmt = stmt.where(CaseNote.client_id == client_id)
    return list(session.scalars(stmt.order_by(CaseNote.created_at.desc(), CaseNote.id.desc())))


def case_note_to_dict(note: CaseNote) -> Dict[str, Any]:
    return {
        "id": note.id,
        "clientId": note.client_id,
        "userId": note.user_id,
        "title": note.title,
        "content": note.content,
        "category": note.category,
        "priority": note.priority,
        "linkedShiftId": note.linked_shift_id,
        "createdAt": ensure_aware(note.created_at).isoformat(),
    }


# ---------------------------------------------------------------------------
# Care support plans

CARE_PLAN_STATUSES = ("draft", "active", "completed")
CARE_PLAN_SECTIONS = (
    "about_me",
    "goals",
    "adl",
    "structure",
    "communication",
    "behaviour",
    "disaster",
    "mealtime",
)


def _rostered_client_ids(session, tenant_id: int, user: User) -> Optional[List[int]]:
    """Clients a frontline worker may read; ``None`` when the role is not limited."""
    if has_permission(user.role, Permission.MANAGE_CARE_PLANS):
        return None
    rows = session.execute(
        select(Shift.client_id)
        .where(Shift.tenant_id == tenant_id, Shift.user_id == user.id, Shift.client_id.is_not(None))
        .distinct()
    )
    return [row[0] for row in rows]


def _plan_sections(payload: Dict[str, Any], existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    sections = dict(existing or {})
    for key in CARE_PLAN_SECTIONS:
        if key in payload and payload[key] is not None:
            if not isinstance(payload[key], dict):
                raise ValueError(f"{key} must be an object")
            sections[key] = payload[key]
    return sections


def create_care_plan(session, tenant_id: int, payload: Dict[str, Any], actor_id: Optional[int] = None) -> CareSupportPlan:
    client = get_client_in_tenant(session, tenant_id, payload["client_id"])
    title = (payload.get("plan_title") or "").strip()
    if not title:
        raise ValueError("Plan title is required")
    status = payload.get("status") or "draft"
    if status not in CARE_PLAN_STATUSES:
        raise ValueError(f"status must be one of {', '.join(CARE_PLAN_STATUSES)}")
    plan = CareSupportPlan(
        tenant_id=tenant_id,
        client_id=client.id,
        plan_title=title,
        status=status,
        sections=_plan_sections(payload),
        created_by=actor_id,
    )
    session.add(plan)
    session.flush()
    record_activity(
        session,
        tenant_id,
        actor_id,
        "create_care_plan",
        resource_type="care_support_plan",
        resource_id=plan.id,
        description=f"Created care plan '{title}' for {client.full_name}",
        commit=False,
    )
    session.commit()
    return plan


def get_care_plan(session, tenant_id: int, plan_id: int, user: Optional[User] = None) -> CareSupportPlan:
    plan: CareSupportPlan = get_tenant_record(session, CareSupportPlan, tenant_id, plan_id)
    if user is not None:
        allowed = _rostered_client_ids(session, tenant_id, user)
        if allowed is not None and plan.client_id not in allowed:
            raise PermissionError("Care plan belongs to a client you are not rostered with")
    return plan


def list_care_plans(
    session, tenant_id: int, *, client_id: Optional[int] = None, user: Optional[User] = None
) -> List[CareSupportPlan]:
    stmt = select(CareSupportPlan).where(CareSupportPlan.tenant_id == tenant_id)
    if client_id is not None:
        stmt = stmt.where(CareSupportPlan.client_id == client_id)
    if user is not None:
        allowed = _rostered_client_ids(session, tenant_id, user)
        if allowed is not None:
            stmt = stmt.where(CareSupportPlan.client_id.in_(allowed))
    return list(session.scalars(stmt.order_by(CareSupportPlan.updated_at.desc(), CareSupportPlan.id.desc())))


def update_care_plan(session, tenant_id: int, plan_id: int, changes: Dict[str, Any], actor_id: Optional[int] = None) -> CareSupportPlan:
    plan = get_care_plan(session, tenant_id, plan_id)
    if changes.get("plan_title") is not None:
        title = changes["plan_title"].strip()
        if not title:
            raise ValueError("Plan title is required")
        plan.plan_title = title
    if changes.get("status"):
        if changes["status"] not in CARE_PLAN_STATUSES:
            raise ValueError(f"status must be one of {', '.join(CARE_PLAN_STATUSES)}")
        plan.status = changes["status"]
    # Reassign so the JSON column is flagged dirty.
    plan.sections = _plan_sections(changes, plan.sections)
    record_activity(
        session,
        tenant_id,
        actor_id,
        "update_care_plan",
        resource_type="care_support_plan",
        resource_id=plan.id,
        details={"status": plan.status},
        commit=False,
    )
    session.commit()
    return plan


def delete_care_plan(session, tenant_id: int, plan_id: int, actor_id: Optional[int] = None) -> None:
    plan = get_care_plan(session, tenant_id, plan_id)
    session.delete(plan)
    record_activity(
        session,
        tenant_id,
        actor_id,
        "delete_care_plan",
        resource_type="care_support_plan",
        resource_id=plan_id,
        commit=False,
    )
    session.commit()


def care_plan_to_dict(plan: CareSupportPlan) -> Dict[str, Any]:
    sections = plan.sections or {}
    data = {
        "id": plan.id,
        "clientId": plan.client_id,
        "planTitle": plan.plan_title,
        "status": plan.status,
        "createdBy": plan.created_by,
        "createdAt": ensure_aware(plan.created_at).isoformat(),
        "updatedAt": ensure_aware(plan.updated_at).isoformat(),
    }
    for key in CARE_PLAN_SECTIONS:
        data[to_camel(key)] = sections.get(key, {})
    return data


# ---------------------------------------------------------------------------
# Hourly observations

OBSERVATION_TYPES = {"behaviour", "adl"}
_RATED_FIELDS = ("settings", "time", "antecedents", "response")


def create_observation(session, tenant_id: int, payload: Dict[str, Any], user: User) -> HourlyObservation:
    client_id = payload["client_id"]
    get_client_in_tenant(session, tenant_id, client_id)
    allowed = _rostered_client_ids(session, tenant_id, user)
    if allowed is not None and client_id not in allowed:
        raise PermissionError("You are not rostered with this client")
    observation_type = payload.get("observation_type")
    if observation_type not in OBSERVATION_TYPES:
        raise ValueError(f"observationType must be one of {', '.join(sorted(OBSERVATION_TYPES))}")
    observation = HourlyObservation(
        tenant_id=tenant_id,
        client_id=client_id,
        user_id=user.id,
        observation_type=observation_type,
        subtype=payload.get("subtype"),
        notes=payload.get("notes"),
        observed_at=payload.get("timestamp") or utcnow(),
    )
    for key in _RATED_FIELDS:
        setattr(observation, key, payload.get(key))
        rating = payload.get(f"{key}_rating")
        if rating is not None:
            if not 1 <= int(rating) <= 5:
                raise ValueError(f"{to_camel(key)}Rating must be between 1 and 5")
            setattr(observation, f"{key}_rating", int(rating))
    session.add(observation)
    session.flush()
    record_activity(
        session,
        tenant_id,
        user.id,
        "create_observation",
        resource_type="hourly_observation",
        resource_id=observation.id,
        details={"type": observation_type, "clientId": client_id},
        commit=False,
    )
    session.commit()
    return observation


def list_observations(
    session,
    tenant_id: int,
    *,
    client_id: Optional[int] = None,
    observation_type: Optional[str] = None,
    user: Optional[User] = None,
) -> List[HourlyObservation]:
    stmt = select(HourlyObservation).where(HourlyObservation.tenant_id == tenant_id)
    if client_id is not None:
        stmt = stmt.where(HourlyObservation.client_id == client_id)
    if observation_type:
        stmt = stmt.where(HourlyObservation.observation_type == observation_type)
    if user is not None:
        allowed = _rostered_client_ids(session, tenant_id, user)
        if allowed is not None:
            stmt = stmt.where(HourlyObservation.client_id.in_(allowed))
    return list(session.scalars(stmt.order_by(HourlyObservation.observed_at.desc(), HourlyObservation.id.desc())))


def delete_observation(session, tenant_id: int, observation_id: int, user: User) -> None:
    observation: HourlyObservation = get_tenant_record(session, HourlyObservation, tenant_id, observation_id)
    if observation.user_id != user.id and not has_permission(user.role, Permission.MANAGE_CARE_PLANS):
        raise PermissionError("Only the author or a manager can delete an observation")
    session.delete(observation)
    record_activity(
        session,
        tenant_id,
        user.id,
        "delete_observation",
        resource_type="hourly_observation",
        resource_id=observation_id,
        commit=False,
    )
    session.commit()


def observation_to_dict(observation: HourlyObservation) -> Dict[str, Any]:
    data = {
        "id": observation.id,
        "clientId": observation.client_id,
        "userId": observation.user_id,
        "observationType": observation.observation_type,
        "subtype": observation.subtype,
        "notes": observation.notes,
        "timestamp": ensure_aware(observation.observed_at).isoformat(),
    }
    for key in _RATED_FIELDS:
        data[key] = getattr(observation, key)
        data[f"{key}Rating"] = getattr(observation, f"{key}_rating")
    return data
