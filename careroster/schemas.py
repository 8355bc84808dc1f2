"""Request payloads. Front ends send camelCase; fields are snake_case in Python."""

from __future__ import annotations

import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .database import ensure_aware
from .recurrence import DEFAULT_OCCURRENCES, MAX_OCCURRENCES, Cadence, Weekday


FundingCategory = Literal["CommunityAccess", "SIL", "CapacityBuilding"]
StaffRatio = Literal["1:1", "1:2", "1:3", "1:4"]
ShiftType = Literal["AM", "PM", "ActiveNight", "Sleepover"]


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LoginPayload(Payload):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    tenant_id: Optional[int] = None


class UserCreatePayload(Payload):
    username: str = Field(min_length=1, max_length=80)
    password: str = Field(min_length=8)
    role: str = "SupportWorker"
    full_name: str = ""
    email: Optional[str] = None
    hourly_rate: float = Field(default=0.0, ge=0)
    employment_type: Optional[str] = None


class ClientPayload(Payload):
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(min_length=1, max_length=80)
    client_code: Optional[str] = None
    ndis_number: Optional[str] = None
    date_of_birth: Optional[datetime.date] = None
    address: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    ndis_goals: Optional[str] = None
    allergies: Optional[str] = None
    primary_diagnosis: Optional[str] = None


class ClientUpdatePayload(Payload):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    ndis_number: Optional[str] = None
    date_of_birth: Optional[datetime.date] = None
    address: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    ndis_goals: Optional[str] = None
    allergies: Optional[str] = None
    primary_diagnosis: Optional[str] = None
    is_active: Optional[bool] = None


class ShiftPayload(Payload):
    title: str = Field(min_length=1, max_length=160)
    start_time: datetime.datetime
    end_time: Optional[datetime.datetime] = None
    user_id: Optional[int] = None
    client_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    funding_category: Optional[FundingCategory] = None
    staff_ratio: StaffRatio = "1:1"

    @model_validator(mode="after")
    def _end_after_start(self) -> "ShiftPayload":
        if self.end_time is not None and ensure_aware(self.end_time) <= ensure_aware(self.start_time):
            raise ValueError("endTime must be after startTime")
        return self


class ShiftUpdatePayload(Payload):
    title: Optional[str] = Field(default=None, min_length=1, max_length=160)
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    user_id: Optional[int] = None
    client_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    funding_category: Optional[FundingCategory] = None
    staff_ratio: Optional[StaffRatio] = None
    status: Optional[Literal["unassigned", "assigned", "requested"]] = None


class ShiftSeriesPayload(Payload):
    title: str = Field(min_length=1, max_length=160)
    start_date_time: datetime.datetime
    end_date_time: Optional[datetime.datetime] = None
    selected_weekdays: List[Weekday] = Field(min_length=1)
    recurrence_type: Cadence = Cadence.WEEKLY
    termination_mode: Literal["occurrenceCount", "endDate"] = "occurrenceCount"
    occurrence_count: Optional[int] = Field(default=None, ge=1, le=MAX_OCCURRENCES)
    end_date: Optional[datetime.date] = None
    assigned_user_id: Optional[int] = None
    client_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    funding_category: Optional[FundingCategory] = None
    staff_ratio: StaffRatio = "1:1"

    @field_validator("selected_weekdays", mode="before")
    @classmethod
    def _parse_weekdays(cls, value):
        if isinstance(value, list):
            return [Weekday.parse(item) if isinstance(item, str) else item for item in value]
        return value

    @field_validator("selected_weekdays")
    @classmethod
    def _dedupe_weekdays(cls, value: List[Weekday]) -> List[Weekday]:
        seen: List[Weekday] = []
        for day in value:
            if day not in seen:
                seen.append(day)
        return seen

    @model_validator(mode="after")
    def _termination(self) -> "ShiftSeriesPayload":
        if self.end_date_time is not None and ensure_aware(self.end_date_time) <= ensure_aware(self.start_date_time):
            raise ValueError("endDateTime must be after startDateTime")
        if self.termination_mode == "endDate":
            if self.end_date is None:
                raise ValueError("endDate is required when terminationMode is endDate")
        elif self.occurrence_count is None:
            self.occurrence_count = DEFAULT_OCCURRENCES
        return self


class ShiftActionPayload(Payload):
    reason: Optional[str] = None


class BudgetPayload(Payload):
    client_id: int
    sil_total: float = Field(default=0.0, ge=0)
    community_access_total: float = Field(default=0.0, ge=0)
    capacity_building_total: float = Field(default=0.0, ge=0)
    sil_allowed_ratios: List[StaffRatio] = Field(default_factory=list)
    community_access_allowed_ratios: List[StaffRatio] = Field(default_factory=list)
    capacity_building_allowed_ratios: List[StaffRatio] = Field(default_factory=list)
    price_overrides: Dict[ShiftType, float] = Field(default_factory=dict)


class BudgetUpdatePayload(Payload):
    sil_total: Optional[float] = Field(default=None, ge=0)
    community_access_total: Optional[float] = Field(default=None, ge=0)
    capacity_building_total: Optional[float] = Field(default=None, ge=0)
    sil_allowed_ratios: Optional[List[StaffRatio]] = None
    community_access_allowed_ratios: Optional[List[StaffRatio]] = None
    capacity_building_allowed_ratios: Optional[List[StaffRatio]] = None
    price_overrides: Optional[Dict[ShiftType, float]] = None
    is_active: Optional[bool] = None


class PricingPayload(Payload):
    shift_type: ShiftType
    ratio: StaffRatio
    rate: float = Field(ge=0)
    is_active: bool = True


class IncidentPayload(Payload):
    client_id: int
    date_time: Optional[datetime.datetime] = None
    location: str = Field(min_length=1)
    witness_name: Optional[str] = None
    types: List[str] = Field(default_factory=list)
    is_ndis_reportable: bool = False
    triggers: List[str] = Field(default_factory=list)
    intensity_rating: int = Field(ge=1, le=10)
    staff_responses: List[str] = Field(default_factory=list)
    description: str = Field(min_length=1)


class IncidentUpdatePayload(Payload):
    date_time: Optional[datetime.datetime] = None
    location: Optional[str] = None
    witness_name: Optional[str] = None
    types: Optional[List[str]] = None
    is_ndis_reportable: Optional[bool] = None
    triggers: Optional[List[str]] = None
    intensity_rating: Optional[int] = Field(default=None, ge=1, le=10)
    staff_responses: Optional[List[str]] = None
    description: Optional[str] = None


class IncidentClosurePayload(Payload):
    findings: str = Field(min_length=1)
    controls_reviewed: bool = False
    improvements: Optional[str] = None
    outcome: Optional[str] = None


class MedicationPlanPayload(Payload):
    medication_name: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    frequency: str = Field(min_length=1)
    route: str = Field(min_length=1)
    time_of_day: Optional[str] = None
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None
    prescribed_by: Optional[str] = None
    instructions: Optional[str] = None


class MedicationRecordPayload(Payload):
    medication_plan_id: Optional[int] = None
    medication_name: Optional[str] = None
    scheduled_time: Optional[datetime.datetime] = None
    actual_time: Optional[datetime.datetime] = None
    route: Optional[str] = None
    result: Literal["Administered", "Refused", "Missed"] = "Administered"
    refusal_reason: Optional[str] = None
    notes: Optional[str] = None
    was_witnessed: bool = False


class CaseNotePayload(Payload):
    client_id: int
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    category: str = "Progress Note"
    priority: Literal["low", "normal", "high"] = "normal"
    linked_shift_id: Optional[int] = None


class CaseNoteUpdatePayload(Payload):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = None
    priority: Optional[Literal["low", "normal", "high"]] = None


class TimesheetReviewPayload(Payload):
    reason: Optional[str] = None


class HourAllocationPayload(Payload):
    staff_id: int
    max_hours: float = Field(gt=0)
    allocation_period: Literal["weekly", "fortnightly"] = "weekly"


class ChangePasswordPayload(Payload):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=8)


class CarePlanPayload(Payload):
    client_id: int
    plan_title: str = Field(min_length=1, max_length=200)
    status: Literal["draft", "active", "completed"] = "draft"
    about_me: Optional[Dict[str, Any]] = None
    goals: Optional[Dict[str, Any]] = None
    adl: Optional[Dict[str, Any]] = None
    structure: Optional[Dict[str, Any]] = None
    communication: Optional[Dict[str, Any]] = None
    behaviour: Optional[Dict[str, Any]] = None
    disaster: Optional[Dict[str, Any]] = None
    mealtime: Optional[Dict[str, Any]] = None


class CarePlanUpdatePayload(Payload):
    plan_title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    status: Optional[Literal["draft", "active", "completed"]] = None
    about_me: Optional[Dict[str, Any]] = None
    goals: Optional[Dict[str, Any]] = None
    adl: Optional[Dict[str, Any]] = None
    structure: Optional[Dict[str, Any]] = None
    communication: Optional[Dict[str, Any]] = None
    behaviour: Optional[Dict[str, Any]] = None
    disaster: Optional[Dict[str, Any]] = None
    mealtime: Optional[Dict[str, Any]] = None


class ObservationPayload(Payload):
    client_id: int
    observation_type: Literal["behaviour", "adl"]
    subtype: Optional[str] = None
    notes: Optional[str] = None
    settings: Optional[str] = None
    settings_rating: Optional[int] = Field(default=None, ge=1, le=5)
    time: Optional[str] = None
    time_rating: Optional[int] = Field(default=None, ge=1, le=5)
    antecedents: Optional[str] = None
    antecedents_rating: Optional[int] = Field(default=None, ge=1, le=5)
    response: Optional[str] = None
    response_rating: Optional[int] = Field(default=None, ge=1, le=5)
    timestamp: Optional[datetime.datetime] = None


class CancellationReviewPayload(Payload):
    action: Literal["approve", "deny"]
    review_notes: Optional[str] = None


class AvailabilityPayload(Payload):
    availability: Dict[str, List[ShiftType]]
    pattern_name: Optional[str] = Field(default=None, max_length=80)
    is_quick_pattern: bool = False


class AvailabilityApprovalPayload(Payload):
    is_approved: bool
    availability: Optional[Dict[str, List[ShiftType]]] = None
