from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from . import config


UTC = datetime.timezone.utc

SHIFT_STATUSES = {
    "unassigned",
    "assigned",
    "requested",
    "cancellation_requested",
    "in-progress",
    "completed",
    "cancelled",
}
FUNDING_CATEGORIES = ("CommunityAccess", "SIL", "CapacityBuilding")
STAFF_RATIOS = ("1:1", "1:2", "1:3", "1:4")
TIMESHEET_STATUSES = {"draft", "submitted", "approved", "rejected"}


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def ensure_aware(value: datetime.datetime) -> datetime.datetime:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RecordNotFound(LookupError):
    """Raised when a tenant-scoped lookup finds nothing."""


class ConflictError(ValueError):
    """Raised when a write would clash with an existing record."""


class InvalidStateError(ValueError):
    """Raised when a record is not in a state that allows the requested change."""


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    type: Mapped[str] = mapped_column(String(40), default="healthcare", nullable=False)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    username: Mapped[str] = mapped_column(String(80), nullable=False)
    full_name: Mapped[str] = mapped_column(String(160), default="", nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    role: Mapped[str] = mapped_column(String(40), default="SupportWorker", nullable=False)
    password_hash: Mapped[str] = mapped_column(String(160), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    employment_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    hourly_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),)


class SessionRecord(Base):
    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Client(TimestampMixin, Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_code: Mapped[str] = mapped_column(String(32), nullable=False)
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    full_name: Mapped[str] = mapped_column(String(170), nullable=False)
    ndis_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    date_of_birth: Mapped[Optional[datetime.date]] = mapped_column(Date, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    emergency_contact_name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    ndis_goals: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    allergies: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    primary_diagnosis: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (UniqueConstraint("tenant_id", "client_code", name="uq_clients_tenant_code"),)


class Shift(TimestampMixin, Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    client_id: Mapped[Optional[int]] = mapped_column(ForeignKey("clients.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="assigned", nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    series_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    weekday: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    funding_category: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    staff_ratio: Mapped[str] = mapped_column(String(8), default="1:1", nullable=False)
    start_timestamp: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_timestamp: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[Optional[User]] = relationship()
    client: Mapped[Optional[Client]] = relationship()

    @property
    def scheduled_hours(self) -> float:
        delta = ensure_aware(self.end_time) - ensure_aware(self.start_time)
        return round(delta.total_seconds() / 3600.0, 2)


class NdisBudget(TimestampMixin, Base):
    __tablename__ = "ndis_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    sil_total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    sil_remaining: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    sil_allowed_ratios: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    community_access_total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    community_access_remaining: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    community_access_allowed_ratios: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    capacity_building_total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    capacity_building_remaining: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    capacity_building_allowed_ratios: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    price_overrides: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    client: Mapped[Client] = relationship()


class NdisPricing(TimestampMixin, Base):
    __tablename__ = "ndis_pricing"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    shift_type: Mapped[str] = mapped_column(String(20), nullable=False)
    ratio: Mapped[str] = mapped_column(String(8), nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "shift_type", "ratio", name="uq_ndis_pricing_tenant_type_ratio"),
    )


class BudgetTransaction(Base):
    __tablename__ = "budget_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[int] = mapped_column(ForeignKey("ndis_budgets.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shifts.id", ondelete="SET NULL"), nullable=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    shift_type: Mapped[str] = mapped_column(String(20), nullable=False)
    ratio: Mapped[str] = mapped_column(String(8), nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), default="deduction", nullable=False)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    resource_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class IncidentReport(TimestampMixin, Base):
    __tablename__ = "incident_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    incident_code: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    staff_id: Mapped[int] = mapped_column(Integer, nullable=False)
    date_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    witness_name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    types: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    is_ndis_reportable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    triggers: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    intensity_rating: Mapped[int] = mapped_column(Integer, nullable=False)
    staff_responses: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="Open", nullable=False)

    closure: Mapped[Optional["IncidentClosure"]] = relationship(
        back_populates="incident", cascade="all, delete-orphan", uselist=False
    )


class IncidentClosure(Base):
    __tablename__ = "incident_closures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[int] = mapped_column(ForeignKey("incident_reports.id", ondelete="CASCADE"), nullable=False)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    closed_by: Mapped[int] = mapped_column(Integer, nullable=False)
    closure_date: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    findings: Mapped[str] = mapped_column(Text, nullable=False)
    controls_reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    improvements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    incident: Mapped[IncidentReport] = relationship(back_populates="closure")


class MedicationPlan(TimestampMixin, Base):
    __tablename__ = "medication_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    medication_name: Mapped[str] = mapped_column(String(160), nullable=False)
    dosage: Mapped[str] = mapped_column(String(80), nullable=False)
    frequency: Mapped[str] = mapped_column(String(80), nullable=False)
    route: Mapped[str] = mapped_column(String(40), nullable=False)
    time_of_day: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    start_date: Mapped[Optional[datetime.date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[datetime.date]] = mapped_column(Date, nullable=True)
    prescribed_by: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class MedicationRecord(Base):
    __tablename__ = "medication_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    medication_plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("medication_plans.id", ondelete="SET NULL"), nullable=True
    )
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    administered_by: Mapped[int] = mapped_column(Integer, nullable=False)
    medication_name: Mapped[str] = mapped_column(String(160), nullable=False)
    scheduled_time: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    route: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    result: Mapped[str] = mapped_column(String(20), default="Administered", nullable=False)
    refusal_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    was_witnessed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CaseNote(TimestampMixin, Base):
    __tablename__ = "case_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(40), default="Progress Note", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="normal", nullable=False)
    linked_shift_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("shifts.id", ondelete="SET NULL"), nullable=True
    )


class CareSupportPlan(TimestampMixin, Base):
    __tablename__ = "care_support_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    plan_title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    sections: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class HourlyObservation(TimestampMixin, Base):
    __tablename__ = "hourly_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    observation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subtype: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    settings: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    settings_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    time_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    antecedents: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    antecedents_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    observed_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CancellationRequest(TimestampMixin, Base):
    """A worker's late request to drop a shift, waiting on a manager."""

    __tablename__ = "cancellation_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[int] = mapped_column(ForeignKey("shifts.id", ondelete="CASCADE"), nullable=False)
    requested_by: Mapped[int] = mapped_column(Integer, nullable=False)
    requested_by_name: Mapped[str] = mapped_column(String(160), nullable=False)
    shift_title: Mapped[str] = mapped_column(String(160), nullable=False)
    shift_start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    shift_end_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(String(170), nullable=True)
    request_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hours_notice: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reviewed_by_name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    reviewed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class ShiftCancellation(Base):
    """Permanent record of a worker dropping a shift."""

    __tablename__ = "shift_cancellations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shifts.id", ondelete="SET NULL"), nullable=True)
    cancelled_by: Mapped[int] = mapped_column(Integer, nullable=False)
    cancelled_by_name: Mapped[str] = mapped_column(String(160), nullable=False)
    shift_title: Mapped[str] = mapped_column(String(160), nullable=False)
    shift_start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    shift_end_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    client_name: Mapped[Optional[str]] = mapped_column(String(170), nullable=True)
    cancellation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hours_notice: Mapped[int] = mapped_column(Integer, nullable=False)
    approved_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    approved_by_name: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    approved_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class StaffAvailability(TimestampMixin, Base):
    __tablename__ = "staff_availability"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    availability: Mapped[Dict[str, List[str]]] = mapped_column(JSON, default=dict, nullable=False)
    pattern_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    is_quick_pattern: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    override_by_manager: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class HourAllocation(TimestampMixin, Base):
    __tablename__ = "hour_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    staff_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    allocation_period: Mapped[str] = mapped_column(String(20), default="weekly", nullable=False)
    max_hours: Mapped[float] = mapped_column(Float, nullable=False)
    hours_used: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    remaining_hours: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Timesheet(TimestampMixin, Base):
    __tablename__ = "timesheets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    pay_period_start: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    pay_period_end: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False)
    total_hours: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_earnings: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    submitted_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    entries: Mapped[List["TimesheetEntry"]] = relationship(
        back_populates="timesheet", cascade="all, delete-orphan", order_by="TimesheetEntry.entry_date"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "pay_period_start", name="uq_timesheets_user_period"),
    )


class TimesheetEntry(Base):
    __tablename__ = "timesheet_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timesheet_id: Mapped[int] = mapped_column(ForeignKey("timesheets.id", ondelete="CASCADE"), nullable=False)
    shift_id: Mapped[Optional[int]] = mapped_column(ForeignKey("shifts.id", ondelete="SET NULL"), nullable=True)
    entry_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    break_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_hours: Mapped[float] = mapped_column(Float, nullable=False)
    hourly_rate: Mapped[float] = mapped_column(Float, nullable=False)
    gross_pay: Mapped[float] = mapped_column(Float, nullable=False)
    is_auto_generated: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    timesheet: Mapped[Timesheet] = relationship(back_populates="entries")

    __table_args__ = (UniqueConstraint("timesheet_id", "shift_id", name="uq_timesheet_entries_shift"),)


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {}


engine = create_engine(config.DATABASE_URL, future=True, **_engine_kwargs(config.DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Tenant-scoped helpers


def get_tenant_record(session, model, tenant_id: int, record_id: int):
    """Fetch ``model`` by primary key, but only inside ``tenant_id``."""
    record = session.execute(
        select(model).where(model.id == record_id, model.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if record is None:
        raise RecordNotFound(f"{model.__name__} {record_id} not found")
    return record


def get_user_in_tenant(session, tenant_id: int, user_id: int) -> User:
    return get_tenant_record(session, User, tenant_id, user_id)


def get_client_in_tenant(session, tenant_id: int, client_id: int) -> Client:
    return get_tenant_record(session, Client, tenant_id, client_id)


def record_activity(
    session,
    tenant_id: int,
    user_id: Optional[int],
    action: str,
    resource_type: str = "shift",
    resource_id: Optional[int] = None,
    description: str = "",
    details: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> ActivityLog:
    log = ActivityLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        description=description[:255],
        details=details or {},
    )
    session.add(log)
    if commit:
        session.commit()
    return log


def list_activity(session, tenant_id: int, limit: int = 100) -> List[ActivityLog]:
    return list(
        session.scalars(
            select(ActivityLog)
            .where(ActivityLog.tenant_id == tenant_id)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(limit)
        )
    )


def shift_to_dict(shift: Shift) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "title": shift.title,
        "description": shift.description,
        "startTime": ensure_aware(shift.start_time).isoformat(),
        "endTime": ensure_aware(shift.end_time).isoformat(),
        "userId": shift.user_id,
        "clientId": shift.client_id,
        "status": shift.status,
        "location": shift.location,
        "seriesId": shift.series_id,
        "weekday": shift.weekday,
        "isRecurring": shift.is_recurring,
        "recurrenceType": shift.recurrence_type,
        "fundingCategory": shift.funding_category,
        "staffRatio": shift.staff_ratio,
        "startTimestamp": ensure_aware(shift.start_timestamp).isoformat() if shift.start_timestamp else None,
        "endTimestamp": ensure_aware(shift.end_timestamp).isoformat() if shift.end_timestamp else None,
    }


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "tenantId": user.tenant_id,
        "username": user.username,
        "fullName": user.full_name,
        "email": user.email,
        "role": user.role,
        "isActive": user.is_active,
        "employmentType": user.employment_type,
        "hourlyRate": user.hourly_rate,
    }


def budget_to_dict(budget: NdisBudget) -> Dict[str, Any]:
    return {
        "id": budget.id,
        "clientId": budget.client_id,
        "silTotal": budget.sil_total,
        "silRemaining": budget.sil_remaining,
        "silAllowedRatios": list(budget.sil_allowed_ratios or []),
        "communityAccessTotal": budget.community_access_total,
        "communityAccessRemaining": budget.community_access_remaining,
        "communityAccessAllowedRatios": list(budget.community_access_allowed_ratios or []),
        "capacityBuildingTotal": budget.capacity_building_total,
        "capacityBuildingRemaining": budget.capacity_building_remaining,
        "capacityBuildingAllowedRatios": list(budget.capacity_building_allowed_ratios or []),
        "priceOverrides": dict(budget.price_overrides or {}),
        "isActive": budget.is_active,
    }


def activity_to_dict(log: ActivityLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "userId": log.user_id,
        "action": log.action,
        "resourceType": log.resource_type,
        "resourceId": log.resource_id,
        "description": log.description,
        "metadata": log.details,
        "createdAt": ensure_aware(log.created_at).isoformat(),
    }
