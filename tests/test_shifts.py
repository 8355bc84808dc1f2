from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from careroster import config  # noqa: E402
from careroster import shifts as shift_service  # noqa: E402
from careroster.budget import create_budget  # noqa: E402
from careroster.database import (  # noqa: E402
    ActivityLog,
    Base,
    Client,
    ConflictError,
    InvalidStateError,
    Shift,
    Tenant,
    TimesheetEntry,
    User,
)
from careroster.pricing import seed_tenant_pricing  # noqa: E402
from careroster.recurrence import Weekday  # noqa: E402
from careroster.shifts import (  # noqa: E402
    ShiftSeriesRequest,
    ShiftStateError,
    cancel_shift,
    complete_shift,
    create_shift,
    create_shift_series,
    list_cancellation_requests,
    list_shift_cancellations,
    list_shifts,
    request_cancellation,
    request_shift,
    review_cancellation,
    start_shift,
    update_shift,
)
from careroster.timesheets import active_allocation, create_allocation  # noqa: E402

UTC = datetime.timezone.utc
MON_JAN_1 = datetime.datetime(2024, 1, 1, 9, 0, tzinfo=UTC)


@pytest.fixture()
def session(monkeypatch):
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    monkeypatch.setattr(config, "LOCAL_TIMEZONE", UTC)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with Session() as db_session:
        yield db_session


@pytest.fixture()
def roster(session):
    tenant = Tenant(name="Harbour Care")
    session.add(tenant)
    session.commit()
    users = {}
    for username, role in (("sam", "SupportWorker"), ("kim", "SupportWorker"), ("priya", "Coordinator")):
        user = User(
            tenant_id=tenant.id,
            username=username,
            full_name=username.title(),
            role=role,
            password_hash="x",
            hourly_rate=35.0,
        )
        session.add(user)
        users[username] = user
    client = Client(
        tenant_id=tenant.id, client_code="CL-001", first_name="Ruby", last_name="Hendricks", full_name="Ruby Hendricks"
    )
    session.add(client)
    session.commit()
    seed_tenant_pricing(session, tenant.id)
    return tenant, users, client


def _series(**overrides) -> ShiftSeriesRequest:
    values = dict(
        title="Morning support",
        start=MON_JAN_1,
        end=MON_JAN_1.replace(hour=17),
        weekdays=[Weekday.MONDAY, Weekday.WEDNESDAY],
        occurrences=4,
    )
    values.update(overrides)
    return ShiftSeriesRequest(**values)


class TestShiftSeries:
    def test_series_creates_tagged_instances(self, session, roster):
        tenant, users, client = roster
        result = create_shift_series(
            session, tenant.id, _series(user_id=users["sam"].id, client_id=client.id), users["priya"].id
        )

        assert result.complete
        assert result.requested == 4
        stored = list_shifts(session, tenant.id, series_id=result.series_id)
        assert [shift.start_time.date() for shift in stored] == [
            datetime.date(2024, 1, 1),
            datetime.date(2024, 1, 3),
            datetime.date(2024, 1, 8),
            datetime.date(2024, 1, 10),
        ]
        assert {shift.weekday for shift in stored} == {"monday", "wednesday"}
        assert all(shift.is_recurring for shift in stored)
        assert all(shift.recurrence_type == "weekly" for shift in stored)
        assert all(shift.status == "assigned" for shift in stored)
        assert result.as_dict()["created"] == 4

    def test_resubmitting_creates_a_second_series(self, session, roster):
        tenant, _, _ = roster
        first = create_shift_series(session, tenant.id, _series())
        second = create_shift_series(session, tenant.id, _series())
        assert first.series_id != second.series_id
        assert len(session.scalars(select(Shift)).all()) == 8
        assert all(shift.status == "unassigned" for shift in session.scalars(select(Shift)))

    def test_empty_expansion_creates_nothing(self, session, roster):
        tenant, _, _ = roster
        result = create_shift_series(
            session, tenant.id, _series(occurrences=None, until=datetime.date(2023, 12, 1))
        )
        assert result.complete
        assert result.requested == 0
        assert session.scalars(select(Shift)).all() == []

    def test_failure_keeps_earlier_instances(self, session, roster, monkeypatch):
        tenant, _, _ = roster
        real_create = shift_service.create_shift
        calls = {"count": 0}

        def flaky_create(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 3:
                raise ValueError("database unavailable")
            return real_create(*args, **kwargs)

        monkeypatch.setattr(shift_service, "create_shift", flaky_create)
        result = create_shift_series(session, tenant.id, _series())

        assert not result.complete
        assert result.failed_index == 2
        assert result.error == "database unavailable"
        assert len(result.created) == 2
        assert len(list_shifts(session, tenant.id, series_id=result.series_id)) == 2

    def test_unknown_client_stops_series(self, session, roster):
        tenant, _, _ = roster
        result = create_shift_series(session, tenant.id, _series(client_id=9999))
        assert result.failed_index == 0
        assert result.created == []


class TestShiftLifecycle:
    def _shift(self, session, tenant, user=None, client=None):
        return create_shift(
            session,
            tenant.id,
            {
                "title": "Community outing",
                "start_time": MON_JAN_1,
                "end_time": MON_JAN_1.replace(hour=17),
                "user_id": user.id if user else None,
                "client_id": client.id if client else None,
            },
        )

    def test_complete_deducts_budget_and_records_timesheet(self, session, roster):
        tenant, users, client = roster
        budget = create_budget(session, tenant.id, client.id, {"community_access_total": 2000})
        shift = self._shift(session, tenant, users["sam"], client)

        start_shift(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1)
        result = complete_shift(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1.replace(hour=15))

        assert result.shift.status == "completed"
        assert result.deduction.applied is True
        assert result.deduction.hours == pytest.approx(6.0)
        assert result.deduction.amount == pytest.approx(240.0)
        session.refresh(budget)
        assert budget.community_access_remaining == pytest.approx(1760.0)
        entry = session.scalars(select(TimesheetEntry)).one()
        assert entry.shift_id == shift.id
        assert entry.total_hours == pytest.approx(6.0)
        assert entry.gross_pay == pytest.approx(210.0)

    def test_completion_survives_budget_shortfall(self, session, roster):
        tenant, users, client = roster
        create_budget(session, tenant.id, client.id, {"community_access_total": 10})
        shift = self._shift(session, tenant, users["sam"], client)
        result = complete_shift(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1.replace(hour=17))
        assert result.shift.status == "completed"
        assert result.deduction.reason == "insufficient_funds"
        actions = [log.action for log in session.scalars(select(ActivityLog))]
        assert "budget_deduction_failed" in actions
        assert "complete_shift" in actions

    def test_other_worker_cannot_complete(self, session, roster):
        tenant, users, _ = roster
        shift = self._shift(session, tenant, users["sam"])
        with pytest.raises(PermissionError):
            complete_shift(session, tenant.id, shift.id, users["kim"])
        result = complete_shift(session, tenant.id, shift.id, users["priya"], now=MON_JAN_1.replace(hour=17))
        assert result.shift.status == "completed"

    def test_unassigned_shift_cannot_be_started_or_completed(self, session, roster):
        tenant, users, _ = roster
        shift = self._shift(session, tenant)
        with pytest.raises(ShiftStateError):
            start_shift(session, tenant.id, shift.id, users["priya"])
        with pytest.raises(ShiftStateError):
            complete_shift(session, tenant.id, shift.id, users["priya"])

    def test_clock_out_must_follow_clock_in(self, session, roster):
        tenant, users, _ = roster
        shift = self._shift(session, tenant, users["sam"])
        start_shift(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1)
        with pytest.raises(ShiftStateError):
            complete_shift(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1 - datetime.timedelta(minutes=5))
        assert shift.status == "in-progress"

    def test_request_claims_open_shift(self, session, roster):
        tenant, users, _ = roster
        shift = self._shift(session, tenant)
        claimed = request_shift(session, tenant.id, shift.id, users["kim"])
        assert claimed.status == "requested"
        assert claimed.user_id == users["kim"].id
        with pytest.raises(ShiftStateError):
            request_shift(session, tenant.id, shift.id, users["sam"])

    def test_update_assigns_and_unassigns(self, session, roster):
        tenant, users, _ = roster
        shift = self._shift(session, tenant)
        updated = update_shift(session, tenant.id, shift.id, {"user_id": users["sam"].id})
        assert updated.status == "assigned"
        updated = update_shift(session, tenant.id, shift.id, {"user_id": None})
        assert updated.status == "unassigned"
        with pytest.raises(ShiftStateError):
            update_shift(session, tenant.id, shift.id, {"status": "completed"})

    def test_allocation_tracks_assigned_hours(self, session, roster):
        tenant, users, _ = roster
        create_allocation(session, tenant.id, users["sam"].id, 38)
        shift = self._shift(session, tenant, users["sam"])
        assert active_allocation(session, tenant.id, users["sam"].id).hours_used == pytest.approx(8.0)
        cancel_shift(session, tenant.id, shift.id, reason="client unwell")
        allocation = active_allocation(session, tenant.id, users["sam"].id)
        assert allocation.hours_used == pytest.approx(0.0)
        assert allocation.remaining_hours == pytest.approx(38.0)
        with pytest.raises(ShiftStateError):
            cancel_shift(session, tenant.id, shift.id)

    def test_requested_shift_hours_survive_approval(self, session, roster):
        tenant, users, _ = roster
        kim = users["kim"]
        create_allocation(session, tenant.id, kim.id, 38)
        self._shift(session, tenant, kim)
        open_shift = create_shift(
            session,
            tenant.id,
            {"title": "Evening support", "start_time": MON_JAN_1 + datetime.timedelta(days=1)},
        )

        request_shift(session, tenant.id, open_shift.id, kim)
        assert active_allocation(session, tenant.id, kim.id).hours_used == pytest.approx(16.0)
        update_shift(session, tenant.id, open_shift.id, {"status": "assigned"}, users["priya"].id)
        allocation = active_allocation(session, tenant.id, kim.id)
        assert allocation.hours_used == pytest.approx(16.0)
        assert allocation.remaining_hours == pytest.approx(22.0)

    def test_declined_request_releases_hours(self, session, roster):
        tenant, users, _ = roster
        kim = users["kim"]
        create_allocation(session, tenant.id, kim.id, 38)
        self._shift(session, tenant, kim)
        open_shift = self._shift(session, tenant)
        request_shift(session, tenant.id, open_shift.id, kim)

        declined = update_shift(session, tenant.id, open_shift.id, {"user_id": None}, users["priya"].id)
        assert declined.status == "unassigned"
        assert active_allocation(session, tenant.id, kim.id).hours_used == pytest.approx(8.0)

    def test_retiming_moves_allocated_hours(self, session, roster):
        tenant, users, _ = roster
        create_allocation(session, tenant.id, users["sam"].id, 38)
        shift = self._shift(session, tenant, users["sam"])
        update_shift(session, tenant.id, shift.id, {"end_time": MON_JAN_1.replace(hour=13)})
        assert active_allocation(session, tenant.id, users["sam"].id).hours_used == pytest.approx(4.0)
        update_shift(session, tenant.id, shift.id, {"title": "Library visit"})
        assert active_allocation(session, tenant.id, users["sam"].id).hours_used == pytest.approx(4.0)


class TestWorkerCancellation:
    def _assigned(self, session, tenant, user, client=None):
        return create_shift(
            session,
            tenant.id,
            {
                "title": "Community outing",
                "start_time": MON_JAN_1,
                "end_time": MON_JAN_1.replace(hour=17),
                "user_id": user.id,
                "client_id": client.id if client else None,
            },
        )

    def test_ample_notice_releases_shift_immediately(self, session, roster):
        tenant, users, client = roster
        sam = users["sam"]
        create_allocation(session, tenant.id, sam.id, 38)
        shift = self._assigned(session, tenant, sam, client)

        outcome = request_cancellation(
            session, tenant.id, shift.id, sam, "Family event", now=MON_JAN_1 - datetime.timedelta(hours=48)
        )

        assert outcome["type"] == "immediate"
        assert outcome["request"] is None
        assert shift.status == "unassigned"
        assert shift.user_id is None
        assert active_allocation(session, tenant.id, sam.id).hours_used == pytest.approx(0.0)
        [record] = list_shift_cancellations(session, tenant.id)
        assert record.cancellation_type == "immediate"
        assert record.hours_notice == 48
        assert record.client_name == "Ruby Hendricks"
        assert record.approved_by is None

    def test_late_notice_waits_for_approval(self, session, roster):
        tenant, users, _ = roster
        sam, priya = users["sam"], users["priya"]
        create_allocation(session, tenant.id, sam.id, 38)
        shift = self._assigned(session, tenant, sam)
        late = MON_JAN_1 - datetime.timedelta(hours=5)

        outcome = request_cancellation(session, tenant.id, shift.id, sam, "Unwell", now=late)
        assert outcome["type"] == "requested"
        assert shift.status == "cancellation_requested"
        assert shift.user_id == sam.id
        assert outcome["request"].hours_notice == 5
        with pytest.raises(ConflictError):
            request_cancellation(session, tenant.id, shift.id, sam, now=late)
        with pytest.raises(ShiftStateError):
            start_shift(session, tenant.id, shift.id, sam, now=late)
        assert active_allocation(session, tenant.id, sam.id).hours_used == pytest.approx(8.0)

        reviewed = review_cancellation(session, tenant.id, outcome["request"].id, priya, True, "Covered by Kim")
        assert reviewed.status == "approved"
        assert reviewed.reviewed_by_name == "Priya"
        assert shift.status == "unassigned"
        assert shift.user_id is None
        assert active_allocation(session, tenant.id, sam.id).hours_used == pytest.approx(0.0)
        [record] = list_shift_cancellations(session, tenant.id)
        assert record.cancellation_type == "requested"
        assert record.approved_by == priya.id
        with pytest.raises(InvalidStateError):
            review_cancellation(session, tenant.id, reviewed.id, priya, False)
        actions = [log.action for log in session.scalars(select(ActivityLog))]
        assert {"request_cancellation", "approve_cancellation_request"} <= set(actions)

    def test_denied_request_keeps_worker_rostered(self, session, roster):
        tenant, users, _ = roster
        sam, priya = users["sam"], users["priya"]
        create_allocation(session, tenant.id, sam.id, 38)
        shift = self._assigned(session, tenant, sam)
        outcome = request_cancellation(session, tenant.id, shift.id, sam, now=MON_JAN_1 - datetime.timedelta(hours=2))

        denied = review_cancellation(session, tenant.id, outcome["request"].id, priya, False, "No cover available")
        assert denied.status == "denied"
        assert shift.status == "assigned"
        assert shift.user_id == sam.id
        assert active_allocation(session, tenant.id, sam.id).hours_used == pytest.approx(8.0)
        assert list_shift_cancellations(session, tenant.id) == []
        assert [item.id for item in list_cancellation_requests(session, tenant.id, status="denied")] == [denied.id]

    def test_only_rostered_worker_can_cancel_before_start(self, session, roster):
        tenant, users, _ = roster
        shift = self._assigned(session, tenant, users["sam"])
        with pytest.raises(PermissionError):
            request_cancellation(session, tenant.id, shift.id, users["kim"], now=MON_JAN_1 - datetime.timedelta(days=3))
        with pytest.raises(ShiftStateError):
            request_cancellation(session, tenant.id, shift.id, users["sam"], now=MON_JAN_1 + datetime.timedelta(hours=1))

    def test_pending_status_cannot_be_set_directly(self, session, roster):
        tenant, users, _ = roster
        shift = self._assigned(session, tenant, users["sam"])
        with pytest.raises(ShiftStateError):
            update_shift(session, tenant.id, shift.id, {"status": "cancellation_requested"})
