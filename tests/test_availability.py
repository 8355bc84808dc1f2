from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from careroster import availability, config  # noqa: E402
from careroster.database import Base, InvalidStateError, Shift, Tenant, User, list_activity  # noqa: E402

UTC = datetime.timezone.utc


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
def staff(session):
    tenant = Tenant(name="Harbour Care")
    session.add(tenant)
    session.commit()
    worker = User(tenant_id=tenant.id, username="sam", role="SupportWorker", password_hash="x")
    leader = User(tenant_id=tenant.id, username="lee", role="TeamLeader", password_hash="x")
    session.add_all([worker, leader])
    session.commit()
    return tenant, worker, leader


def test_normalise_orders_days_and_types():
    cleaned = availability.normalise_availability({"Friday": ["PM", "AM"], "monday": ["Sleepover"], "sunday": []})
    assert cleaned == {"monday": ["Sleepover"], "friday": ["AM", "PM"]}
    with pytest.raises(ValueError):
        availability.normalise_availability({"funday": ["AM"]})
    with pytest.raises(ValueError):
        availability.normalise_availability({"monday": ["Lunch"]})


def test_new_submission_supersedes_the_last(session, staff):
    tenant, worker, _ = staff
    first = availability.submit_availability(session, tenant.id, worker, {"availability": {"monday": ["AM"]}})
    second = availability.submit_availability(
        session, tenant.id, worker, {"availability": {"tuesday": ["PM"]}, "pattern_name": "Evenings"}
    )
    assert first.is_active is False
    assert second.status == "pending"
    assert availability.current_availability(session, tenant.id, worker.id).id == second.id
    assert [item.id for item in availability.list_availability(session, tenant.id)] == [second.id]
    assert {item.id for item in availability.list_availability(session, tenant.id, include_archived=True)} == {
        first.id,
        second.id,
    }


def test_manager_approves_with_override(session, staff):
    tenant, worker, leader = staff
    record = availability.submit_availability(session, tenant.id, worker, {"availability": {"monday": ["AM"]}})
    approved = availability.review_availability(
        session, tenant.id, record.id, leader, True, availability={"monday": ["AM", "PM"]}
    )
    assert approved.status == "approved"
    assert approved.override_by_manager is True
    assert approved.reviewed_by == leader.id
    assert availability.approved_availability(session, tenant.id, [worker.id]) == {
        worker.id: {"monday": ["AM", "PM"]}
    }
    actions = [log.action for log in list_activity(session, tenant.id)]
    assert {"create_availability", "approve_availability"} <= set(actions)


def test_archived_submission_cannot_be_reviewed(session, staff):
    tenant, worker, leader = staff
    record = availability.submit_availability(session, tenant.id, worker, {"availability": {"monday": ["AM"]}})
    availability.archive_availability(session, tenant.id, record.id, leader.id)
    assert availability.current_availability(session, tenant.id, worker.id) is None
    with pytest.raises(InvalidStateError):
        availability.review_availability(session, tenant.id, record.id, leader, True)


def test_is_available_uses_local_day_and_band(session, staff):
    tenant, worker, _ = staff
    monday_morning = datetime.datetime(2024, 1, 1, 9, tzinfo=UTC)
    shift = Shift(
        tenant_id=tenant.id,
        title="Outing",
        start_time=monday_morning,
        end_time=monday_morning + datetime.timedelta(hours=4),
        user_id=worker.id,
    )
    assert availability.is_available({"monday": ["AM"]}, shift) is True
    assert availability.is_available({"monday": ["PM"], "tuesday": ["AM"]}, shift) is False
