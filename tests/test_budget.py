from __future__ import annotations

import datetime
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from careroster import config  # noqa: E402
from careroster.budget import (  # noqa: E402
    classify_shift_type,
    create_budget,
    deduct_for_shift,
    list_transactions,
    update_budget,
)
from careroster.database import (  # noqa: E402
    ActivityLog,
    Base,
    Client,
    ConflictError,
    Tenant,
)
from careroster.pricing import seed_tenant_pricing, upsert_pricing  # noqa: E402
from careroster.shifts import create_shift  # noqa: E402

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
def tenant_client(session):
    tenant = Tenant(name="Harbour Care")
    session.add(tenant)
    session.commit()
    client = Client(
        tenant_id=tenant.id,
        client_code="CL-001",
        first_name="Ruby",
        last_name="Hendricks",
        full_name="Ruby Hendricks",
    )
    session.add(client)
    session.commit()
    seed_tenant_pricing(session, tenant.id)
    return tenant, client


def _shift(session, tenant, client, *, start_hour=9, hours=8, ratio="1:1", category=None, client_id=...):
    start = datetime.datetime(2024, 1, 1, start_hour, 0, tzinfo=UTC)
    return create_shift(
        session,
        tenant.id,
        {
            "title": "Community outing",
            "start_time": start,
            "end_time": start + datetime.timedelta(hours=hours),
            "client_id": client.id if client_id is ... else client_id,
            "staff_ratio": ratio,
            "funding_category": category,
        },
    )


def _actions(session, tenant_id):
    return [log.action for log in session.scalars(select(ActivityLog).where(ActivityLog.tenant_id == tenant_id))]


def test_classify_shift_type_by_local_start_hour(monkeypatch):
    monkeypatch.setattr(config, "LOCAL_TIMEZONE", UTC)
    day = datetime.datetime(2024, 1, 1, tzinfo=UTC)
    assert classify_shift_type(day.replace(hour=6)) == "AM"
    assert classify_shift_type(day.replace(hour=19, minute=59)) == "AM"
    assert classify_shift_type(day.replace(hour=20), day.replace(hour=23)) == "PM"
    assert classify_shift_type(day.replace(hour=2), day.replace(hour=6)) == "ActiveNight"
    assert classify_shift_type(day.replace(hour=5, minute=59)) == "ActiveNight"


def test_long_evening_shift_is_sleepover(monkeypatch):
    monkeypatch.setattr(config, "LOCAL_TIMEZONE", UTC)
    start = datetime.datetime(2024, 1, 1, 22, 0, tzinfo=UTC)
    assert classify_shift_type(start, start + datetime.timedelta(hours=9)) == "Sleepover"
    day_start = datetime.datetime(2024, 1, 1, 9, 0, tzinfo=UTC)
    assert classify_shift_type(day_start, day_start + datetime.timedelta(hours=10)) == "AM"


def test_bands_follow_roster_timezone(monkeypatch):
    monkeypatch.setattr(config, "LOCAL_TIMEZONE", ZoneInfo("Australia/Sydney"))
    # 21:00 in Sydney, during daylight saving (UTC+11) and outside it (UTC+10).
    summer = datetime.datetime(2024, 1, 15, 10, 0, tzinfo=UTC)
    winter = datetime.datetime(2024, 6, 17, 11, 0, tzinfo=UTC)
    for start in (summer, winter):
        assert classify_shift_type(start, start + datetime.timedelta(hours=3)) == "PM"
    # 07:00 local the next morning is still the AM band.
    assert classify_shift_type(datetime.datetime(2024, 6, 17, 21, 0, tzinfo=UTC)) == "AM"


def test_deduction_charges_category_and_records_transaction(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"community_access_total": 1000})
    shift = _shift(session, tenant, client)

    result = deduct_for_shift(session, shift)

    assert result.applied is True
    assert result.reason == "deducted"
    assert result.shift_type == "AM"
    assert result.category == "CommunityAccess"
    assert result.amount == pytest.approx(320.0)
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(680.0)
    assert budget.community_access_total == pytest.approx(1000.0)
    transactions = list_transactions(session, tenant.id, budget_id=budget.id)
    assert [t.amount for t in transactions] == [pytest.approx(320.0)]
    assert "budget_deduction" in _actions(session, tenant.id)


def test_budget_override_wins_over_pricing_table(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(
        session, tenant.id, client.id, {"community_access_total": 1000, "price_overrides": {"AM": 50}}
    )
    result = deduct_for_shift(session, _shift(session, tenant, client))
    assert result.rate == pytest.approx(50.0)
    assert result.amount == pytest.approx(400.0)
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(600.0)


def test_pricing_table_rate_follows_ratio(session, tenant_client):
    tenant, client = tenant_client
    upsert_pricing(session, tenant.id, "AM", "1:2", 40)
    create_budget(session, tenant.id, client.id, {"community_access_total": 1000})
    result = deduct_for_shift(session, _shift(session, tenant, client, ratio="1:2"))
    assert result.rate == pytest.approx(40.0)
    assert result.amount == pytest.approx(320.0)


def test_insufficient_funds_leaves_balance_untouched(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"community_access_total": 100})

    result = deduct_for_shift(session, _shift(session, tenant, client))

    assert result.applied is False
    assert result.reason == "insufficient_funds"
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(100.0)
    assert list_transactions(session, tenant.id) == []
    assert "budget_deduction_failed" in _actions(session, tenant.id)


def test_second_deduction_cannot_overdraw(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"community_access_total": 500})
    first = deduct_for_shift(session, _shift(session, tenant, client))
    second = deduct_for_shift(session, _shift(session, tenant, client))
    assert first.applied is True
    assert second.applied is False
    assert second.reason == "insufficient_funds"
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(180.0)


def test_disallowed_ratio_is_rejected(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(
        session,
        tenant.id,
        client.id,
        {"community_access_total": 1000, "community_access_allowed_ratios": ["1:1"]},
    )
    result = deduct_for_shift(session, _shift(session, tenant, client, ratio="1:2"))
    assert result.reason == "ratio_not_allowed"
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(1000.0)


def test_overnight_shift_defaults_to_sil(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"sil_total": 5000})
    result = deduct_for_shift(session, _shift(session, tenant, client, start_hour=22, hours=9))
    assert result.shift_type == "Sleepover"
    assert result.category == "SIL"
    assert result.rate == pytest.approx(100.0)
    assert result.amount == pytest.approx(900.0)
    session.refresh(budget)
    assert budget.sil_remaining == pytest.approx(4100.0)


def test_no_budget_or_client_is_not_applicable(session, tenant_client):
    tenant, client = tenant_client
    assert deduct_for_shift(session, _shift(session, tenant, client)).reason == "no_budget"
    assert deduct_for_shift(session, _shift(session, tenant, client, client_id=None)).reason == "no_client"


def test_second_active_budget_conflicts(session, tenant_client):
    tenant, client = tenant_client
    create_budget(session, tenant.id, client.id, {"sil_total": 100})
    with pytest.raises(ConflictError):
        create_budget(session, tenant.id, client.id, {"sil_total": 200})


def test_changing_total_moves_remaining_by_delta(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"community_access_total": 1000})
    deduct_for_shift(session, _shift(session, tenant, client))
    updated = update_budget(session, tenant.id, budget.id, {"community_access_total": 1500})
    assert updated.community_access_total == pytest.approx(1500.0)
    assert updated.community_access_remaining == pytest.approx(1180.0)


def test_standard_rates_cover_one_and_two_to_one(session, tenant_client):
    tenant, client = tenant_client
    budget = create_budget(session, tenant.id, client.id, {"community_access_total": 1000})

    shared = deduct_for_shift(session, _shift(session, tenant, client, ratio="1:2"))
    assert shared.rate == pytest.approx(25.0)
    assert shared.amount == pytest.approx(200.0)

    unpriced = deduct_for_shift(session, _shift(session, tenant, client, ratio="1:3"))
    assert unpriced.applied is False
    assert unpriced.reason == "no_rate"
    session.refresh(budget)
    assert budget.community_access_remaining == pytest.approx(800.0)
