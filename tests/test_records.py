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

from careroster import records  # noqa: E402
from careroster.database import (  # noqa: E402
    Base,
    ConflictError,
    InvalidStateError,
    MedicationPlan,
    RecordNotFound,
    Shift,
    Tenant,
    User,
    list_activity,
)

UTC = datetime.timezone.utc


@pytest.fixture()
def session():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with Session() as db_session:
        yield db_session


@pytest.fixture()
def setup(session):
    home = Tenant(name="Harbour Care")
    other = Tenant(name="Ridge Support")
    session.add_all([home, other])
    session.commit()
    worker = User(tenant_id=home.id, username="sam", role="SupportWorker", password_hash="x")
    session.add(worker)
    session.commit()
    client = records.create_client(
        session, home.id, {"first_name": "Ruby", "last_name": "Hendricks", "ndis_number": "430000001"}, worker.id
    )
    return home, other, worker, client


class TestClients:
    def test_create_assigns_code_and_full_name(self, session, setup):
        _, _, _, client = setup
        assert client.client_code.startswith("CL-")
        assert client.full_name == "Ruby Hendricks"
        assert records.client_to_dict(client)["ndisNumber"] == "430000001"

    def test_requires_names(self, session, setup):
        home, _, worker, _ = setup
        with pytest.raises(ValueError):
            records.create_client(session, home.id, {"first_name": "Ruby", "last_name": " "}, worker.id)

    def test_duplicate_code_conflicts_within_tenant(self, session, setup):
        home, other, worker, _ = setup
        records.create_client(session, home.id, {"client_code": "DUP-1", "first_name": "Ava", "last_name": "Nguyen"})
        with pytest.raises(ConflictError):
            records.create_client(
                session, home.id, {"client_code": "DUP-1", "first_name": "Ben", "last_name": "Cole"}, worker.id
            )
        # The session stays usable and the same code is free in another tenant.
        again = records.create_client(
            session, other.id, {"client_code": "DUP-1", "first_name": "Ben", "last_name": "Cole"}
        )
        assert again.client_code == "DUP-1"
        assert [c.full_name for c in records.list_clients(session, home.id, search="DUP-1")] == ["Ava Nguyen"]

    def test_search_and_archive(self, session, setup):
        home, _, worker, client = setup
        records.create_client(session, home.id, {"first_name": "Marcus", "last_name": "Lee"}, worker.id)
        assert [c.id for c in records.list_clients(session, home.id, search="hend")] == [client.id]
        assert [c.id for c in records.list_clients(session, home.id, search="4300")] == [client.id]
        records.archive_client(session, home.id, client.id, worker.id)
        assert client.id not in [c.id for c in records.list_clients(session, home.id)]
        assert client.id in [c.id for c in records.list_clients(session, home.id, include_inactive=True)]

    def test_update_refreshes_full_name(self, session, setup):
        home, _, worker, client = setup
        updated = records.update_client(session, home.id, client.id, {"last_name": "Stone"}, worker.id)
        assert updated.full_name == "Ruby Stone"

    def test_other_tenant_cannot_see_client(self, session, setup):
        _, other, worker, client = setup
        with pytest.raises(RecordNotFound):
            records.update_client(session, other.id, client.id, {"last_name": "Stone"}, worker.id)
        assert records.list_clients(session, other.id) == []


class TestIncidents:
    def _payload(self, client, **overrides):
        payload = {
            "client_id": client.id,
            "location": "Day program",
            "types": ["Behaviour"],
            "intensity_rating": 6,
            "description": "Client became distressed during transport.",
            "is_ndis_reportable": True,
        }
        payload.update(overrides)
        return payload

    def test_create_and_close(self, session, setup):
        home, _, worker, client = setup
        incident = records.create_incident(session, home.id, self._payload(client), worker.id)
        assert incident.incident_code.startswith("IR-")
        assert incident.status == "Open"

        closed = records.close_incident(
            session, home.id, incident.id, {"findings": "Route changed", "controls_reviewed": True}, worker.id
        )
        assert closed.status == "Closed"
        assert records.incident_to_dict(closed)["closure"]["findings"] == "Route changed"
        with pytest.raises(InvalidStateError):
            records.close_incident(session, home.id, incident.id, {"findings": "again"}, worker.id)
        with pytest.raises(InvalidStateError):
            records.update_incident(session, home.id, incident.id, {"location": "Home"}, worker.id)

    def test_intensity_must_be_in_range(self, session, setup):
        home, _, worker, client = setup
        with pytest.raises(ValueError):
            records.create_incident(session, home.id, self._payload(client, intensity_rating=11), worker.id)

    def test_delete_closed_incident(self, session, setup):
        home, _, worker, client = setup
        incident = records.create_incident(session, home.id, self._payload(client), worker.id)
        records.close_incident(session, home.id, incident.id, {"findings": "Resolved"}, worker.id)
        records.delete_incident(session, home.id, incident.id, worker.id)
        assert records.list_incidents(session, home.id) == []


class TestMedication:
    def _plan(self, session, home, client, worker):
        return records.create_medication_plan(
            session,
            home.id,
            client.id,
            {"medication_name": "Sertraline", "dosage": "50mg", "frequency": "Daily", "route": "Oral"},
            worker.id,
        )

    def test_record_against_plan(self, session, setup):
        home, _, worker, client = setup
        plan = self._plan(session, home, client, worker)
        record = records.record_medication(
            session, home.id, client.id, {"medication_plan_id": plan.id, "result": "Administered"}, worker.id
        )
        assert record.medication_name == "Sertraline"
        assert record.route == "Oral"
        assert [r.id for r in records.list_medication_records(session, home.id, client.id)] == [record.id]

    def test_refusal_needs_reason(self, session, setup):
        home, _, worker, client = setup
        plan = self._plan(session, home, client, worker)
        with pytest.raises(ValueError):
            records.record_medication(
                session, home.id, client.id, {"medication_plan_id": plan.id, "result": "Refused"}, worker.id
            )
        record = records.record_medication(
            session,
            home.id,
            client.id,
            {"medication_plan_id": plan.id, "result": "Refused", "refusal_reason": "Nauseous"},
            worker.id,
        )
        assert record.refusal_reason == "Nauseous"

    def test_inactive_plan_rejected(self, session, setup):
        home, _, worker, client = setup
        plan = self._plan(session, home, client, worker)
        plan.status = "discontinued"
        session.commit()
        with pytest.raises(InvalidStateError):
            records.record_medication(session, home.id, client.id, {"medication_plan_id": plan.id}, worker.id)

    def test_plan_dates_must_be_ordered(self, session, setup):
        home, _, worker, client = setup
        with pytest.raises(ValueError):
            records.create_medication_plan(
                session,
                home.id,
                client.id,
                {
                    "medication_name": "Sertraline",
                    "dosage": "50mg",
                    "frequency": "Daily",
                    "route": "Oral",
                    "start_date": datetime.date(2024, 2, 1),
                    "end_date": datetime.date(2024, 1, 1),
                },
                worker.id,
            )
        assert session.query(MedicationPlan).count() == 0


class TestCaseNotes:
    def test_crud(self, session, setup):
        home, _, worker, client = setup
        note = records.create_case_note(
            session, home.id, {"client_id": client.id, "title": "Outing", "content": "Went to the library."}, worker.id
        )
        assert note.priority == "normal"
        updated = records.update_case_note(session, home.id, note.id, {"priority": "high"}, worker.id)
        assert updated.priority == "high"
        with pytest.raises(ValueError):
            records.update_case_note(session, home.id, note.id, {"priority": "urgent"}, worker.id)
        records.delete_case_note(session, home.id, note.id, worker.id)
        assert records.list_case_notes(session, home.id, client_id=client.id) == []
        actions = [log.action for log in list_activity(session, home.id)]
        assert {"create_case_note", "update_case_note", "delete_case_note"} <= set(actions)


@pytest.fixture()
def coordinator(session, setup):
    home = setup[0]
    user = User(tenant_id=home.id, username="priya", role="Coordinator", password_hash="x")
    session.add(user)
    session.commit()
    return user


def _roster_worker(session, tenant, worker, client):
    start = datetime.datetime(2024, 1, 1, 9, tzinfo=UTC)
    session.add(
        Shift(
            tenant_id=tenant.id,
            title="Home visit",
            start_time=start,
            end_time=start + datetime.timedelta(hours=4),
            user_id=worker.id,
            client_id=client.id,
        )
    )
    session.commit()


class TestCarePlans:
    def test_crud_keeps_sections_and_logs(self, session, setup, coordinator):
        home, _, _, client = setup
        plan = records.create_care_plan(
            session,
            home.id,
            {"client_id": client.id, "plan_title": "2024 plan", "about_me": {"likes": "Gardening"}},
            coordinator.id,
        )
        assert plan.status == "draft"
        updated = records.update_care_plan(
            session, home.id, plan.id, {"status": "active", "goals": {"shortTerm": "Catch the bus"}}, coordinator.id
        )
        data = records.care_plan_to_dict(updated)
        assert data["status"] == "active"
        assert data["aboutMe"] == {"likes": "Gardening"}
        assert data["goals"] == {"shortTerm": "Catch the bus"}
        assert data["mealtime"] == {}

        records.delete_care_plan(session, home.id, plan.id, coordinator.id)
        assert records.list_care_plans(session, home.id) == []
        actions = [log.action for log in list_activity(session, home.id)]
        assert {"create_care_plan", "update_care_plan", "delete_care_plan"} <= set(actions)

    def test_status_and_title_validated(self, session, setup, coordinator):
        home, _, _, client = setup
        with pytest.raises(ValueError):
            records.create_care_plan(session, home.id, {"client_id": client.id, "plan_title": " "}, coordinator.id)
        with pytest.raises(ValueError):
            records.create_care_plan(
                session, home.id, {"client_id": client.id, "plan_title": "Plan", "status": "archived"}, coordinator.id
            )

    def test_worker_sees_only_rostered_clients(self, session, setup, coordinator):
        home, _, worker, client = setup
        other_client = records.create_client(session, home.id, {"first_name": "Marcus", "last_name": "Lee"})
        mine = records.create_care_plan(session, home.id, {"client_id": client.id, "plan_title": "Ruby"})
        theirs = records.create_care_plan(session, home.id, {"client_id": other_client.id, "plan_title": "Marcus"})

        assert records.list_care_plans(session, home.id, user=worker) == []
        _roster_worker(session, home, worker, client)
        assert [plan.id for plan in records.list_care_plans(session, home.id, user=worker)] == [mine.id]
        with pytest.raises(PermissionError):
            records.get_care_plan(session, home.id, theirs.id, worker)
        assert {plan.id for plan in records.list_care_plans(session, home.id, user=coordinator)} == {mine.id, theirs.id}

    def test_other_tenant_cannot_read_plan(self, session, setup):
        home, other, _, client = setup
        plan = records.create_care_plan(session, home.id, {"client_id": client.id, "plan_title": "Ruby"})
        with pytest.raises(RecordNotFound):
            records.get_care_plan(session, other.id, plan.id)


class TestObservations:
    def test_rostered_worker_records_rated_observation(self, session, setup):
        home, _, worker, client = setup
        _roster_worker(session, home, worker, client)
        observation = records.create_observation(
            session,
            home.id,
            {
                "client_id": client.id,
                "observation_type": "behaviour",
                "subtype": "Verbal escalation",
                "antecedents": "Loud room",
                "antecedents_rating": 4,
            },
            worker,
        )
        data = records.observation_to_dict(observation)
        assert data["antecedentsRating"] == 4
        assert data["settingsRating"] is None
        assert [item.id for item in records.list_observations(session, home.id, client_id=client.id)] == [
            observation.id
        ]

    def test_rules_for_type_rating_and_roster(self, session, setup):
        home, _, worker, client = setup
        with pytest.raises(PermissionError):
            records.create_observation(session, home.id, {"client_id": client.id, "observation_type": "adl"}, worker)
        _roster_worker(session, home, worker, client)
        with pytest.raises(ValueError):
            records.create_observation(session, home.id, {"client_id": client.id, "observation_type": "sleep"}, worker)
        with pytest.raises(ValueError):
            records.create_observation(
                session, home.id, {"client_id": client.id, "observation_type": "adl", "time_rating": 6}, worker
            )

    def test_only_author_or_manager_deletes(self, session, setup, coordinator):
        home, _, worker, client = setup
        _roster_worker(session, home, worker, client)
        other = User(tenant_id=home.id, username="kim", role="SupportWorker", password_hash="x")
        session.add(other)
        session.commit()
        observation = records.create_observation(
            session, home.id, {"client_id": client.id, "observation_type": "adl", "notes": "Showered"}, worker
        )
        with pytest.raises(PermissionError):
            records.delete_observation(session, home.id, observation.id, other)
        records.delete_observation(session, home.id, observation.id, coordinator)
        assert records.list_observations(session, home.id) == []
