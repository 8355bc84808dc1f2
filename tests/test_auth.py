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
from careroster.auth import (  # noqa: E402
    PBKDF2_ITERATIONS,
    AccountLockedError,
    authenticate,
    change_password,
    create_session,
    create_user,
    password_needs_rehash,
    purge_expired_sessions,
    resolve_session_user,
    secure_hash_password,
    verify_secure_password,
)
from careroster.database import Base, ConflictError, SessionRecord, Tenant  # noqa: E402

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
def tenants(session):
    first = Tenant(name="Harbour Care")
    second = Tenant(name="Ridge Support")
    session.add_all([first, second])
    session.commit()
    return first, second


def test_password_hash_encodes_scheme_and_iterations():
    encoded = secure_hash_password("correct horse")
    scheme, iterations, _, _ = encoded.split("$")
    assert scheme == "pbkdf2_sha256"
    assert int(iterations) == PBKDF2_ITERATIONS
    assert verify_secure_password("correct horse", encoded)
    assert not verify_secure_password("wrong horse", encoded)
    assert not verify_secure_password("correct horse", "md5$1$abc$def")
    assert not verify_secure_password("correct horse", "pbkdf2_sha256$x$not-base64!$abc")
    assert secure_hash_password("correct horse") != encoded


def test_login_upgrades_weaker_hashes(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    user.password_hash = secure_hash_password("password123", iterations=1_000)
    session.commit()
    assert password_needs_rehash(user.password_hash)

    assert authenticate(session, "sam", "password123").id == user.id
    assert not password_needs_rehash(user.password_hash)
    assert verify_secure_password("password123", user.password_hash)


def test_short_password_rejected():
    with pytest.raises(ValueError):
        secure_hash_password("short")


def test_create_user_rejects_duplicates_and_unknown_roles(session, tenants):
    first, second = tenants
    create_user(session, first.id, "sam", "password123")
    with pytest.raises(ConflictError):
        create_user(session, first.id, "sam", "password123")
    with pytest.raises(ValueError):
        create_user(session, first.id, "kim", "password123", role="Janitor")
    # Usernames are unique per tenant only.
    assert create_user(session, second.id, "sam", "password123").tenant_id == second.id


def test_authenticate_and_lockout(session, tenants, monkeypatch):
    first, _ = tenants
    monkeypatch.setattr(config, "MAX_LOGIN_ATTEMPTS", 3)
    user = create_user(session, first.id, "sam", "password123")

    assert authenticate(session, "sam", "password123").id == user.id
    assert authenticate(session, "sam", "nope") is None
    assert authenticate(session, "sam", "nope") is None
    with pytest.raises(AccountLockedError):
        authenticate(session, "sam", "nope")
    # Even the right password is refused while locked.
    with pytest.raises(AccountLockedError):
        authenticate(session, "sam", "password123")

    user.locked_until = datetime.datetime.now(UTC) - datetime.timedelta(minutes=1)
    session.commit()
    assert authenticate(session, "sam", "password123").id == user.id
    assert user.failed_attempts == 0


def test_ambiguous_username_needs_tenant(session, tenants):
    first, second = tenants
    create_user(session, first.id, "sam", "password123")
    other = create_user(session, second.id, "sam", "password456")
    assert authenticate(session, "sam", "password456") is None
    assert authenticate(session, "sam", "password456", tenant_id=second.id).id == other.id


def test_inactive_user_cannot_log_in(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    user.is_active = False
    session.commit()
    assert authenticate(session, "sam", "password123") is None


def test_session_resolves_and_extends(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    record = create_session(session, user)
    previous_expiry = record.expires_at
    assert resolve_session_user(session, record.session_id).id == user.id
    assert record.expires_at >= previous_expiry
    assert resolve_session_user(session, None) is None
    assert resolve_session_user(session, "unknown") is None


def test_session_dies_when_user_deleted(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    record = create_session(session, user)
    session.delete(user)
    session.commit()
    assert resolve_session_user(session, record.session_id) is None
    assert session.get(SessionRecord, record.session_id) is None


def test_session_dies_when_user_moves_tenant(session, tenants):
    first, second = tenants
    user = create_user(session, first.id, "sam", "password123")
    record = create_session(session, user)
    user.tenant_id = second.id
    session.commit()
    assert resolve_session_user(session, record.session_id) is None


def test_expired_sessions_are_rejected_and_purged(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    stale = create_session(session, user)
    fresh = create_session(session, user)
    stale.expires_at = datetime.datetime.now(UTC) - datetime.timedelta(seconds=1)
    session.commit()
    assert resolve_session_user(session, stale.session_id) is None
    stale_again = create_session(session, user)
    stale_again.expires_at = datetime.datetime.now(UTC) - datetime.timedelta(seconds=1)
    session.commit()
    assert purge_expired_sessions(session) == 1
    assert [row.session_id for row in session.scalars(select(SessionRecord))] == [fresh.session_id]


def test_change_password_requires_current(session, tenants):
    first, _ = tenants
    user = create_user(session, first.id, "sam", "password123")
    with pytest.raises(PermissionError):
        change_password(session, user, "wrong", "newpassword1")
    change_password(session, user, "password123", "newpassword1")
    assert authenticate(session, "sam", "newpassword1").id == user.id
