"""Passwords, login sessions and the per-request tenant/session guard."""

from __future__ import annotations

import base64
import binascii
import datetime
import hashlib
import logging
import secrets
from typing import Callable, Optional, Tuple

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from . import config
from .database import (
    ConflictError,
    SessionRecord,
    Tenant,
    User,
    ensure_aware,
    get_db,
    record_activity,
    utcnow,
)
from .roles import Permission, Role, has_permission, parse_role


PASSWORD_SCHEME = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 260_000
MIN_PASSWORD_LENGTH = 8

logger = logging.getLogger(__name__)


class AccountLockedError(Exception):
    """Raised when an account is locked and cannot authenticate."""

    def __init__(self, until: datetime.datetime) -> None:
        super().__init__("Account locked")
        self.until = until


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def secure_hash_password(password: str, *, enforce_length: bool = True, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt>$<hash>`` for storage in one column."""
    if enforce_length and len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    salt = secrets.token_bytes(16)
    derived = _derive(password, salt, iterations)
    return "$".join(
        (
            PASSWORD_SCHEME,
            str(iterations),
            base64.b64encode(salt).decode("ascii"),
            base64.b64encode(derived).decode("ascii"),
        )
    )


def _parse_encoded(encoded: str) -> Optional[Tuple[int, bytes, bytes]]:
    parts = (encoded or "").split("$")
    if len(parts) != 4 or parts[0] != PASSWORD_SCHEME:
        return None
    try:
        iterations = int(parts[1])
        salt = base64.b64decode(parts[2].encode("ascii"), validate=True)
        stored = base64.b64decode(parts[3].encode("ascii"), validate=True)
    except (binascii.Error, ValueError):
        return None
    if iterations <= 0:
        return None
    return iterations, salt, stored


def verify_secure_password(password: str, encoded: str) -> bool:
    parsed = _parse_encoded(encoded)
    if parsed is None:
        return False
    iterations, salt, stored = parsed
    return secrets.compare_digest(_derive(password, salt, iterations), stored)


def password_needs_rehash(encoded: str) -> bool:
    parsed = _parse_encoded(encoded)
    return parsed is None or parsed[0] < PBKDF2_ITERATIONS


# ---------------------------------------------------------------------------
# Accounts


def create_user(
    session,
    tenant_id: int,
    username: str,
    password: str,
    *,
    role: Role | str = Role.SUPPORT_WORKER,
    full_name: str = "",
    email: Optional[str] = None,
    hourly_rate: float = 0.0,
    employment_type: Optional[str] = None,
    actor_id: Optional[int] = None,
) -> User:
    username = (username or "").strip()
    if not username:
        raise ValueError("Username is required")
    resolved = role if isinstance(role, Role) else parse_role(role)
    if resolved is None:
        raise ValueError(f"Unknown role: {role}")
    if session.get(Tenant, tenant_id) is None:
        raise ValueError(f"Tenant {tenant_id} does not exist")
    exists = session.execute(
        select(User.id).where(User.tenant_id == tenant_id, User.username == username)
    ).scalar_one_or_none()
    if exists is not None:
        raise ConflictError(f"Username {username!r} is already taken")
    user = User(
        tenant_id=tenant_id,
        username=username,
        full_name=full_name or username,
        email=email,
        role=resolved.value,
        password_hash=secure_hash_password(password),
        hourly_rate=round(float(hourly_rate or 0.0), 2),
        employment_type=employment_type,
    )
    session.add(user)
    session.flush()
    record_activity(
        session, tenant_id, actor_id, "create_user", resource_type="user", resource_id=user.id, commit=False
    )
    session.commit()
    return user


def authenticate(session, username: str, password: str, tenant_id: Optional[int] = None) -> Optional[User]:
    """Return the user on a password match, None otherwise.

    Repeated failures lock the account for ``config.LOCKOUT_MINUTES``.
    """
    stmt = select(User).where(User.username == (username or "").strip())
    if tenant_id is not None:
        stmt = stmt.where(User.tenant_id == tenant_id)
    candidates = list(session.scalars(stmt))
    if len(candidates) != 1:
        return None
    user = candidates[0]
    if not user.is_active:
        return None

    now = utcnow()
    locked_until = ensure_aware(user.locked_until) if user.locked_until else None
    if locked_until and locked_until > now:
        raise AccountLockedError(locked_until)
    if locked_until and locked_until <= now:
        user.locked_until = None
        user.failed_attempts = 0

    if not verify_secure_password(password or "", user.password_hash):
        user.failed_attempts += 1
        locked_time: Optional[datetime.datetime] = None
        if user.failed_attempts >= config.MAX_LOGIN_ATTEMPTS:
            locked_time = now + datetime.timedelta(minutes=config.LOCKOUT_MINUTES)
            user.locked_until = locked_time
        session.commit()
        logger.warning("login failed", extra={"username": user.username, "tenant_id": user.tenant_id})
        if locked_time:
            raise AccountLockedError(locked_time)
        return None

    user.failed_attempts = 0
    user.locked_until = None
    if password_needs_rehash(user.password_hash):
        user.password_hash = secure_hash_password(password, enforce_length=False)
    session.commit()
    return user


def change_password(session, user: User, current_password: str, new_password: str) -> None:
    if not verify_secure_password(current_password, user.password_hash):
        raise PermissionError("Current password is incorrect.")
    user.password_hash = secure_hash_password(new_password)
    user.failed_attempts = 0
    user.locked_until = None
    record_activity(
        session, user.tenant_id, user.id, "password_change", resource_type="user", resource_id=user.id, commit=False
    )
    session.commit()


# ---------------------------------------------------------------------------
# Sessions


def create_session(session, user: User) -> SessionRecord:
    record = SessionRecord(
        session_id=secrets.token_urlsafe(32),
        user_id=user.id,
        tenant_id=user.tenant_id,
        expires_at=utcnow() + datetime.timedelta(seconds=config.SESSION_MAX_AGE_SECONDS),
    )
    session.add(record)
    record_activity(
        session, user.tenant_id, user.id, "login", resource_type="user", resource_id=user.id, commit=False
    )
    session.commit()
    return record


def destroy_session(session, session_id: Optional[str]) -> None:
    if not session_id:
        return
    session.execute(delete(SessionRecord).where(SessionRecord.session_id == session_id))
    session.commit()


def resolve_session_user(session, session_id: Optional[str]) -> Optional[User]:
    """Re-validate a session against the current user table.

    The session only stays valid while its user exists, is active and still
    belongs to the tenant the session was opened under. Anything else
    destroys the session.
    """
    if not session_id:
        return None
    record = session.get(SessionRecord, session_id)
    if record is None:
        return None
    now = utcnow()
    if ensure_aware(record.expires_at) <= now:
        destroy_session(session, session_id)
        return None
    user = session.execute(
        select(User).where(User.id == record.user_id, User.tenant_id == record.tenant_id)
    ).scalar_one_or_none()
    if user is None or not user.is_active:
        logger.info(
            "session invalidated",
            extra={"user_id": record.user_id, "tenant_id": record.tenant_id},
        )
        destroy_session(session, session_id)
        return None
    record.expires_at = now + datetime.timedelta(seconds=config.SESSION_MAX_AGE_SECONDS)
    session.commit()
    return user


def purge_expired_sessions(session) -> int:
    outcome = session.execute(delete(SessionRecord).where(SessionRecord.expires_at <= utcnow()))
    session.commit()
    return outcome.rowcount or 0


# ---------------------------------------------------------------------------
# FastAPI dependencies


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    user = resolve_session_user(db, session_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    request.state.user_id = user.id
    request.state.tenant_id = user.tenant_id
    return user


def require_permission(permission: Permission) -> Callable[..., User]:
    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_permission(current_user.role, permission):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    dependency.__name__ = f"require_{permission.value}"
    return dependency
