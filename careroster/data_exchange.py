from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import config
from .database import Client, ConflictError, record_activity, utcnow
from .records import client_to_dict


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def clients_payload(session, tenant_id: int) -> Dict[str, Any]:
    clients = session.scalars(
        select(Client).where(Client.tenant_id == tenant_id).order_by(Client.client_code.asc())
    ).all()
    return {
        "generated_at": utcnow().isoformat(),
        "tenant_id": tenant_id,
        "clients": [client_to_dict(client) for client in clients],
    }


def export_clients(session, tenant_id: int, export_dir: Optional[Path] = None) -> Path:
    target_dir = export_dir or config.EXPORT_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = target_dir / f"clients_{tenant_id}_{_timestamp()}.json"
    filename.write_text(json.dumps(clients_payload(session, tenant_id), indent=2), encoding="utf-8")
    return filename


_CAMEL_TO_FIELD = {
    "firstName": "first_name",
    "lastName": "last_name",
    "ndisNumber": "ndis_number",
    "dateOfBirth": "date_of_birth",
    "address": "address",
    "emergencyContactName": "emergency_contact_name",
    "emergencyContactPhone": "emergency_contact_phone",
    "ndisGoals": "ndis_goals",
    "allergies": "allergies",
    "primaryDiagnosis": "primary_diagnosis",
}


def import_clients_payload(
    session, tenant_id: int, data: Dict[str, Any], actor_id: Optional[int] = None, *, source: str = "upload"
) -> Tuple[int, int]:
    """Create or update clients by client code. Returns (created, updated)."""
    entries: List[Dict[str, Any]] = data.get("clients", [])
    created = 0
    updated = 0
    seen = set()
    for payload in entries:
        code = (payload.get("clientCode") or "").strip()
        first_name = (payload.get("firstName") or "").strip()
        last_name = (payload.get("lastName") or "").strip()
        if not code or not first_name or not last_name:
            continue
        if code in seen:
            session.rollback()
            raise ConflictError(f"Client code {code!r} appears more than once in the import")
        seen.add(code)
        client = session.execute(
            select(Client).where(Client.tenant_id == tenant_id, Client.client_code == code)
        ).scalar_one_or_none()
        if client is None:
            client = Client(tenant_id=tenant_id, client_code=code, created_by=actor_id)
            session.add(client)
            created += 1
        else:
            updated += 1
        for source_key, field in _CAMEL_TO_FIELD.items():
            value = payload.get(source_key)
            if field == "date_of_birth" and value:
                try:
                    value = datetime.date.fromisoformat(value)
                except ValueError:
                    value = None
            setattr(client, field, value)
        client.full_name = f"{client.first_name} {client.last_name}"
        client.is_active = bool(payload.get("isActive", True))
    record_activity(
        session,
        tenant_id,
        actor_id,
        "import_clients",
        resource_type="client",
        details={"created": created, "updated": updated, "source": source},
        commit=False,
    )
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Import clashes with an existing client code") from exc
    return created, updated


def import_clients(session, tenant_id: int, file_path: Path, actor_id: Optional[int] = None) -> Tuple[int, int]:
    data = json.loads(file_path.read_text(encoding="utf-8"))
    return import_clients_payload(session, tenant_id, data, actor_id, source=file_path.name)
