"""Seed a demo tenant with staff, clients, baseline pricing and one budget.

Run with ``python -m careroster.scripts.seed_demo``. Re-running refreshes
the same records instead of duplicating them.
"""

from __future__ import annotations

import argparse
from typing import Dict, List

from sqlalchemy import select

from ..auth import create_user
from ..budget import active_budget_for_client, create_budget
from ..database import Client, SessionLocal, Tenant, User, init_database
from ..pricing import seed_tenant_pricing
from ..records import create_client
from ..roles import parse_role


DEMO_PASSWORD = "changeme123"

SAMPLE_STAFF: List[Dict] = [
    {"username": "admin", "name": "Alex Morgan", "role": "Admin", "rate": 48.0},
    {"username": "coord", "name": "Priya Nair", "role": "Coordinator", "rate": 42.5},
    {"username": "lead", "name": "Jordan Blake", "role": "TeamLeader", "rate": 38.0},
    {"username": "sam", "name": "Sam Okafor", "role": "SupportWorker", "rate": 34.2, "type": "casual"},
    {"username": "kim", "name": "Kim Tran", "role": "SupportWorker", "rate": 34.2, "type": "part-time"},
]

SAMPLE_CLIENTS: List[Dict] = [
    {
        "client_code": "CL-DEMO-001",
        "first_name": "Ruby",
        "last_name": "Hendricks",
        "ndis_number": "430000001",
        "ndis_goals": "Build confidence using public transport.",
        "budget": {"sil_total": 60000, "community_access_total": 18000, "capacity_building_total": 6000},
    },
    {
        "client_code": "CL-DEMO-002",
        "first_name": "Marcus",
        "last_name": "Lee",
        "ndis_number": "430000002",
        "allergies": "Penicillin",
        "budget": {"sil_total": 45000, "community_access_total": 12000, "capacity_building_total": 0},
    },
    {
        "client_code": "CL-DEMO-003",
        "first_name": "Tahlia",
        "last_name": "Brooks",
        "ndis_number": "430000003",
    },
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo tenant for local development.")
    parser.add_argument("--tenant", default="Demo Care Services", help="Tenant name to create or refresh.")
    return parser.parse_args()


def seed_demo(tenant_name: str) -> None:
    init_database()
    with SessionLocal() as session:
        tenant = session.scalars(select(Tenant).where(Tenant.name == tenant_name)).first()
        if tenant is None:
            tenant = Tenant(name=tenant_name)
            session.add(tenant)
            session.commit()
            print(f"[seed] Created tenant {tenant.name} (id {tenant.id}).")

        created_staff = 0
        admin_id = None
        for entry in SAMPLE_STAFF:
            if parse_role(entry["role"]) is None:
                print(f"[seed] Skipping {entry['name']}: unknown role {entry['role']}.")
                continue
            user = session.scalars(
                select(User).where(User.tenant_id == tenant.id, User.username == entry["username"])
            ).first()
            if user is None:
                user = create_user(
                    session,
                    tenant.id,
                    entry["username"],
                    DEMO_PASSWORD,
                    role=entry["role"],
                    full_name=entry["name"],
                    hourly_rate=entry["rate"],
                    employment_type=entry.get("type", "full-time"),
                    actor_id=admin_id,
                )
                created_staff += 1
            if entry["role"] == "Admin":
                admin_id = user.id

        added_rates = seed_tenant_pricing(session, tenant.id)

        created_clients = 0
        created_budgets = 0
        for entry in SAMPLE_CLIENTS:
            client = session.scalars(
                select(Client).where(Client.tenant_id == tenant.id, Client.client_code == entry["client_code"])
            ).first()
            if client is None:
                payload = {key: value for key, value in entry.items() if key != "budget"}
                client = create_client(session, tenant.id, payload, admin_id)
                created_clients += 1
            if entry.get("budget") and active_budget_for_client(session, tenant.id, client.id) is None:
                create_budget(
                    session,
                    tenant.id,
                    client.id,
                    {**entry["budget"], "sil_allowed_ratios": ["1:1", "1:2"], "community_access_allowed_ratios": ["1:1"]},
                    admin_id,
                )
                created_budgets += 1

    print(
        f"Seed complete. Created {created_staff} staff, {created_clients} clients, "
        f"{created_budgets} budgets and {added_rates} pricing rows. Demo password: {DEMO_PASSWORD}"
    )


def main() -> None:
    args = parse_args()
    seed_demo(args.tenant)


if __name__ == "__main__":
    main()
