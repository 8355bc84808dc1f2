"""Move a tenant's clients in and out of JSON files.

``python -m careroster.scripts.client_exchange export --tenant-id 1`` writes
a timestamped file under the export directory; ``import --tenant-id 2 FILE``
creates or updates clients by client code.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Callable, List, Optional

from ..data_exchange import export_clients, import_clients
from ..database import ConflictError, SessionLocal, Tenant, init_database
from ..logging_setup import configure_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export or import a tenant's clients as JSON.")
    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Write the tenant's clients to a JSON file.")
    export.add_argument("--tenant-id", type=int, required=True)
    export.add_argument("--dir", type=Path, default=None, help="Target directory (defaults to the data exports folder).")

    load = commands.add_parser("import", help="Create or update clients from a JSON export.")
    load.add_argument("--tenant-id", type=int, required=True)
    load.add_argument("file", type=Path)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, session_factory: Optional[Callable] = None) -> int:
    args = parse_args(argv)
    if session_factory is None:
        configure_logging()
        init_database()
        session_factory = SessionLocal
    with session_factory() as session:
        if session.get(Tenant, args.tenant_id) is None:
            print(f"[exchange] No tenant with id {args.tenant_id}.")
            return 1
        if args.command == "export":
            path = export_clients(session, args.tenant_id, args.dir)
            print(f"[exchange] Wrote {path}")
            return 0
        if not args.file.is_file():
            print(f"[exchange] No such file: {args.file}")
            return 1
        try:
            created, updated = import_clients(session, args.tenant_id, args.file)
        except ConflictError as exc:
            print(f"[exchange] Import rejected: {exc}")
            return 1
    print(f"[exchange] Imported {created} new and {updated} existing clients.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
