from __future__ import annotations

import enum
from typing import Dict, FrozenSet, List, Optional


class Role(str, enum.Enum):
    SUPPORT_WORKER = "SupportWorker"
    TEAM_LEADER = "TeamLeader"
    COORDINATOR = "Coordinator"
    ADMIN = "Admin"
    CONSOLE_MANAGER = "ConsoleManager"


class Permission(str, enum.Enum):
    VIEW_CLIENTS = "view_clients"
    MANAGE_CLIENTS = "manage_clients"
    VIEW_SHIFTS = "view_shifts"
    MANAGE_SHIFTS = "manage_shifts"
    WORK_SHIFTS = "work_shifts"
    VIEW_BUDGETS = "view_budgets"
    MANAGE_BUDGETS = "manage_budgets"
    MANAGE_PRICING = "manage_pricing"
    REPORT_INCIDENTS = "report_incidents"
    CLOSE_INCIDENTS = "close_incidents"
    MANAGE_MEDICATION_PLANS = "manage_medication_plans"
    RECORD_MEDICATION = "record_medication"
    WRITE_CASE_NOTES = "write_case_notes"
    APPROVE_TIMESHEETS = "approve_timesheets"
    MANAGE_STAFF = "manage_staff"
    VIEW_ACTIVITY = "view_activity"
    EXPORT_DATA = "export_data"
    MANAGE_CARE_PLANS = "manage_care_plans"
    DELETE_CARE_PLANS = "delete_care_plans"
    RECORD_OBSERVATIONS = "record_observations"
    REVIEW_CANCELLATIONS = "review_cancellations"
    MANAGE_AVAILABILITY = "manage_availability"


_FRONTLINE: FrozenSet[Permission] = frozenset(
    {
        Permission.VIEW_CLIENTS,
        Permission.VIEW_SHIFTS,
        Permission.WORK_SHIFTS,
        Permission.REPORT_INCIDENTS,
        Permission.RECORD_MEDICATION,
        Permission.WRITE_CASE_NOTES,
        Permission.RECORD_OBSERVATIONS,
    }
)
_LEADERSHIP = _FRONTLINE | {
    Permission.MANAGE_SHIFTS,
    Permission.VIEW_BUDGETS,
    Permission.CLOSE_INCIDENTS,
    Permission.VIEW_ACTIVITY,
    Permission.MANAGE_CARE_PLANS,
    Permission.MANAGE_AVAILABILITY,
}
_COORDINATION = _LEADERSHIP | {
    Permission.MANAGE_CLIENTS,
    Permission.MANAGE_BUDGETS,
    Permission.MANAGE_MEDICATION_PLANS,
    Permission.APPROVE_TIMESHEETS,
    Permission.EXPORT_DATA,
}

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.SUPPORT_WORKER: _FRONTLINE,
    Role.TEAM_LEADER: frozenset(_LEADERSHIP),
    Role.COORDINATOR: frozenset(_COORDINATION),
    Role.ADMIN: frozenset(
        _COORDINATION
        | {
            Permission.MANAGE_PRICING,
            Permission.MANAGE_STAFF,
            Permission.DELETE_CARE_PLANS,
            Permission.REVIEW_CANCELLATIONS,
        }
    ),
    # Console managers operate the platform and may do anything.
    Role.CONSOLE_MANAGER: frozenset(Permission),
}

# Labels older records and front ends still send.
_ALIASES: Dict[str, Role] = {
    "staff": Role.SUPPORT_WORKER,
    "support worker": Role.SUPPORT_WORKER,
    "support_worker": Role.SUPPORT_WORKER,
    "team leader": Role.TEAM_LEADER,
    "team_leader": Role.TEAM_LEADER,
    "console manager": Role.CONSOLE_MANAGER,
    "console_manager": Role.CONSOLE_MANAGER,
}


def normalize_role(role: str) -> str:
    return (role or "").strip().lower()


def parse_role(label: str) -> Optional[Role]:
    """Map a stored or submitted role label onto ``Role``, ignoring case."""
    normalized = normalize_role(label)
    if not normalized:
        return None
    for role in Role:
        if role.value.lower() == normalized:
            return role
    return _ALIASES.get(normalized)


def has_permission(role: Role | str | None, permission: Permission) -> bool:
    resolved = role if isinstance(role, Role) else parse_role(role or "")
    if resolved is None:
        return False
    return permission in ROLE_PERMISSIONS[resolved]


def permissions_for(role: Role | str | None) -> List[str]:
    resolved = role if isinstance(role, Role) else parse_role(role or "")
    if resolved is None:
        return []
    return sorted(permission.value for permission in ROLE_PERMISSIONS[resolved])


def is_manager_role(role: Role | str | None) -> bool:
    """Return True for roles that may roster other staff."""
    return has_permission(role, Permission.MANAGE_SHIFTS)


def defined_roles() -> List[str]:
    return [role.value for role in Role]
