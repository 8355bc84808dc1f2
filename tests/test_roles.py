from __future__ import annotations

import sys
import unittest
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from careroster.roles import (  # noqa: E402
    Permission,
    Role,
    defined_roles,
    has_permission,
    is_manager_role,
    parse_role,
    permissions_for,
)


class RolePermissionTests(unittest.TestCase):
    def test_parse_role_is_case_insensitive_and_knows_aliases(self) -> None:
        self.assertIs(parse_role("coordinator"), Role.COORDINATOR)
        self.assertIs(parse_role(" ADMIN "), Role.ADMIN)
        self.assertIs(parse_role("staff"), Role.SUPPORT_WORKER)
        self.assertIs(parse_role("Team Leader"), Role.TEAM_LEADER)
        self.assertIsNone(parse_role("janitor"))
        self.assertIsNone(parse_role(""))

    def test_support_worker_permissions(self) -> None:
        self.assertTrue(has_permission("SupportWorker", Permission.WORK_SHIFTS))
        self.assertTrue(has_permission("SupportWorker", Permission.RECORD_MEDICATION))
        self.assertFalse(has_permission("SupportWorker", Permission.MANAGE_SHIFTS))
        self.assertFalse(has_permission("SupportWorker", Permission.VIEW_BUDGETS))
        self.assertFalse(is_manager_role("SupportWorker"))

    def test_higher_roles_include_lower_tiers(self) -> None:
        worker = set(permissions_for(Role.SUPPORT_WORKER))
        leader = set(permissions_for(Role.TEAM_LEADER))
        coordinator = set(permissions_for(Role.COORDINATOR))
        admin = set(permissions_for(Role.ADMIN))
        self.assertTrue(worker < leader < coordinator < admin)
        self.assertIn("manage_pricing", admin)
        self.assertNotIn("manage_pricing", coordinator)

    def test_console_manager_has_everything(self) -> None:
        for permission in Permission:
            self.assertTrue(has_permission(Role.CONSOLE_MANAGER, permission))

    def test_unknown_role_has_nothing(self) -> None:
        self.assertFalse(has_permission("Visitor", Permission.VIEW_SHIFTS))
        self.assertFalse(has_permission(None, Permission.VIEW_SHIFTS))
        self.assertEqual(permissions_for("Visitor"), [])

    def test_defined_roles_lists_every_role(self) -> None:
        self.assertEqual(
            defined_roles(), ["SupportWorker", "TeamLeader", "Coordinator", "Admin", "ConsoleManager"]
        )


if __name__ == "__main__":
    unittest.main()
