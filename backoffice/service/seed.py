from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from backoffice.logging import get_logger
from backoffice.service.auth import AuthStore
from backoffice.storage.models import Permission, Role

logger = get_logger(__name__)

ADMIN_ROLE_NAME = "Admin"

# (code, display name, group)
PERMISSION_CATALOG: Tuple[Tuple[str, str, str], ...] = (
    ("users.read", "View Users", "Users"),
    ("users.create", "Create Users", "Users"),
    ("users.update", "Update Users", "Users"),
    ("users.delete", "Delete Users", "Users"),
    ("roles.read", "View Roles", "Roles"),
    ("roles.create", "Create Roles", "Roles"),
    ("roles.update", "Update Roles", "Roles"),
    ("roles.delete", "Delete Roles", "Roles"),
    ("permissions.read", "View Permissions", "Permissions"),
    ("audit.read", "View Audit Log", "Audit"),
    ("clients.read", "View Clients", "Clients"),
    ("clients.create", "Create Clients", "Clients"),
    ("clients.update", "Update Clients", "Clients"),
    ("clients.delete", "Delete Clients", "Clients"),
    ("accounts.read", "View Accounts", "Accounts"),
    ("accounts.create", "Create Accounts", "Accounts"),
    ("accounts.update", "Update Accounts", "Accounts"),
    ("accounts.delete", "Delete Accounts", "Accounts"),
    ("instruments.read", "View Instruments", "Instruments"),
    ("instruments.create", "Create Instruments", "Instruments"),
    ("instruments.update", "Update Instruments", "Instruments"),
    ("instruments.delete", "Delete Instruments", "Instruments"),
    ("settings.manage", "Manage Settings", "Settings"),
)


def seed_permissions(store: AuthStore) -> List[Permission]:
    """Insert any catalog permission that is missing; return the full catalog."""

    seeded: List[Permission] = []
    for code, name, group in PERMISSION_CATALOG:
        permission = store.get_permission_by_code(code)
        if permission is None:
            permission = store.create_permission(code, name, group)
            logger.info("permission_seeded", code=code)
        seeded.append(permission)
    return seeded


def seed_admin_role(store: AuthStore, now: Optional[datetime] = None) -> Role:
    """Ensure the ``Admin`` system role exists and holds every catalog permission."""

    permissions = seed_permissions(store)
    role = store.get_role_by_name(ADMIN_ROLE_NAME)
    if role is None:
        role = store.create_role(
            ADMIN_ROLE_NAME, "Full system access", is_system=True, now=now
        )
        logger.info("admin_role_seeded", role_id=role.id)
    store.set_role_permissions(role.id, [p.id for p in permissions], now=now)
    return role


__all__ = ["ADMIN_ROLE_NAME", "PERMISSION_CATALOG", "seed_admin_role", "seed_permissions"]
