"""Effective-permission computation.

A user's effective permissions are the union of the codes granted by every
assigned role, after which each per-user override either adds its code
(allow) or removes it (deny). Overrides therefore always beat role grants.

The result is never persisted; it is recomputed from a freshly loaded
``UserAccessSnapshot`` at login and at every refresh-token rotation.
"""

from __future__ import annotations

from typing import List

from backoffice.logging import get_logger
from backoffice.storage.models import UserAccessSnapshot

logger = get_logger(__name__)


def resolve_effective_permissions(snapshot: UserAccessSnapshot) -> List[str]:
    granted = {
        permission.code
        for assigned in snapshot.roles
        for permission in assigned.permissions
    }
    allowed = {o.permission.code for o in snapshot.overrides if o.is_allowed}
    denied = {o.permission.code for o in snapshot.overrides if not o.is_allowed}

    conflicting = allowed & denied
    if conflicting:
        # storage keeps one override per (user, permission); deny wins if that breaks
        logger.warning(
            "permission_override_conflict",
            user_id=snapshot.user.id,
            codes=sorted(conflicting),
        )

    effective = (granted | allowed) - denied
    return sorted(effective)


__all__ = ["resolve_effective_permissions"]
