from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str = ""
    full_name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass
class Permission:
    id: str
    code: str
    name: str
    group: str
    description: Optional[str] = None


@dataclass
class RoleAssignment:
    user_id: str
    role_id: str
    assigned_at: datetime = field(default_factory=_utcnow)


@dataclass
class RolePermission:
    role_id: str
    permission_id: str


@dataclass
class PermissionOverride:
    user_id: str
    permission_id: str
    is_allowed: bool
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class DataScope:
    id: str
    user_id: str
    scope_type: str
    scope_value: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshTokenRecord:
    """Stored state of one issued refresh token; the raw token is never kept."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
    replaced_by_token_hash: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        # A token presented exactly at its expiry instant is already expired.
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class AssignedRole:
    role: Role
    permissions: List[Permission] = field(default_factory=list)


@dataclass
class OverrideGrant:
    permission: Permission
    is_allowed: bool


@dataclass
class UserAccessSnapshot:
    """Everything needed to compute a user's effective permissions, read at once."""

    user: User
    roles: List[AssignedRole] = field(default_factory=list)
    overrides: List[OverrideGrant] = field(default_factory=list)
    scopes: List[DataScope] = field(default_factory=list)
