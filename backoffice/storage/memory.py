from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from backoffice.logging import get_logger
from backoffice.storage.errors import ConcurrencyConflict, ConstraintViolation
from backoffice.storage.models import (
    AssignedRole,
    DataScope,
    OverrideGrant,
    Permission,
    PermissionOverride,
    RefreshTokenRecord,
    Role,
    RoleAssignment,
    RolePermission,
    User,
    UserAccessSnapshot,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process store used by tests and local development.

    Every public method holds ``_data_lock`` for its whole body, so each call
    is atomic with respect to every other call, including the multi-record
    refresh-token sweeps and rotations. Returned entities are copies; callers
    change state only through store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.user_roles: Dict[Tuple[str, str], RoleAssignment] = {}
        self.role_permissions: Dict[Tuple[str, str], RolePermission] = {}
        self.overrides: Dict[Tuple[str, str], PermissionOverride] = {}
        self.data_scopes: Dict[str, DataScope] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can re-enter from within a locked public method
        self._data_lock = threading.RLock()

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        is_active: bool = True,
        role_ids: Sequence[str] = (),
        now: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation(
                    f"Username '{username}' is already taken", {"field": "username"}
                )
            missing = [role_id for role_id in role_ids if role_id not in self.roles]
            if missing:
                raise ConstraintViolation("role not found", {"role_ids": sorted(missing)})
            created = now or _utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                is_active=is_active,
                created_at=created,
            )
            self.users[user.id] = user
            self._replace_user_roles(user.id, role_ids, created)
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [
                replace(u)
                for u in sorted(self.users.values(), key=lambda u: u.username)
            ]

    def update_user(
        self,
        user_id: str,
        *,
        expected_version: Optional[int],
        email: str,
        full_name: Optional[str],
        is_active: bool,
        role_ids: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if expected_version is not None and user.version != expected_version:
                raise ConcurrencyConflict("user", user_id, expected_version)
            updated = now or _utcnow()
            if role_ids is not None:
                self._replace_user_roles(user_id, role_ids, updated)
            user.email = email
            user.full_name = full_name
            user.is_active = is_active
            user.updated_at = updated
            user.version += 1
            return replace(user)

    def set_password(
        self, user_id: str, password_hash: str, now: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            user.updated_at = now or _utcnow()
            user.version += 1

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for key in [k for k in self.user_roles if k[0] == user_id]:
                del self.user_roles[key]
            for key in [k for k in self.overrides if k[0] == user_id]:
                del self.overrides[key]
            for scope_id in [s.id for s in self.data_scopes.values() if s.user_id == user_id]:
                del self.data_scopes[scope_id]
            for token_hash in [
                t.token_hash for t in self.refresh_tokens.values() if t.user_id == user_id
            ]:
                del self.refresh_tokens[token_hash]
            return True

    def set_user_roles(
        self, user_id: str, role_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self._replace_user_roles(user_id, role_ids, now or _utcnow())

    def _replace_user_roles(
        self, user_id: str, role_ids: Iterable[str], now: datetime
    ) -> None:
        wanted = set(role_ids)
        missing = [role_id for role_id in wanted if role_id not in self.roles]
        if missing:
            raise ConstraintViolation("role not found", {"role_ids": sorted(missing)})
        for key in [k for k in self.user_roles if k[0] == user_id and k[1] not in wanted]:
            del self.user_roles[key]
        for role_id in wanted:
            self.user_roles.setdefault(
                (user_id, role_id), RoleAssignment(user_id, role_id, assigned_at=now)
            )

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[role_id]
                for (uid, role_id) in self.user_roles
                if uid == user_id and role_id in self.roles
            ]
            return [replace(r) for r in sorted(roles, key=lambda r: r.name)]

    # -- roles -----------------------------------------------------------

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_system: bool = False,
        now: Optional[datetime] = None,
    ) -> Role:
        with self._data_lock:
            if any(existing.name == name for existing in self.roles.values()):
                raise ConstraintViolation(
                    f"Role '{name}' already exists", {"field": "name"}
                )
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                is_system=is_system,
                created_at=now or _utcnow(),
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def update_role(
        self,
        role_id: str,
        *,
        expected_version: Optional[int],
        name: str,
        description: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if expected_version is not None and role.version != expected_version:
                raise ConcurrencyConflict("role", role_id, expected_version)
            if any(r.name == name and r.id != role_id for r in self.roles.values()):
                raise ConstraintViolation(
                    f"Role '{name}' already exists", {"field": "name"}
                )
            role.name = name
            role.description = description
            role.updated_at = now or _utcnow()
            role.version += 1
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for key in [k for k in self.user_roles if k[1] == role_id]:
                del self.user_roles[key]
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                del self.role_permissions[key]
            return True

    def set_role_permissions(
        self, role_id: str, permission_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            wanted = set(permission_ids)
            missing = [pid for pid in wanted if pid not in self.permissions]
            if missing:
                raise ConstraintViolation(
                    "permission not found", {"permission_ids": sorted(missing)}
                )
            for key in [k for k in self.role_permissions if k[0] == role_id]:
                del self.role_permissions[key]
            for permission_id in wanted:
                self.role_permissions[(role_id, permission_id)] = RolePermission(
                    role_id, permission_id
                )
            role.updated_at = now or _utcnow()
            role.version += 1

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._data_lock:
            perms = [
                self.permissions[pid]
                for (rid, pid) in self.role_permissions
                if rid == role_id and pid in self.permissions
            ]
            return sorted(perms, key=lambda p: p.code)

    # -- permissions -----------------------------------------------------

    def create_permission(
        self, code: str, name: str, group: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            if any(p.code == code for p in self.permissions.values()):
                raise ConstraintViolation(
                    f"Permission '{code}' already exists", {"field": "code"}
                )
            permission = Permission(
                id=str(uuid.uuid4()),
                code=code,
                name=name,
                group=group,
                description=description,
            )
            self.permissions[permission.id] = permission
            return permission

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._data_lock:
            return next((p for p in self.permissions.values() if p.code == code), None)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(self.permissions.values(), key=lambda p: (p.group, p.code))

    # -- overrides and scopes -------------------------------------------

    def set_permission_override(
        self,
        user_id: str,
        permission_id: str,
        is_allowed: bool,
        now: Optional[datetime] = None,
    ) -> PermissionOverride:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            # one override per (user, permission): a second write replaces the first
            override = PermissionOverride(
                user_id=user_id,
                permission_id=permission_id,
                is_allowed=is_allowed,
                created_at=now or _utcnow(),
            )
            self.overrides[(user_id, permission_id)] = override
            return replace(override)

    def remove_permission_override(self, user_id: str, permission_id: str) -> bool:
        with self._data_lock:
            return self.overrides.pop((user_id, permission_id), None) is not None

    def list_permission_overrides(self, user_id: str) -> List[OverrideGrant]:
        with self._data_lock:
            return [
                OverrideGrant(self.permissions[pid], o.is_allowed)
                for (uid, pid), o in self.overrides.items()
                if uid == user_id and pid in self.permissions
            ]

    def set_data_scopes(
        self,
        user_id: str,
        scopes: Sequence[Tuple[str, str]],
        now: Optional[datetime] = None,
    ) -> List[DataScope]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            for scope_id in [s.id for s in self.data_scopes.values() if s.user_id == user_id]:
                del self.data_scopes[scope_id]
            created = now or _utcnow()
            for scope_type, scope_value in dict.fromkeys(scopes):
                scope = DataScope(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    scope_type=scope_type,
                    scope_value=scope_value,
                    created_at=created,
                )
                self.data_scopes[scope.id] = scope
            return self.list_data_scopes(user_id)

    def list_data_scopes(self, user_id: str) -> List[DataScope]:
        with self._data_lock:
            return sorted(
                (replace(s) for s in self.data_scopes.values() if s.user_id == user_id),
                key=lambda s: (s.scope_type, s.scope_value),
            )

    def load_access_snapshot(self, user_id: str) -> Optional[UserAccessSnapshot]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            return UserAccessSnapshot(
                user=user,
                roles=[
                    AssignedRole(role, self.list_role_permissions(role.id))
                    for role in self.list_user_roles(user_id)
                ],
                overrides=self.list_permission_overrides(user_id),
                scopes=self.list_data_scopes(user_id),
            )

    # -- refresh tokens --------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token hash collision")
            self.refresh_tokens[record.token_hash] = replace(record)
            return record

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return sorted(
                (replace(t) for t in self.refresh_tokens.values() if t.user_id == user_id),
                key=lambda t: t.created_at,
            )

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked += 1
            return revoked

    def rotate_refresh_token(
        self, old_token_hash: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(old_token_hash)
            if current is None or not current.is_active(now):
                return False
            if new_record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token hash collision")
            current.revoked_at = now
            current.replaced_by_token_hash = new_record.token_hash
            self.refresh_tokens[new_record.token_hash] = replace(new_record)
            return True


__all__ = ["MemoryStore"]
