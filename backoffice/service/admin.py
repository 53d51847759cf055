from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service.auth import AuthStore
from backoffice.service.clock import Clock, SystemClock
from backoffice.service.context import RequestContext
from backoffice.service.errors import ConflictError, NotFoundError, ValidationError
from backoffice.service.passwords import PasswordCredentialVerifier
from backoffice.storage.errors import ConcurrencyConflict, ConstraintViolation
from backoffice.storage.models import DataScope, Permission, Role, User

logger = get_logger(__name__)

CONCURRENCY_MESSAGE = "The record was modified by another user. Please reload and try again."


@dataclass(frozen=True)
class UserView:
    user: User
    roles: List[str]


@dataclass(frozen=True)
class RoleView:
    role: Role
    permissions: List[str]


class AdminService:
    """User, role and permission administration behind the ``users.*``,
    ``roles.*`` and ``permissions.*`` permissions.

    Storage constraint and version errors surface as ``ConflictError``;
    missing entities as ``NotFoundError``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        verifier: Optional[PasswordCredentialVerifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.verifier = verifier or PasswordCredentialVerifier()

    # -- users -----------------------------------------------------------

    def create_user(
        self,
        ctx: RequestContext,
        *,
        username: str,
        email: str,
        password: str,
        full_name: Optional[str] = None,
        is_active: bool = True,
        role_ids: Sequence[str] = (),
    ) -> UserView:
        if len(password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"Password must be at least {self.settings.min_password_length} characters",
                detail={"field": "password"},
            )
        self._require_roles(role_ids)
        try:
            user = self.store.create_user(
                username,
                email,
                self.verifier.hash(password),
                full_name=full_name,
                is_active=is_active,
                role_ids=role_ids,
                now=self.clock.now(),
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        logger.info("user_created", user_id=user.id, actor=ctx.actor)
        return self._user_view(user)

    def get_user(self, user_id: str) -> UserView:
        return self._user_view(self._require_user(user_id))

    def list_users(self) -> List[UserView]:
        return [self._user_view(user) for user in self.store.list_users()]

    def update_user(
        self,
        ctx: RequestContext,
        user_id: str,
        *,
        email: str,
        full_name: Optional[str],
        is_active: bool,
        role_ids: Sequence[str],
        version: int,
    ) -> UserView:
        self._require_roles(role_ids)
        try:
            user = self.store.update_user(
                user_id,
                expected_version=version,
                email=email,
                full_name=full_name,
                is_active=is_active,
                role_ids=role_ids,
                now=self.clock.now(),
            )
        except ConcurrencyConflict:
            logger.info("user_update_conflict", user_id=user_id, version=version)
            raise ConflictError(CONCURRENCY_MESSAGE)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        logger.info("user_updated", user_id=user_id, actor=ctx.actor)
        return self._user_view(user)

    def delete_user(self, ctx: RequestContext, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise NotFoundError(f"User {user_id} not found")
        logger.info("user_deleted", user_id=user_id, actor=ctx.actor)

    def set_permission_override(
        self, ctx: RequestContext, user_id: str, code: str, *, allowed: bool
    ) -> None:
        self._require_user(user_id)
        permission = self._require_permission(code)
        self.store.set_permission_override(
            user_id, permission.id, allowed, now=self.clock.now()
        )
        logger.info(
            "permission_override_set",
            user_id=user_id,
            code=code,
            allowed=allowed,
            actor=ctx.actor,
        )

    def remove_permission_override(
        self, ctx: RequestContext, user_id: str, code: str
    ) -> None:
        self._require_user(user_id)
        permission = self._require_permission(code)
        if not self.store.remove_permission_override(user_id, permission.id):
            raise NotFoundError(f"No override for '{code}' on user {user_id}")
        logger.info("permission_override_removed", user_id=user_id, code=code, actor=ctx.actor)

    def set_data_scopes(
        self, ctx: RequestContext, user_id: str, scopes: Sequence[Tuple[str, str]]
    ) -> List[DataScope]:
        self._require_user(user_id)
        result = self.store.set_data_scopes(user_id, scopes, now=self.clock.now())
        logger.info("data_scopes_set", user_id=user_id, count=len(result), actor=ctx.actor)
        return result

    # -- roles -----------------------------------------------------------

    def create_role(
        self, ctx: RequestContext, *, name: str, description: Optional[str] = None
    ) -> RoleView:
        try:
            role = self.store.create_role(name, description, now=self.clock.now())
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        logger.info("role_created", role_id=role.id, actor=ctx.actor)
        return RoleView(role, [])

    def get_role(self, role_id: str) -> RoleView:
        return self._role_view(self._require_role(role_id))

    def list_roles(self) -> List[RoleView]:
        return [self._role_view(role) for role in self.store.list_roles()]

    def update_role(
        self,
        ctx: RequestContext,
        role_id: str,
        *,
        name: str,
        description: Optional[str],
        version: int,
    ) -> RoleView:
        role = self._require_role(role_id)
        if role.is_system:
            raise ConflictError("Cannot modify a system role")
        try:
            updated = self.store.update_role(
                role_id,
                expected_version=version,
                name=name,
                description=description,
                now=self.clock.now(),
            )
        except ConcurrencyConflict:
            raise ConflictError(CONCURRENCY_MESSAGE)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        if updated is None:
            raise NotFoundError(f"Role {role_id} not found")
        logger.info("role_updated", role_id=role_id, actor=ctx.actor)
        return self._role_view(updated)

    def delete_role(self, ctx: RequestContext, role_id: str) -> None:
        role = self._require_role(role_id)
        if role.is_system:
            raise ConflictError("Cannot delete a system role")
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id, actor=ctx.actor)

    def set_role_permissions(
        self, ctx: RequestContext, role_id: str, codes: Sequence[str]
    ) -> RoleView:
        self._require_role(role_id)
        permission_ids = [self._require_permission(code).id for code in dict.fromkeys(codes)]
        try:
            self.store.set_role_permissions(role_id, permission_ids, now=self.clock.now())
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail)
        logger.info(
            "role_permissions_set", role_id=role_id, count=len(permission_ids), actor=ctx.actor
        )
        return self.get_role(role_id)

    # -- permissions -----------------------------------------------------

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    # -- helpers ---------------------------------------------------------

    def _user_view(self, user: User) -> UserView:
        return UserView(user, [role.name for role in self.store.list_user_roles(user.id)])

    def _role_view(self, role: Role) -> RoleView:
        return RoleView(role, [p.code for p in self.store.list_role_permissions(role.id)])

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError(f"Role {role_id} not found")
        return role

    def _require_roles(self, role_ids: Sequence[str]) -> None:
        for role_id in role_ids:
            self._require_role(role_id)

    def _require_permission(self, code: str) -> Permission:
        permission = self.store.get_permission_by_code(code)
        if not permission:
            raise NotFoundError(f"Permission '{code}' not found")
        return permission


__all__ = ["AdminService", "CONCURRENCY_MESSAGE", "RoleView", "UserView"]
