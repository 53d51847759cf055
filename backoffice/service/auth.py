from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from backoffice.config import Settings
from backoffice.logging import get_logger
from backoffice.service.clock import Clock, SystemClock
from backoffice.service.context import RequestContext
from backoffice.service.errors import (
    AccountDisabledError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from backoffice.service.passwords import PasswordCredentialVerifier, PasswordVerification
from backoffice.service.permissions import resolve_effective_permissions
from backoffice.service.tokens import AccessClaims, IssuedTokens, TokenIssuer
from backoffice.storage.models import (
    DataScope,
    OverrideGrant,
    Permission,
    PermissionOverride,
    RefreshTokenRecord,
    Role,
    User,
    UserAccessSnapshot,
)

logger = get_logger(__name__)


class AuthStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

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
    ) -> Optional[User]: ...

    def set_password(
        self, user_id: str, password_hash: str, now: Optional[datetime] = None
    ) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...

    def set_user_roles(
        self, user_id: str, role_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None: ...

    def list_user_roles(self, user_id: str) -> List[Role]: ...

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_system: bool = False,
        now: Optional[datetime] = None,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(
        self,
        role_id: str,
        *,
        expected_version: Optional[int],
        name: str,
        description: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def set_role_permissions(
        self, role_id: str, permission_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None: ...

    def list_role_permissions(self, role_id: str) -> List[Permission]: ...

    def create_permission(
        self, code: str, name: str, group: str, description: Optional[str] = None
    ) -> Permission: ...

    def get_permission_by_code(self, code: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def set_permission_override(
        self,
        user_id: str,
        permission_id: str,
        is_allowed: bool,
        now: Optional[datetime] = None,
    ) -> PermissionOverride: ...

    def remove_permission_override(self, user_id: str, permission_id: str) -> bool: ...

    def list_permission_overrides(self, user_id: str) -> List[OverrideGrant]: ...

    def set_data_scopes(
        self,
        user_id: str,
        scopes: Sequence[Tuple[str, str]],
        now: Optional[datetime] = None,
    ) -> List[DataScope]: ...

    def list_data_scopes(self, user_id: str) -> List[DataScope]: ...

    def load_access_snapshot(self, user_id: str) -> Optional[UserAccessSnapshot]: ...

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def rotate_refresh_token(
        self, old_token_hash: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool: ...


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    expires_at: datetime

    @classmethod
    def from_tokens(cls, tokens: IssuedTokens) -> "AuthResult":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.access_token_expires_at,
        )


@dataclass(frozen=True)
class UserProfile:
    id: str
    username: str
    email: str
    full_name: Optional[str]
    roles: List[str]
    permissions: List[str]
    scopes: List[Tuple[str, str]]

    @classmethod
    def from_snapshot(cls, snapshot: UserAccessSnapshot) -> "UserProfile":
        user = snapshot.user
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            roles=[assigned.role.name for assigned in snapshot.roles],
            permissions=resolve_effective_permissions(snapshot),
            scopes=[(s.scope_type, s.scope_value) for s in snapshot.scopes],
        )


class AuthService:
    """Login, bearer-token authentication and self-service profile operations."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        verifier: Optional[PasswordCredentialVerifier] = None,
        issuer: Optional[TokenIssuer] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock: Clock = clock or SystemClock()
        self.verifier = verifier or PasswordCredentialVerifier()
        self.issuer = issuer or TokenIssuer(settings)
        self.logger = logger

    def login(self, username: str, password: str, ctx: RequestContext) -> AuthResult:
        user = self.store.get_user_by_username(username)
        if not user:
            self.logger.info(
                "login_failed", reason="unknown_user", correlation_id=ctx.correlation_id
            )
            raise InvalidCredentialsError()

        verification = self.verifier.verify(user.password_hash, password)
        if verification is PasswordVerification.MISMATCH:
            self.logger.info(
                "login_failed",
                reason="password_mismatch",
                user_id=user.id,
                correlation_id=ctx.correlation_id,
            )
            raise InvalidCredentialsError()

        # disclosed only after the password checked out
        if not user.is_active:
            self.logger.info(
                "login_rejected_inactive", user_id=user.id, correlation_id=ctx.correlation_id
            )
            raise AccountDisabledError()

        now = self.clock.now()
        if verification is PasswordVerification.REQUIRES_REHASH:
            self.store.set_password(user.id, self.verifier.hash(password), now)
            self.logger.info("password_rehashed", user_id=user.id)

        snapshot = self.store.load_access_snapshot(user.id)
        if snapshot is None:
            raise InvalidCredentialsError()
        permissions = resolve_effective_permissions(snapshot)
        tokens = self.issuer.issue(snapshot.user, permissions, now)
        self.store.add_refresh_token(
            self.issuer.refresh_record(user.id, tokens.refresh_token, now)
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            permission_count=len(permissions),
            correlation_id=ctx.correlation_id,
        )
        return AuthResult.from_tokens(tokens)

    def authenticate(self, authorization: Optional[str]) -> AccessClaims:
        """Decode the bearer token from an ``Authorization`` header."""

        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("Missing bearer token")
        return self.issuer.decode_access_token(token, self.clock.now())

    def get_profile(self, user_id: str) -> UserProfile:
        snapshot = self.store.load_access_snapshot(user_id)
        if snapshot is None:
            raise NotFoundError("User not found")
        return UserProfile.from_snapshot(snapshot)

    def change_password(
        self, ctx: RequestContext, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(ctx.user_id) if ctx.user_id else None
        if not user:
            raise NotFoundError("User not found")
        if not current_password:
            raise ValidationError("Current password is required")
        if len(new_password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"New password must be at least {self.settings.min_password_length} characters",
                detail={"field": "new_password"},
            )
        if not self.verifier.verify(user.password_hash, current_password).succeeded:
            self.logger.info("password_change_rejected", user_id=user.id)
            raise InvalidCredentialsError()
        self.store.set_password(user.id, self.verifier.hash(new_password), self.clock.now())
        self.logger.info("password_changed", user_id=user.id, correlation_id=ctx.correlation_id)

    def update_profile(
        self, ctx: RequestContext, *, full_name: Optional[str], email: str
    ) -> UserProfile:
        user = self.store.get_user(ctx.user_id) if ctx.user_id else None
        if not user:
            raise NotFoundError("User not found")
        self.store.update_user(
            user.id,
            expected_version=None,
            email=email,
            full_name=full_name,
            is_active=user.is_active,
            now=self.clock.now(),
        )
        self.logger.info("profile_updated", user_id=user.id, correlation_id=ctx.correlation_id)
        return self.get_profile(user.id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None


__all__ = ["AuthResult", "AuthService", "AuthStore", "UserProfile"]
