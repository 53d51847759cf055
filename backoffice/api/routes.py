from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from backoffice.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    OverrideRequest,
    PermissionResponse,
    ProfileResponse,
    RefreshRequest,
    RoleCreateRequest,
    RolePermissionsRequest,
    RoleResponse,
    RoleUpdateRequest,
    ScopeResponse,
    ScopesRequest,
    UpdateProfileRequest,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from backoffice.logging import get_correlation_id, set_correlation_id
from backoffice.service.access import AccessControlGate, AccessDecision
from backoffice.service.admin import RoleView, UserView
from backoffice.service.auth import AuthResult, UserProfile
from backoffice.service.context import RequestContext
from backoffice.service.errors import ForbiddenError
from backoffice.service.runtime import get_runtime
from backoffice.service.tokens import AccessClaims
from backoffice.storage.models import Permission

router = APIRouter(prefix="/api/v1")


# -- dependencies ------------------------------------------------------------


async def request_context(request: Request) -> RequestContext:
    correlation_id = get_correlation_id() or set_correlation_id(
        request.headers.get("X-Request-ID")
    )
    return RequestContext(
        correlation_id=correlation_id,
        client_ip=request.client.host if request.client else None,
    )


async def get_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    return get_runtime().auth.authenticate(authorization)


async def get_principal(
    ctx: RequestContext = Depends(request_context),
    claims: AccessClaims = Depends(get_claims),
) -> RequestContext:
    return ctx.with_principal(claims.subject, claims.username or "", claims.permissions)


policy_gate = AccessControlGate()


def require(policy: str, gate: AccessControlGate = policy_gate) -> Callable:
    """Build a dependency that admits only callers satisfying ``policy``.

    Named policies are resolved against ``gate`` when the route is declared,
    so a typo fails at import rather than on the first request. The same gate
    authorizes every request.
    """
    gate.resolve(policy)

    async def _dependency(
        ctx: RequestContext = Depends(get_principal),
        claims: AccessClaims = Depends(get_claims),
    ) -> RequestContext:
        if gate.authorize(claims, policy) is AccessDecision.DENY:
            raise ForbiddenError("insufficient permissions", detail={"required": policy})
        return ctx

    return _dependency


# -- response mapping --------------------------------------------------------


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
    )


def _profile_response(profile: UserProfile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        username=profile.username,
        email=profile.email,
        full_name=profile.full_name,
        roles=profile.roles,
        permissions=profile.permissions,
        scopes=[ScopeResponse(scope_type=t, scope_value=v) for t, v in profile.scopes],
    )


def _user_response(view: UserView) -> UserResponse:
    user = view.user
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        full_name=user.full_name,
        is_active=user.is_active,
        roles=view.roles,
        created_at=user.created_at,
        version=user.version,
    )


def _role_response(view: RoleView) -> RoleResponse:
    role = view.role
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        is_system=role.is_system,
        permissions=view.permissions,
        created_at=role.created_at,
        version=role.version,
    )


def _permission_response(permission: Permission) -> PermissionResponse:
    return PermissionResponse(
        id=permission.id,
        code=permission.code,
        name=permission.name,
        group=permission.group,
        description=permission.description,
    )


# -- auth --------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(request_context)):
    """Exchange username and password for an access/refresh token pair.

    Raises:
        401: unknown user, wrong password or disabled account
    """
    result = await asyncio.to_thread(
        get_runtime().auth.login, body.username, body.password, ctx
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, ctx: RequestContext = Depends(request_context)):
    """Rotate a refresh token. Replaying a spent token revokes every session of its user."""
    result = await asyncio.to_thread(get_runtime().refresh.refresh, body.refresh_token, ctx)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(require("authenticated"))):
    profile = get_runtime().auth.get_profile(ctx.user_id)
    return Envelope(status="ok", data=_profile_response(profile))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, ctx: RequestContext = Depends(require("authenticated"))
):
    await asyncio.to_thread(
        get_runtime().auth.change_password, ctx, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"changed": True})


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: UpdateProfileRequest, ctx: RequestContext = Depends(require("authenticated"))
):
    profile = get_runtime().auth.update_profile(
        ctx, full_name=body.full_name, email=body.email
    )
    return Envelope(status="ok", data=_profile_response(profile))


# -- users -------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(ctx: RequestContext = Depends(require("users.read"))):
    views = get_runtime().admin.list_users()
    return Envelope(status="ok", data={"items": [_user_response(v) for v in views]})


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: UserCreateRequest, ctx: RequestContext = Depends(require("users.create"))
):
    view = await asyncio.to_thread(
        get_runtime().admin.create_user,
        ctx,
        username=body.username,
        email=body.email,
        password=body.password,
        full_name=body.full_name,
        is_active=body.is_active,
        role_ids=body.role_ids,
    )
    return Envelope(status="ok", data=_user_response(view))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("users.read")),
):
    return Envelope(status="ok", data=_user_response(get_runtime().admin.get_user(user_id)))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("users.update")),
):
    view = get_runtime().admin.update_user(
        ctx,
        user_id,
        email=body.email,
        full_name=body.full_name,
        is_active=body.is_active,
        role_ids=body.role_ids,
        version=body.version,
    )
    return Envelope(status="ok", data=_user_response(view))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("users.delete")),
):
    get_runtime().admin.delete_user(ctx, user_id)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.put("/users/{user_id}/overrides", response_model=Envelope, tags=["users"])
async def set_override(
    body: OverrideRequest,
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("users.update")),
):
    get_runtime().admin.set_permission_override(
        ctx, user_id, body.permission_code, allowed=body.is_allowed
    )
    return Envelope(
        status="ok",
        data={"permission_code": body.permission_code, "is_allowed": body.is_allowed},
    )


@router.delete("/users/{user_id}/overrides/{code}", response_model=Envelope, tags=["users"])
async def remove_override(
    user_id: str = Path(..., max_length=64),
    code: str = Path(..., max_length=100),
    ctx: RequestContext = Depends(require("users.update")),
):
    get_runtime().admin.remove_permission_override(ctx, user_id, code)
    return Envelope(status="ok", data={"permission_code": code, "deleted": True})


@router.put("/users/{user_id}/scopes", response_model=Envelope, tags=["users"])
async def set_scopes(
    body: ScopesRequest,
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("users.update")),
):
    scopes = get_runtime().admin.set_data_scopes(
        ctx, user_id, [(s.scope_type, s.scope_value) for s in body.scopes]
    )
    return Envelope(
        status="ok",
        data={
            "items": [
                ScopeResponse(scope_type=s.scope_type, scope_value=s.scope_value)
                for s in scopes
            ]
        },
    )


# -- roles -------------------------------------------------------------------


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(ctx: RequestContext = Depends(require("roles.read"))):
    views = get_runtime().admin.list_roles()
    return Envelope(status="ok", data={"items": [_role_response(v) for v in views]})


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest, ctx: RequestContext = Depends(require("roles.create"))
):
    view = get_runtime().admin.create_role(ctx, name=body.name, description=body.description)
    return Envelope(status="ok", data=_role_response(view))


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(
    role_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("roles.read")),
):
    return Envelope(status="ok", data=_role_response(get_runtime().admin.get_role(role_id)))


@router.put("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("roles.update")),
):
    view = get_runtime().admin.update_role(
        ctx, role_id, name=body.name, description=body.description, version=body.version
    )
    return Envelope(status="ok", data=_role_response(view))


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("roles.delete")),
):
    get_runtime().admin.delete_role(ctx, role_id)
    return Envelope(status="ok", data={"id": role_id, "deleted": True})


@router.put("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def set_role_permissions(
    body: RolePermissionsRequest,
    role_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require("roles.update")),
):
    view = get_runtime().admin.set_role_permissions(ctx, role_id, body.permission_codes)
    return Envelope(status="ok", data=_role_response(view))


# -- permissions -------------------------------------------------------------


@router.get("/permissions", response_model=Envelope, tags=["permissions"])
async def list_permissions(ctx: RequestContext = Depends(require("permissions.read"))):
    permissions = get_runtime().admin.list_permissions()
    return Envelope(
        status="ok", data={"items": [_permission_response(p) for p in permissions]}
    )
