"""Tests for effective-permission resolution."""

import itertools

from backoffice.service.permissions import resolve_effective_permissions
from backoffice.storage.models import (
    AssignedRole,
    OverrideGrant,
    Permission,
    Role,
    User,
    UserAccessSnapshot,
)


def _perm(code: str) -> Permission:
    return Permission(id=f"p-{code}", code=code, name=code, group=code.split(".")[0])


def _role(name: str, *codes: str) -> AssignedRole:
    return AssignedRole(Role(id=f"r-{name}", name=name), [_perm(c) for c in codes])


def _snapshot(roles=(), overrides=()) -> UserAccessSnapshot:
    return UserAccessSnapshot(
        user=User(id="u-1", username="alice", email="alice@example.com"),
        roles=list(roles),
        overrides=list(overrides),
    )


class TestResolveEffectivePermissions:
    def test_union_of_role_grants(self):
        snapshot = _snapshot(
            roles=[
                _role("Viewer", "clients.read", "accounts.read"),
                _role("Editor", "clients.read", "clients.update"),
            ]
        )
        assert resolve_effective_permissions(snapshot) == [
            "accounts.read",
            "clients.read",
            "clients.update",
        ]

    def test_deny_override_removes_role_grant(self):
        """Role grants users.read and users.delete; a deny on delete removes it."""
        snapshot = _snapshot(
            roles=[_role("Operator", "users.read", "users.delete")],
            overrides=[OverrideGrant(_perm("users.delete"), False)],
        )
        assert resolve_effective_permissions(snapshot) == ["users.read"]

    def test_allow_override_adds_code_without_role(self):
        snapshot = _snapshot(
            roles=[_role("Viewer", "clients.read")],
            overrides=[OverrideGrant(_perm("audit.read"), True)],
        )
        assert resolve_effective_permissions(snapshot) == ["audit.read", "clients.read"]

    def test_allow_override_for_already_granted_code_is_noop(self):
        snapshot = _snapshot(
            roles=[_role("Viewer", "clients.read")],
            overrides=[OverrideGrant(_perm("clients.read"), True)],
        )
        assert resolve_effective_permissions(snapshot) == ["clients.read"]

    def test_deny_for_ungranted_code_is_noop(self):
        snapshot = _snapshot(
            roles=[_role("Viewer", "clients.read")],
            overrides=[OverrideGrant(_perm("settings.manage"), False)],
        )
        assert resolve_effective_permissions(snapshot) == ["clients.read"]

    def test_no_roles_no_overrides(self):
        assert resolve_effective_permissions(_snapshot()) == []

    def test_result_independent_of_input_order(self):
        roles = [
            _role("A", "users.read", "roles.read"),
            _role("B", "users.read", "users.update"),
            _role("C", "instruments.read"),
        ]
        overrides = [
            OverrideGrant(_perm("roles.read"), False),
            OverrideGrant(_perm("audit.read"), True),
        ]
        results = {
            tuple(resolve_effective_permissions(_snapshot(r, o)))
            for r in itertools.permutations(roles)
            for o in itertools.permutations(overrides)
        }
        assert results == {("audit.read", "instruments.read", "users.read", "users.update")}

    def test_conflicting_overrides_deny_wins(self):
        """Allow and deny for one code cannot be stored, but resolve to deny if they were."""
        overrides = [
            OverrideGrant(_perm("clients.delete"), True),
            OverrideGrant(_perm("clients.delete"), False),
        ]
        for ordering in (overrides, list(reversed(overrides))):
            snapshot = _snapshot(roles=[_role("Ops", "clients.delete")], overrides=ordering)
            assert resolve_effective_permissions(snapshot) == []

    def test_codes_are_case_sensitive(self):
        snapshot = _snapshot(
            roles=[_role("Viewer", "users.read")],
            overrides=[OverrideGrant(_perm("Users.Read"), False)],
        )
        assert resolve_effective_permissions(snapshot) == ["users.read"]
