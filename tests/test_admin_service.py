"""Tests for user, role and permission administration."""

import pytest

from backoffice.service.admin import CONCURRENCY_MESSAGE, AdminService
from backoffice.service.errors import ConflictError, NotFoundError, ValidationError
from backoffice.service.permissions import resolve_effective_permissions
from backoffice.service.seed import ADMIN_ROLE_NAME, PERMISSION_CATALOG, seed_admin_role


@pytest.fixture
def admin(store, settings, clock, verifier):
    seed_admin_role(store, now=clock.now())
    return AdminService(store, settings, clock=clock, verifier=verifier)


@pytest.fixture
def viewer_role(admin, ctx):
    view = admin.create_role(ctx, name="Viewer", description="Read-only")
    return admin.set_role_permissions(ctx, view.role.id, ["clients.read", "accounts.read"]).role


@pytest.fixture
def alice(admin, ctx, viewer_role):
    return admin.create_user(
        ctx,
        username="alice",
        email="alice@example.com",
        password="Secret123",
        role_ids=[viewer_role.id],
    ).user


class TestSeed:
    def test_catalog(self, admin):
        codes = [p.code for p in admin.list_permissions()]
        assert len(codes) == len(PERMISSION_CATALOG) == 23
        assert "settings.manage" in codes

    def test_listing_ordered_by_group_then_code(self, admin):
        permissions = admin.list_permissions()
        keys = [(p.group, p.code) for p in permissions]
        assert keys == sorted(keys)

    def test_admin_role_holds_everything(self, admin, store):
        role = store.get_role_by_name(ADMIN_ROLE_NAME)
        assert role.is_system
        assert len(store.list_role_permissions(role.id)) == 23

    def test_seeding_is_idempotent(self, admin, store, clock):
        seed_admin_role(store, now=clock.now())
        assert len(store.list_permissions()) == 23
        assert len([r for r in store.list_roles() if r.name == ADMIN_ROLE_NAME]) == 1


class TestUsers:
    def test_create_and_get(self, admin, alice, store):
        view = admin.get_user(alice.id)
        assert view.roles == ["Viewer"]
        assert view.user.password_hash != "Secret123"
        assert admin.verifier.verify(view.user.password_hash, "Secret123").succeeded

    def test_duplicate_username(self, admin, alice, ctx):
        with pytest.raises(ConflictError) as exc:
            admin.create_user(ctx, username="alice", email="x@example.com", password="Secret123")
        assert exc.value.message == "Username 'alice' is already taken"

    def test_short_password(self, admin, ctx):
        with pytest.raises(ValidationError):
            admin.create_user(ctx, username="bob", email="b@example.com", password="12345")

    def test_unknown_role(self, admin, ctx, store):
        with pytest.raises(NotFoundError):
            admin.create_user(
                ctx, username="bob", email="b@example.com", password="Secret123", role_ids=["nope"]
            )
        assert store.get_user_by_username("bob") is None

    def test_update_with_current_version(self, admin, alice, ctx):
        view = admin.update_user(
            ctx,
            alice.id,
            email="alice@corp.example.com",
            full_name="Alice",
            is_active=False,
            role_ids=[],
            version=alice.version,
        )
        assert view.user.version == alice.version + 1
        assert view.user.is_active is False
        assert view.roles == []

    def test_update_with_stale_version(self, admin, alice, ctx, store):
        admin.update_user(
            ctx, alice.id, email=alice.email, full_name="One", is_active=True,
            role_ids=[], version=alice.version,
        )
        with pytest.raises(ConflictError) as exc:
            admin.update_user(
                ctx, alice.id, email=alice.email, full_name="Two", is_active=True,
                role_ids=[], version=alice.version,
            )
        assert exc.value.message == CONCURRENCY_MESSAGE
        assert store.get_user(alice.id).full_name == "One"

    def test_update_missing_user(self, admin, ctx):
        with pytest.raises(NotFoundError):
            admin.update_user(
                ctx, "missing", email="a@example.com", full_name=None, is_active=True,
                role_ids=[], version=1,
            )

    def test_delete(self, admin, alice, ctx):
        admin.delete_user(ctx, alice.id)
        with pytest.raises(NotFoundError):
            admin.get_user(alice.id)
        with pytest.raises(NotFoundError):
            admin.delete_user(ctx, alice.id)

    def test_override_upsert_keeps_one_row(self, admin, alice, ctx, store):
        admin.set_permission_override(ctx, alice.id, "clients.read", allowed=False)
        admin.set_permission_override(ctx, alice.id, "clients.read", allowed=True)
        overrides = store.list_permission_overrides(alice.id)
        assert [(o.permission.code, o.is_allowed) for o in overrides] == [("clients.read", True)]

    def test_overrides_feed_resolution(self, admin, alice, ctx, store):
        admin.set_permission_override(ctx, alice.id, "clients.read", allowed=False)
        admin.set_permission_override(ctx, alice.id, "audit.read", allowed=True)
        snapshot = store.load_access_snapshot(alice.id)
        assert resolve_effective_permissions(snapshot) == ["accounts.read", "audit.read"]

    def test_remove_override(self, admin, alice, ctx, store):
        admin.set_permission_override(ctx, alice.id, "clients.read", allowed=False)
        admin.remove_permission_override(ctx, alice.id, "clients.read")
        assert store.list_permission_overrides(alice.id) == []
        with pytest.raises(NotFoundError):
            admin.remove_permission_override(ctx, alice.id, "clients.read")

    def test_override_unknown_code(self, admin, alice, ctx):
        with pytest.raises(NotFoundError):
            admin.set_permission_override(ctx, alice.id, "reports.export", allowed=True)

    def test_set_data_scopes_replaces(self, admin, alice, ctx):
        admin.set_data_scopes(ctx, alice.id, [("Branch", "NYC"), ("Branch", "LDN")])
        scopes = admin.set_data_scopes(ctx, alice.id, [("Desk", "Rates"), ("Desk", "Rates")])
        assert [(s.scope_type, s.scope_value) for s in scopes] == [("Desk", "Rates")]


class TestRoles:
    def test_duplicate_name(self, admin, viewer_role, ctx):
        with pytest.raises(ConflictError):
            admin.create_role(ctx, name="Viewer")

    def test_update_and_version(self, admin, viewer_role, ctx):
        view = admin.update_role(
            ctx, viewer_role.id, name="Reader", description=None, version=viewer_role.version
        )
        assert view.role.name == "Reader"
        assert view.permissions == ["accounts.read", "clients.read"]
        with pytest.raises(ConflictError):
            admin.update_role(
                ctx, viewer_role.id, name="Reader2", description=None, version=viewer_role.version
            )

    def test_system_role_is_protected(self, admin, store, ctx):
        role = store.get_role_by_name(ADMIN_ROLE_NAME)
        with pytest.raises(ConflictError) as exc:
            admin.update_role(ctx, role.id, name="Root", description=None, version=role.version)
        assert exc.value.message == "Cannot modify a system role"
        with pytest.raises(ConflictError) as exc:
            admin.delete_role(ctx, role.id)
        assert exc.value.message == "Cannot delete a system role"

    def test_delete_role_drops_assignments(self, admin, viewer_role, alice, ctx):
        admin.delete_role(ctx, viewer_role.id)
        assert admin.get_user(alice.id).roles == []
        with pytest.raises(NotFoundError):
            admin.get_role(viewer_role.id)

    def test_set_permissions_unknown_code(self, admin, viewer_role, ctx):
        with pytest.raises(NotFoundError):
            admin.set_role_permissions(ctx, viewer_role.id, ["clients.read", "nope.nope"])
        assert admin.get_role(viewer_role.id).permissions == ["accounts.read", "clients.read"]

    def test_set_permissions_deduplicates(self, admin, viewer_role, ctx):
        view = admin.set_role_permissions(ctx, viewer_role.id, ["users.read", "users.read"])
        assert view.permissions == ["users.read"]
