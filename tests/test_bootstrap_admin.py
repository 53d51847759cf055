"""Tests for the admin bootstrap script against the in-memory store."""

import importlib.util
from pathlib import Path

import pytest

from backoffice.service.runtime import get_runtime
from backoffice.service.seed import ADMIN_ROLE_NAME

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _role_names(user_id):
    return [r.name for r in get_runtime().store.list_user_roles(user_id)]


def test_creates_admin(bootstrap):
    result = bootstrap.bootstrap_admin("admin", "admin@example.com", "AdminPass123")
    assert result["status"] == "created"
    assert _role_names(result["user_id"]) == [ADMIN_ROLE_NAME]


def test_second_run_is_a_no_op(bootstrap):
    bootstrap.bootstrap_admin("admin", "admin@example.com", "AdminPass123")
    result = bootstrap.bootstrap_admin("admin", "admin@example.com", "AdminPass123")
    assert result["status"] == "already_admin"


def test_promotes_existing_user_keeping_roles(bootstrap, ctx):
    runtime = get_runtime()
    clerk_role = runtime.admin.create_role(ctx, name="Clerk").role
    user = runtime.admin.create_user(
        ctx,
        username="ops",
        email="ops@example.com",
        password="OpsPass123",
        role_ids=[clerk_role.id],
    ).user

    result = bootstrap.bootstrap_admin("ops", "ops@example.com", "ignored")
    assert result["status"] == "promoted"
    assert sorted(_role_names(user.id)) == [ADMIN_ROLE_NAME, "Clerk"]


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap.bootstrap_admin("admin", "admin@example.com", "AdminPass123", dry_run=True)
    assert result == {"user_id": None, "username": "admin", "status": "dry_run"}
    assert get_runtime().store.get_user_by_username("admin") is None
