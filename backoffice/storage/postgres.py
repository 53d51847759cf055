from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    User,
    UserAccessSnapshot,
)

_REQUIRED_TABLES = [
    "app_user",
    "app_role",
    "permission",
    "user_role",
    "role_permission",
    "user_permission_override",
    "data_scope",
    "refresh_token",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_uuid(value: str) -> bool:
    """Ids are uuid columns; anything else cannot match a row."""
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        full_name=row.get("full_name"),
        is_active=row.get("is_active", True),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
        version=row.get("version", 1),
    )


def _role_from_row(row: Dict[str, Any]) -> Role:
    return Role(
        id=str(row["id"]),
        name=row["name"],
        description=row.get("description"),
        is_system=row.get("is_system", False),
        created_at=row["created_at"],
        updated_at=row.get("updated_at"),
        version=row.get("version", 1),
    )


def _permission_from_row(row: Dict[str, Any]) -> Permission:
    return Permission(
        id=str(row["id"]),
        code=row["code"],
        name=row["name"],
        group=row["perm_group"],
        description=row.get("description"),
    )


def _scope_from_row(row: Dict[str, Any]) -> DataScope:
    return DataScope(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        scope_type=row["scope_type"],
        scope_value=row["scope_value"],
        created_at=row["created_at"],
    )


def _token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
        replaced_by_token_hash=row.get("replaced_by_token_hash"),
    )


class PostgresStore:
    """Postgres-backed store; every multi-write operation runs in one transaction."""

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self) -> None:
        """Install the tables from ``schema.sql``; statements are idempotent."""

        ddl = (Path(__file__).parent / "schema.sql").read_text()
        with self._connect() as conn, conn.transaction():
            conn.execute(ddl)
        self.logger.info("schema_applied")

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_admin.py --migrate to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

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
        user_id = str(uuid.uuid4())
        created = now or _utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, full_name, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, password_hash, full_name, is_active, created),
                ).fetchone()
                for role_id in dict.fromkeys(role_ids):
                    conn.execute(
                        "INSERT INTO user_role (user_id, role_id, assigned_at) VALUES (%s, %s, %s)",
                        (user_id, role_id, created),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                f"Username '{username}' is already taken", {"field": "username"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"role_ids": list(role_ids)})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_user ORDER BY username").fetchall()
        return [_user_from_row(row) for row in rows]

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
        if not _is_uuid(user_id):
            return None
        updated = now or _utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, full_name = %s, is_active = %s, updated_at = %s, version = version + 1
                    WHERE id = %s AND (%s::int IS NULL OR version = %s)
                    RETURNING *
                    """,
                    (email, full_name, is_active, updated, user_id, expected_version, expected_version),
                ).fetchone()
                if row:
                    if role_ids is not None:
                        self._replace_user_roles(conn, user_id, role_ids, updated)
                    return _user_from_row(row)
                exists = conn.execute(
                    "SELECT 1 FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"role_ids": list(role_ids or ())})
        if not exists:
            return None
        raise ConcurrencyConflict("user", user_id, expected_version)

    def set_password(
        self, user_id: str, password_hash: str, now: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET password_hash = %s, updated_at = %s, version = version + 1
                WHERE id = %s
                """,
                (password_hash, now or _utcnow(), user_id),
            )

    def delete_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        return result.rowcount > 0

    def set_user_roles(
        self, user_id: str, role_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                self._replace_user_roles(conn, user_id, role_ids, now or _utcnow())
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user or role not found", {"role_ids": list(role_ids)})

    def _replace_user_roles(
        self, conn, user_id: str, role_ids: Sequence[str], now: datetime
    ) -> None:
        wanted = list(dict.fromkeys(role_ids))
        conn.execute(
            "DELETE FROM user_role WHERE user_id = %s AND NOT (role_id = ANY(%s::uuid[]))",
            (user_id, wanted),
        )
        for role_id in wanted:
            conn.execute(
                """
                INSERT INTO user_role (user_id, role_id, assigned_at) VALUES (%s, %s, %s)
                ON CONFLICT (user_id, role_id) DO NOTHING
                """,
                (user_id, role_id, now),
            )

    def list_user_roles(self, user_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM app_role r
                JOIN user_role ur ON ur.role_id = r.id
                WHERE ur.user_id = %s
                ORDER BY r.name
                """,
                (user_id,),
            ).fetchall()
        return [_role_from_row(row) for row in rows]

    # -- roles -----------------------------------------------------------

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        *,
        is_system: bool = False,
        now: Optional[datetime] = None,
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_role (id, name, description, is_system, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, description, is_system, now or _utcnow()),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"Role '{name}' already exists", {"field": "name"})
        return _role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        if not _is_uuid(role_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE id = %s", (role_id,)).fetchone()
        return _role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_role WHERE name = %s", (name,)).fetchone()
        return _role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_role ORDER BY name").fetchall()
        return [_role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: str,
        *,
        expected_version: Optional[int],
        name: str,
        description: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Role]:
        if not _is_uuid(role_id):
            return None
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_role
                    SET name = %s, description = %s, updated_at = %s, version = version + 1
                    WHERE id = %s AND (%s::int IS NULL OR version = %s)
                    RETURNING *
                    """,
                    (name, description, now or _utcnow(), role_id, expected_version, expected_version),
                ).fetchone()
                if row:
                    return _role_from_row(row)
                exists = conn.execute(
                    "SELECT 1 FROM app_role WHERE id = %s", (role_id,)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(f"Role '{name}' already exists", {"field": "name"})
        if not exists:
            return None
        raise ConcurrencyConflict("role", role_id, expected_version)

    def delete_role(self, role_id: str) -> bool:
        if not _is_uuid(role_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_role WHERE id = %s", (role_id,))
        return result.rowcount > 0

    def set_role_permissions(
        self, role_id: str, permission_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None:
        wanted = list(dict.fromkeys(permission_ids))
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "SELECT 1 FROM app_role WHERE id = %s FOR UPDATE", (role_id,)
                )
                conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
                for permission_id in wanted:
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
                conn.execute(
                    "UPDATE app_role SET updated_at = %s, version = version + 1 WHERE id = %s",
                    (now or _utcnow(), role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or permission not found",
                {"role_id": role_id, "permission_ids": wanted},
            )

    def list_role_permissions(self, role_id: str) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                ORDER BY p.code
                """,
                (role_id,),
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    # -- permissions -----------------------------------------------------

    def create_permission(
        self, code: str, name: str, group: str, description: Optional[str] = None
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (id, code, name, perm_group, description)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), code, name, group, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                f"Permission '{code}' already exists", {"field": "code"}
            )
        return _permission_from_row(row)

    def get_permission_by_code(self, code: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE code = %s", (code,)
            ).fetchone()
        return _permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY perm_group, code"
            ).fetchall()
        return [_permission_from_row(row) for row in rows]

    # -- overrides and scopes -------------------------------------------

    def set_permission_override(
        self,
        user_id: str,
        permission_id: str,
        is_allowed: bool,
        now: Optional[datetime] = None,
    ) -> PermissionOverride:
        created = now or _utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_permission_override (user_id, permission_id, is_allowed, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, permission_id)
                    DO UPDATE SET is_allowed = EXCLUDED.is_allowed, created_at = EXCLUDED.created_at
                    """,
                    (user_id, permission_id, is_allowed, created),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or permission not found",
                {"user_id": user_id, "permission_id": permission_id},
            )
        return PermissionOverride(user_id, permission_id, is_allowed, created_at=created)

    def remove_permission_override(self, user_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_permission_override WHERE user_id = %s AND permission_id = %s",
                (user_id, permission_id),
            )
        return result.rowcount > 0

    def list_permission_overrides(self, user_id: str) -> List[OverrideGrant]:
        with self._connect() as conn:
            return self._overrides(conn, user_id)

    def _overrides(self, conn, user_id: str) -> List[OverrideGrant]:
        rows = conn.execute(
            """
            SELECT p.*, o.is_allowed FROM user_permission_override o
            JOIN permission p ON p.id = o.permission_id
            WHERE o.user_id = %s
            """,
            (user_id,),
        ).fetchall()
        return [OverrideGrant(_permission_from_row(row), row["is_allowed"]) for row in rows]

    def set_data_scopes(
        self,
        user_id: str,
        scopes: Sequence[Tuple[str, str]],
        now: Optional[datetime] = None,
    ) -> List[DataScope]:
        created = now or _utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM data_scope WHERE user_id = %s", (user_id,))
                for scope_type, scope_value in dict.fromkeys(scopes):
                    conn.execute(
                        """
                        INSERT INTO data_scope (id, user_id, scope_type, scope_value, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (str(uuid.uuid4()), user_id, scope_type, scope_value, created),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self.list_data_scopes(user_id)

    def list_data_scopes(self, user_id: str) -> List[DataScope]:
        with self._connect() as conn:
            return self._scopes(conn, user_id)

    def _scopes(self, conn, user_id: str) -> List[DataScope]:
        rows = conn.execute(
            "SELECT * FROM data_scope WHERE user_id = %s ORDER BY scope_type, scope_value",
            (user_id,),
        ).fetchall()
        return [_scope_from_row(row) for row in rows]

    def load_access_snapshot(self, user_id: str) -> Optional[UserAccessSnapshot]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn, conn.transaction():
            user_row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            if not user_row:
                return None
            grant_rows = conn.execute(
                """
                SELECT r.id AS role_id, r.name AS role_name, r.description AS role_description,
                       r.is_system, r.created_at AS role_created_at, r.updated_at AS role_updated_at,
                       r.version AS role_version, p.*
                FROM user_role ur
                JOIN app_role r ON r.id = ur.role_id
                LEFT JOIN role_permission rp ON rp.role_id = r.id
                LEFT JOIN permission p ON p.id = rp.permission_id
                WHERE ur.user_id = %s
                ORDER BY r.name, p.code
                """,
                (user_id,),
            ).fetchall()
            overrides = self._overrides(conn, user_id)
            scopes = self._scopes(conn, user_id)

        roles: Dict[str, AssignedRole] = {}
        for row in grant_rows:
            role_id = str(row["role_id"])
            assigned = roles.get(role_id)
            if assigned is None:
                assigned = AssignedRole(
                    Role(
                        id=role_id,
                        name=row["role_name"],
                        description=row.get("role_description"),
                        is_system=row.get("is_system", False),
                        created_at=row["role_created_at"],
                        updated_at=row.get("role_updated_at"),
                        version=row.get("role_version", 1),
                    )
                )
                roles[role_id] = assigned
            if row.get("code") is not None:
                assigned.permissions.append(_permission_from_row(row))
        return UserAccessSnapshot(
            user=_user_from_row(user_row),
            roles=list(roles.values()),
            overrides=overrides,
            scopes=scopes,
        )

    # -- refresh tokens --------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision")
        return record

    def _insert_refresh_token(self, conn, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, token_hash, expires_at, created_at, revoked_at, replaced_by_token_hash)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.user_id,
                record.token_hash,
                record.expires_at,
                record.created_at,
                record.revoked_at,
                record.replaced_by_token_hash,
            ),
        )

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _token_from_row(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_token_from_row(row) for row in rows]

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn, conn.transaction():
            # serializes with in-flight rotations for the same user
            conn.execute("SELECT 1 FROM app_user WHERE id = %s FOR UPDATE", (user_id,))
            result = conn.execute(
                "UPDATE refresh_token SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (now, user_id),
            )
            return result.rowcount

    def rotate_refresh_token(
        self, old_token_hash: str, new_record: RefreshTokenRecord, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "SELECT 1 FROM app_user WHERE id = %s FOR UPDATE",
                    (new_record.user_id,),
                )
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked_at = %s, replaced_by_token_hash = %s
                    WHERE token_hash = %s AND revoked_at IS NULL AND expires_at > %s
                    RETURNING id
                    """,
                    (now, new_record.token_hash, old_token_hash, now),
                ).fetchone()
                if not row:
                    return False
                self._insert_refresh_token(conn, new_record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision")
        return True


__all__ = ["PostgresStore"]
