from __future__ import annotations

from datetime import datetime
from typing import Optional, Union

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from classportal.logging import get_logger
from classportal.storage.errors import ConstraintViolation, StoreWriteFailed
from classportal.storage.models import (
    AuthenticatedRow,
    InvitationToken,
    Profile,
    ResetToken,
    Role,
    TokenKind,
    normalize_email,
)

TokenRecord = Union[ResetToken, InvitationToken]

_TOKEN_TABLES = {
    TokenKind.RESET: "password_reset_tokens",
    TokenKind.INVITATION: "user_invitations",
}


class PostgresStore:
    """Postgres-backed token and credential store.

    Token rows are plain table operations; credential changes go through the
    SQL procedures in ``sql/001_auth.sql`` so password hashes never leave the
    database.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure tables exist before serving requests."""

        required_tables = [
            "profiles",
            "user_credentials",
            "user_sessions",
            "password_reset_tokens",
            "user_invitations",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            self.logger.error("postgres_schema_missing", tables=sorted(missing_tables))
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _row_to_profile(row: dict) -> Profile:
        return Profile(
            id=str(row["id"]),
            email=row["email"],
            full_name=row.get("full_name") or "",
            role=Role(row.get("role", Role.STUDENT.value)),
            avatar_url=row.get("avatar_url"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_token(kind: TokenKind, row: dict) -> TokenRecord:
        common = dict(
            id=str(row["id"]),
            token=row["token"],
            email=row["email"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row["created_at"],
        )
        if kind is TokenKind.INVITATION:
            created_by = row.get("created_by")
            return InvitationToken(
                full_name=row["full_name"],
                role=Role(row["role"]),
                created_by=str(created_by) if created_by else None,
                **common,
            )
        return ResetToken(**common)

    # profiles
    def create_profile(
        self,
        email: str,
        full_name: str,
        role: Role | str = Role.STUDENT,
        *,
        password: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO profiles (email, full_name, role, avatar_url)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (normalize_email(email), full_name, Role(role).value, avatar_url),
                ).fetchone()
                if password is not None:
                    conn.execute(
                        """
                        INSERT INTO user_credentials (user_id, password_hash)
                        VALUES (%s, crypt(%s, gen_salt('bf')))
                        """,
                        (row["id"], password),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.Error as exc:
            raise StoreWriteFailed("failed to create profile") from exc
        return self._row_to_profile(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM profiles WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            # not a uuid, so no such profile
            return None
        if not row:
            return None
        return self._row_to_profile(row)

    def get_profile_by_email(self, email: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return self._row_to_profile(row)

    def update_profile_role(self, user_id: str, role: Role | str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE profiles SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_profile(row)

    def delete_profile(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM profiles WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # credential procedures
    def authenticate(self, email: str, password: str) -> Optional[AuthenticatedRow]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM authenticate_user(%s, %s)", (email, password)
            ).fetchone()
        if not row:
            return None
        return AuthenticatedRow(
            user_id=str(row["user_id"]),
            email=row["email"],
            full_name=row["full_name"],
            role=Role(row["role"]),
            token=row["token"],
        )

    def logout(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("SELECT logout_user(%s)", (token,))

    def reset_password(self, email: str, new_password: str) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT reset_user_password(%s, %s) AS ok", (email, new_password)
                ).fetchone()
        except errors.Error as exc:
            raise StoreWriteFailed("failed to reset password") from exc
        return bool(row and row["ok"])

    def create_user_from_invitation(
        self, email: str, full_name: str, role: Role | str, password: str
    ) -> str:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT create_user_from_invitation(%s, %s, %s, %s) AS user_id",
                    (email, full_name, Role(role).value, password),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.Error as exc:
            raise StoreWriteFailed("failed to create user") from exc
        return str(row["user_id"])

    # tokens
    def insert_token(self, kind: TokenKind, record: TokenRecord) -> TokenRecord:
        kind = TokenKind(kind)
        try:
            with self._connect() as conn:
                if kind is TokenKind.INVITATION:
                    conn.execute(
                        """
                        INSERT INTO user_invitations
                            (id, token, email, full_name, role, expires_at, used, created_by, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            record.id,
                            record.token,
                            record.email,
                            record.full_name,
                            record.role.value,
                            record.expires_at,
                            record.used,
                            record.created_by,
                            record.created_at,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO password_reset_tokens
                            (id, token, email, expires_at, used, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            record.id,
                            record.token,
                            record.email,
                            record.expires_at,
                            record.used,
                            record.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        except errors.Error as exc:
            raise StoreWriteFailed(f"failed to insert {kind.value} token") from exc
        return record

    def find_valid_token(
        self, kind: TokenKind, token: str, now: datetime
    ) -> Optional[TokenRecord]:
        kind = TokenKind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {_TOKEN_TABLES[kind]} "
                "WHERE token = %s AND used = false AND expires_at > %s",
                (token, now),
            ).fetchone()
        if not row:
            return None
        return self._row_to_token(kind, row)

    def mark_token_used(self, kind: TokenKind, token: str) -> bool:
        kind = TokenKind(kind)
        try:
            with self._connect() as conn:
                result = conn.execute(
                    f"UPDATE {_TOKEN_TABLES[kind]} SET used = true "
                    "WHERE token = %s AND used = false",
                    (token,),
                )
                return result.rowcount > 0
        except errors.Error as exc:
            raise StoreWriteFailed(f"failed to consume {kind.value} token") from exc

    def get_token(self, kind: TokenKind, token: str) -> Optional[TokenRecord]:
        kind = TokenKind(kind)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {_TOKEN_TABLES[kind]} WHERE token = %s", (token,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_token(kind, row)
