from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from zajel_auth.logging import get_logger
from zajel_auth.storage.common import (
    generate_username,
    generate_uuid,
    identity_from_row,
    normalize_email,
)
from zajel_auth.storage.errors import ConstraintViolation
from zajel_auth.storage.models import MUTABLE_IDENTITY_FIELDS, Identity, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_identity (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        username TEXT,
        phone_number TEXT,
        pending_phone TEXT,
        pending_email TEXT,
        verification_code_hash TEXT,
        pending_email_code_hash TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        phone_verified BOOLEAN NOT NULL DEFAULT false,
        google_id TEXT,
        profile_picture TEXT NOT NULL DEFAULT '',
        email_attempts INTEGER NOT NULL DEFAULT 0,
        email_last_attempt_at TIMESTAMPTZ,
        phone_attempts INTEGER NOT NULL DEFAULT 0,
        phone_last_attempt_at TIMESTAMPTZ,
        refresh_token TEXT,
        reset_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_identity_email_key UNIQUE (email),
        CONSTRAINT app_identity_username_key UNIQUE (username),
        CONSTRAINT app_identity_phone_number_key UNIQUE (phone_number),
        CONSTRAINT app_identity_pending_email_key UNIQUE (pending_email),
        CONSTRAINT app_identity_google_id_key UNIQUE (google_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_credential (
        identity_id UUID PRIMARY KEY REFERENCES app_identity(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS revoked_token (
        token_digest TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS revoked_token_expires_at_idx ON revoked_token (expires_at)",
)

_CONSTRAINT_FIELDS = {
    "app_identity_email_key": "email",
    "app_identity_username_key": "username",
    "app_identity_phone_number_key": "phone_number",
    "app_identity_pending_email_key": "pending_email",
    "app_identity_google_id_key": "google_id",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
    label = "email" if field == "pending_email" else field
    return ConstraintViolation(f"{label} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        required_tables = ["app_identity", "identity_credential", "revoked_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # identities
    def create_identity(
        self,
        name: str,
        email: str,
        *,
        username: Optional[str] = None,
        google_id: Optional[str] = None,
        email_verified: bool = False,
        verification_code_hash: Optional[str] = None,
    ) -> Identity:
        normalized = normalize_email(email)
        if self.email_in_use(normalized):
            raise ConstraintViolation("email already exists", {"field": "email"})
        identity_id = generate_uuid()
        username = username or generate_username(name, self.username_in_use)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_identity (id, name, email, username, google_id, email_verified, verification_code_hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity_id,
                        name,
                        normalized,
                        username,
                        google_id,
                        email_verified,
                        verification_code_hash,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return identity_from_row(row)

    def _fetch_one(self, where: str, params: tuple) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_identity WHERE {where}", params
            ).fetchone()
        if not row:
            return None
        return identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        return self._fetch_one("id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        return self._fetch_one("email = %s", (normalize_email(email),))

    def get_identity_by_phone(self, phone_number: str) -> Optional[Identity]:
        return self._fetch_one("phone_number = %s", (phone_number,))

    def get_identity_by_username(self, username: str) -> Optional[Identity]:
        return self._fetch_one("username = %s", (username,))

    def get_identity_by_google_id(self, google_id: str) -> Optional[Identity]:
        return self._fetch_one("google_id = %s", (google_id,))

    def _exists(self, where: str, params: tuple, exclude_id: Optional[str]) -> bool:
        query = f"SELECT 1 AS hit FROM app_identity WHERE ({where})"
        if exclude_id:
            query += " AND id <> %s"
            params = params + (exclude_id,)
        with self._connect() as conn:
            row = conn.execute(query + " LIMIT 1", params).fetchone()
        return bool(row)

    def email_in_use(self, email: str, exclude_id: Optional[str] = None) -> bool:
        normalized = normalize_email(email)
        return self._exists(
            "email = %s OR pending_email = %s", (normalized, normalized), exclude_id
        )

    def phone_in_use(self, phone_number: str, exclude_id: Optional[str] = None) -> bool:
        return self._exists("phone_number = %s", (phone_number,), exclude_id)

    def username_in_use(self, username: str, exclude_id: Optional[str] = None) -> bool:
        return self._exists("username = %s", (username,), exclude_id)

    def update_identity(self, identity_id: str, **fields: Any) -> Optional[Identity]:
        unknown = set(fields) - MUTABLE_IDENTITY_FIELDS
        if unknown:
            raise ValueError(f"unknown identity fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_identity(identity_id)
        if fields.get("email"):
            fields["email"] = normalize_email(fields["email"])
        if fields.get("pending_email"):
            fields["pending_email"] = normalize_email(fields["pending_email"])
            if self._exists("email = %s", (fields["pending_email"],), identity_id):
                raise ConstraintViolation("email already exists", {"field": "pending_email"})
        # Column names come from MUTABLE_IDENTITY_FIELDS only
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = tuple(fields.values()) + (identity_id,)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_identity SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        if not row:
            return None
        return identity_from_row(row)

    def delete_identity(self, identity_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_identity WHERE id = %s", (identity_id,))
            return result.rowcount > 0

    # credentials
    def save_password(
        self, identity_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO identity_credential (identity_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (identity_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (identity_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "identity not found for credentials", {"identity_id": identity_id}
            ) from exc

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM identity_credential WHERE identity_id = %s",
                (identity_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # revoked tokens
    def revoke_token(
        self, token_digest: str, expires_at: datetime, *, now: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM revoked_token WHERE expires_at <= %s", (now or utcnow(),))
            conn.execute(
                """
                INSERT INTO revoked_token (token_digest, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token_digest) DO UPDATE
                SET expires_at = GREATEST(revoked_token.expires_at, EXCLUDED.expires_at)
                """,
                (token_digest, expires_at),
            )

    def is_token_revoked(self, token_digest: str, *, now: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM revoked_token WHERE token_digest = %s AND expires_at > %s",
                (token_digest, now or utcnow()),
            ).fetchone()
        return bool(row)

    def purge_revoked_tokens(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM revoked_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount
