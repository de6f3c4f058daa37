from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fineguard.logging import get_logger
from fineguard.storage.errors import ConstraintViolation, IdentityNotFound
from fineguard.storage.models import IdentityRecord, Role, TokenKind

T = TypeVar("T")

# Column order used for INSERT and UPDATE; ``id`` is handled separately.
_IDENTITY_COLUMNS = (
    "email",
    "phone_number",
    "driver_license_number",
    "first_name",
    "last_name",
    "password_hash",
    "role",
    "is_active",
    "email_verified",
    "phone_verified",
    "mfa_enabled",
    "mfa_secret",
    "mfa_pending_secret",
    "mfa_last_step",
    "failed_attempts",
    "locked_until",
    "last_login_at",
    "reset_token_hash",
    "reset_token_expires_at",
    "verification_token_hash",
    "verification_token_expires_at",
    "created_at",
    "updated_at",
)

# Unique constraint name -> identity field reported in ConstraintViolation
_CONSTRAINT_FIELDS = {
    "identity_email_key": "email",
    "identity_phone_number_key": "phone_number",
    "identity_driver_license_number_key": "driver_license_number",
    "identity_pkey": "id",
}

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS identity (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    phone_number TEXT NOT NULL,
    driver_license_number TEXT,
    first_name TEXT,
    last_name TEXT,
    password_hash TEXT NOT NULL CHECK (password_hash <> ''),
    role TEXT NOT NULL CHECK (role IN ('citizen', 'enforcer', 'admin')),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
    mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    mfa_secret TEXT,
    mfa_pending_secret TEXT,
    mfa_last_step BIGINT,
    failed_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    reset_token_hash TEXT,
    reset_token_expires_at TIMESTAMPTZ,
    verification_token_hash TEXT,
    verification_token_expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ,
    CONSTRAINT identity_email_key UNIQUE (email),
    CONSTRAINT identity_phone_number_key UNIQUE (phone_number),
    CONSTRAINT identity_driver_license_number_key UNIQUE (driver_license_number),
    CONSTRAINT identity_mfa_secret_enabled CHECK ((mfa_secret IS NOT NULL) = mfa_enabled)
);
CREATE INDEX IF NOT EXISTS identity_reset_token_idx ON identity (reset_token_hash)
    WHERE reset_token_hash IS NOT NULL;
CREATE INDEX IF NOT EXISTS identity_verification_token_idx ON identity (verification_token_hash)
    WHERE verification_token_hash IS NOT NULL;
"""


def _identity_from_row(row: Dict[str, Any]) -> IdentityRecord:
    values = {column: row.get(column) for column in _IDENTITY_COLUMNS}
    values["role"] = Role(values["role"])
    values["failed_attempts"] = int(values["failed_attempts"] or 0)
    return IdentityRecord(id=row["id"], **values)


def _identity_params(record: IdentityRecord) -> list[Any]:
    params: list[Any] = []
    for column in _IDENTITY_COLUMNS:
        value = getattr(record, column)
        if isinstance(value, Role):
            value = value.value
        params.append(value)
    return params


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresIdentityStore:
    """Identity persistence on PostgreSQL.

    ``update_identity`` holds a row lock (``SELECT ... FOR UPDATE``) for the
    duration of the mutation, so concurrent writers on the same identity
    serialize while other identities proceed.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the ``identity`` table and token indexes if missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA_SQL)
        self.logger.info("identity_schema_ready")

    def create_identity(self, record: IdentityRecord) -> IdentityRecord:
        columns = ", ".join(("id",) + _IDENTITY_COLUMNS)
        placeholders = ", ".join(["%s"] * (len(_IDENTITY_COLUMNS) + 1))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO identity ({columns}) VALUES ({placeholders})",
                    [record.id, *_identity_params(record)],
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return record

    def _fetch_one(self, where: str, params: tuple) -> Optional[IdentityRecord]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM identity WHERE {where}", params).fetchone()
        return _identity_from_row(row) if row else None

    def get_identity(self, identity_id: str) -> Optional[IdentityRecord]:
        return self._fetch_one("id = %s", (identity_id,))

    def get_identity_by_email(self, email: str) -> Optional[IdentityRecord]:
        return self._fetch_one("email = %s", (email.strip().lower(),))

    def get_identity_by_phone(self, phone_number: str) -> Optional[IdentityRecord]:
        return self._fetch_one("phone_number = %s", (phone_number.strip(),))

    def get_identity_by_license(self, license_number: str) -> Optional[IdentityRecord]:
        return self._fetch_one("driver_license_number = %s", (license_number.strip(),))

    def find_identity_by_token(
        self, kind: TokenKind, token_hash: str
    ) -> Optional[IdentityRecord]:
        # Column name comes from the closed TokenKind enum, never from input
        return self._fetch_one(f"{kind.hash_field} = %s", (token_hash,))

    def update_identity(
        self, identity_id: str, mutate: Callable[[IdentityRecord], T]
    ) -> T:
        """Lock the row, apply ``mutate`` and write back in one transaction.

        If ``mutate`` raises, the transaction rolls back and nothing is written.
        """
        assignments = ", ".join(f"{column} = %s" for column in _IDENTITY_COLUMNS)
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        "SELECT * FROM identity WHERE id = %s FOR UPDATE", (identity_id,)
                    ).fetchone()
                    if not row:
                        raise IdentityNotFound(identity_id)
                    record = _identity_from_row(row)
                    result = mutate(record)
                    record.updated_at = datetime.now(timezone.utc)
                    conn.execute(
                        f"UPDATE identity SET {assignments} WHERE id = %s",
                        [*_identity_params(record), identity_id],
                    )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return result

    def list_identities(self) -> list[IdentityRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM identity ORDER BY created_at").fetchall()
        return [_identity_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
