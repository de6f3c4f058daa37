from contextlib import contextmanager
from dataclasses import asdict
from types import SimpleNamespace

import pytest
from psycopg import errors

from fineguard.storage.errors import ConstraintViolation, IdentityNotFound
from fineguard.storage.models import IdentityRecord, Role, TokenKind
from fineguard.storage.postgres import (
    _IDENTITY_COLUMNS,
    PostgresIdentityStore,
    _identity_from_row,
    _identity_params,
)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _EmailTaken(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="identity_email_key")


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, rows=None, fail_with=None):
        self.rows = rows or []
        self.fail_with = fail_with
        self.statements = []
        self.rolled_back = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def transaction(self):
        try:
            yield
        except Exception:
            self.rolled_back = True
            raise

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.fail_with is not None and not sql.lstrip().startswith("SELECT"):
            raise self.fail_with
        if sql.lstrip().startswith("SELECT"):
            return FakeCursor(self.rows)
        return FakeCursor([])


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


def _row(record):
    row = asdict(record)
    row["role"] = record.role.value
    return row


def _store(conn):
    return PostgresIdentityStore("postgresql://unit-test", pool=FakePool(conn))


@pytest.fixture
def record():
    return IdentityRecord.new(
        "carlo@example.ph",
        "+639241234567",
        "$argon2id$stub",
        role=Role.ENFORCER,
        driver_license_number="E12-34-567890",
    )


def test_row_round_trip(record):
    params = _identity_params(record)
    assert len(params) == len(_IDENTITY_COLUMNS)
    assert params[_IDENTITY_COLUMNS.index("role")] == "enforcer"

    restored = _identity_from_row(_row(record))
    assert restored == record


def test_constructor_accepts_injected_pool():
    store = PostgresIdentityStore("postgresql://unit-test", pool=DummyPool())
    with pytest.raises(AssertionError):
        store.get_identity("anything")


def test_create_identity_maps_unique_violation(record):
    store = _store(FakeConnection(fail_with=_EmailTaken("duplicate key")))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_identity(record)
    assert excinfo.value.detail == {"field": "email"}


def test_lookup_normalizes_email(record):
    conn = FakeConnection(rows=[_row(record)])
    found = _store(conn).get_identity_by_email("  CARLO@Example.PH ")

    assert found.id == record.id
    sql, params = conn.statements[-1]
    assert "email = %s" in sql
    assert params == ("carlo@example.ph",)


@pytest.mark.parametrize("kind", list(TokenKind))
def test_token_lookup_uses_kind_column(kind):
    conn = FakeConnection()
    assert _store(conn).find_identity_by_token(kind, "digest") is None
    sql, params = conn.statements[-1]
    assert f"{kind.value}_token_hash = %s" in sql
    assert params == ("digest",)


def test_update_locks_row_and_writes_back(record):
    conn = FakeConnection(rows=[_row(record)])

    def bump(r):
        r.failed_attempts += 1
        return r.failed_attempts

    assert _store(conn).update_identity(record.id, bump) == 1
    select_sql, _ = conn.statements[0]
    update_sql, update_params = conn.statements[1]
    assert "FOR UPDATE" in select_sql
    assert update_sql.startswith("UPDATE identity SET")
    assert update_params[_IDENTITY_COLUMNS.index("failed_attempts")] == 1
    assert update_params[-1] == record.id


def test_update_rolls_back_when_mutation_raises(record):
    conn = FakeConnection(rows=[_row(record)])

    def explode(r):
        r.failed_attempts = 99
        raise ValueError("nope")

    with pytest.raises(ValueError):
        _store(conn).update_identity(record.id, explode)
    assert conn.rolled_back is True
    assert all(not sql.startswith("UPDATE") for sql, _ in conn.statements)


def test_update_missing_identity(record):
    with pytest.raises(IdentityNotFound):
        _store(FakeConnection(rows=[])).update_identity(record.id, lambda r: None)


def test_close_closes_pool():
    pool = FakePool(FakeConnection())
    PostgresIdentityStore("postgresql://unit-test", pool=pool).close()
    assert pool.closed is True
