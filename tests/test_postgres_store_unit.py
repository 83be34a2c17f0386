from contextlib import contextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
from psycopg import errors

from inkwell.logging import get_logger
from inkwell.storage.errors import ConstraintViolation, StorageUnavailable
from inkwell.storage.models import SessionRecord, utcnow
from inkwell.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, results=None, fail_on=None):
        self.results = list(results or [])
        self.fail_on = fail_on or {}
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        for fragment, exc in self.fail_on.items():
            if fragment in sql:
                raise exc
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


class _UniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint):
        super().__init__("duplicate key")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _session(token_hash="new"):
    return SessionRecord.new("user-1", token_hash, utcnow() + timedelta(hours=1))


def test_dummy_pool_guards_against_real_access():
    store = _store(DummyPool())
    with pytest.raises(AssertionError):
        store.count_users()


def test_operational_error_becomes_storage_unavailable():
    store = _store(FakePool(error=errors.OperationalError("connection refused")))
    with pytest.raises(StorageUnavailable) as excinfo:
        store.get_user("user-1")
    assert excinfo.value.backend == "postgres"


def test_admin_create_claims_sentinel_first():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    account = store.create_user("root", "root@example.com", "Root", "hash", role="admin")
    assert account.role == "admin"
    assert conn.statements[0][0].startswith("INSERT INTO admin_bootstrap")
    assert conn.statements[0][1] == (account.id,)
    assert conn.statements[1][0].startswith("INSERT INTO app_account")


def test_user_create_skips_sentinel():
    conn = FakeConnection()
    store = _store(FakePool(conn))
    store.create_user("bob", "bob@example.com", "Bob", "hash")
    assert len(conn.statements) == 1


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("app_account_username_key", "username"),
        ("app_account_email_key", "email"),
        ("admin_bootstrap_pkey", "admin_bootstrap"),
    ],
)
def test_unique_violation_names_field(constraint, field):
    fragment = "admin_bootstrap" if field == "admin_bootstrap" else "app_account"
    conn = FakeConnection(fail_on={fragment: _UniqueViolation(constraint)})
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("root", "root@example.com", "Root", "hash", role="admin")
    assert excinfo.value.field == field


def test_replace_session_reports_lost_race():
    conn = FakeConnection(results=[FakeResult(row=None)])
    store = _store(FakePool(conn))
    assert store.replace_session("old", _session()) is False
    sql, params = conn.statements[0]
    assert sql.startswith("WITH retired AS ( DELETE FROM auth_refresh_session")
    assert params[0] == "old"
    assert params[1] == "new"


def test_replace_session_success():
    conn = FakeConnection(results=[FakeResult(row={"refresh_token_hash": "new"})])
    store = _store(FakePool(conn))
    assert store.replace_session("old", _session()) is True


def test_increment_attempt_count():
    conn = FakeConnection(results=[FakeResult(row={"attempt_count": 3}), FakeResult(row=None)])
    store = _store(FakePool(conn))
    assert store.increment_attempt_count("a@example.com") == 3
    assert store.increment_attempt_count("a@example.com") is None


def test_delete_tokens_by_user_id_counts_rows():
    conn = FakeConnection(results=[FakeResult(rowcount=2)])
    store = _store(FakePool(conn))
    assert store.delete_tokens_by_user_id("user-1") == 2


def test_consume_reset_grant_deletes_and_returns():
    expires = utcnow() + timedelta(minutes=10)
    conn = FakeConnection(
        results=[
            FakeResult(row={"token_hash": "g", "email": "a@example.com", "expires_at": expires}),
        ]
    )
    store = _store(FakePool(conn))
    grant = store.consume_reset_grant("g")
    assert grant.email == "a@example.com"
    assert conn.statements[0][0].startswith("DELETE FROM password_reset_grant")


def test_session_for_missing_user():
    conn = FakeConnection(
        fail_on={"auth_refresh_session": errors.ForeignKeyViolation("fk")}
    )
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation):
        store.store_token(_session())


def test_get_user_by_login_matches_username_or_email():
    row = {
        "id": "user-1",
        "username": "alice",
        "email": "alice@example.com",
        "display_name": "Alice",
        "password_hash": "hash",
        "role": "user",
        "is_verified": False,
        "created_at": utcnow(),
    }
    conn = FakeConnection(results=[FakeResult(row=row)])
    store = _store(FakePool(conn))
    account = store.get_user_by_login(" Alice@Example.com")
    assert account.username == "alice"
    assert conn.statements[0][1] == (" Alice@Example.com", "alice@example.com")
