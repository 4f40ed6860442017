import contextlib
import uuid
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors, sql
from psycopg_pool import PoolTimeout

from authkernel.logging import get_logger
from authkernel.storage.errors import DuplicateEmail, StoreUnavailable, UserNotFound
from authkernel.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((query, params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results, connect_error=None):
        self.conn = FakeConnection(results)
        self.connect_error = connect_error
        self.closed = False

    @contextlib.contextmanager
    def connection(self):
        if self.connect_error is not None:
            raise self.connect_error
        yield self.conn

    def close(self):
        self.closed = True


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://user:pw@db/auth"
    store.table_name = "auth_user"
    store.table = sql.Identifier("auth_user")
    store.logger = get_logger("test")
    return store


def _row(email="a@example.com", credential="cred"):
    return {
        "id": uuid.uuid4(),
        "email": email,
        "password_credential": credential,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "updated_at": None,
    }


def test_create_user_returns_inserted_row():
    row = _row()
    pool = FakePool(FakeCursor(row=row))
    user = _store(pool).create_user("a@example.com", "cred")

    assert user.id == str(row["id"])
    assert user.email == "a@example.com"
    _, params = pool.conn.executed[0]
    assert params[1:] == ("a@example.com", "cred")
    uuid.UUID(params[0])


def test_unique_violation_maps_to_duplicate_email():
    pool = FakePool(errors.UniqueViolation("duplicate key value violates unique constraint"))
    with pytest.raises(DuplicateEmail) as exc_info:
        _store(pool).create_user("a@example.com", "cred")
    assert "duplicate key" not in exc_info.value.message


def test_get_user_by_email():
    pool = FakePool(FakeCursor(row=_row(credential="stored")))
    user = _store(pool).get_user_by_email("a@example.com")

    assert user.password_credential == "stored"
    assert pool.conn.executed[0][1] == ("a@example.com",)


def test_get_user_by_email_missing():
    pool = FakePool(FakeCursor(row=None))
    with pytest.raises(UserNotFound):
        _store(pool).get_user_by_email("ghost@example.com")


def test_set_user_password_keyed_by_email():
    pool = FakePool(FakeCursor(rowcount=1))
    _store(pool).set_user_password("a@example.com", "new-cred")
    assert pool.conn.executed[0][1] == ("new-cred", "a@example.com")


def test_set_user_password_missing_user():
    pool = FakePool(FakeCursor(rowcount=0))
    with pytest.raises(UserNotFound):
        _store(pool).set_user_password("ghost@example.com", "new-cred")


@pytest.mark.parametrize(
    "error",
    [
        PoolTimeout("couldn't get a connection after 5.00 sec"),
        psycopg.OperationalError("connection to server at /var/run/postgresql failed"),
    ],
)
def test_connection_failures_are_store_unavailable(error):
    pool = FakePool(connect_error=error)
    with pytest.raises(StoreUnavailable) as exc_info:
        _store(pool).get_user_by_email("a@example.com")
    assert exc_info.value.retryable is True
    assert "/var/run/postgresql" not in exc_info.value.message


def test_statement_timeout_is_store_unavailable():
    pool = FakePool(errors.QueryCanceled("canceling statement due to statement timeout"))
    with pytest.raises(StoreUnavailable):
        _store(pool).set_user_password("a@example.com", "cred")


def test_close_closes_pool():
    pool = FakePool()
    _store(pool).close()
    assert pool.closed is True
