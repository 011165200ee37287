import contextlib
from contextvars import ContextVar
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from hana.logging import get_logger
from hana.storage.errors import ConstraintViolation, StorageError
from hana.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.executed = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        if self.error:
            raise self.error
        self.checkouts += 1
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    store.pool = pool
    store._tx_conn = ContextVar("test_tx_conn", default=None)
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "phone_number": "+15551234567",
        "full_name": "New User",
        "hair_color": "unknown",
        "is_onboarded": False,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def test_consume_uses_conditional_update():
    conn = FakeConnection([FakeCursor()])
    store = _store(FakePool(conn))

    assert store.consume_verification_code("+15551234567", "123456", now=NOW, max_attempts=5) is None
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE verification_codes SET used = TRUE")
    assert "FOR UPDATE" in sql
    assert sql.endswith("AND used = FALSE RETURNING *")
    assert params == ("+15551234567", "123456", NOW, 5)


def test_revoke_refresh_token_scopes_to_owner():
    conn = FakeConnection([FakeCursor(rowcount=0), FakeCursor(rowcount=1)])
    store = _store(FakePool(conn))

    assert store.revoke_refresh_token("tok", user_id="user-1") is False
    assert store.revoke_refresh_token("tok") is True
    scoped, unscoped = conn.executed
    assert scoped[0].endswith("AND is_revoked = FALSE AND user_id = %s")
    assert scoped[1] == ["tok", "user-1"]
    assert "user_id" not in unscoped[0]
    assert unscoped[1] == ["tok"]


def test_get_or_create_user_falls_back_to_select_on_conflict():
    conn = FakeConnection([FakeCursor(), FakeCursor([_user_row()])])
    store = _store(FakePool(conn))

    user, created = store.get_or_create_user("+15551234567", now=NOW)

    assert created is False
    assert user.id == "user-1"
    assert "ON CONFLICT (phone_number) DO NOTHING" in conn.executed[0][0]
    assert conn.executed[1][0] == "SELECT * FROM users WHERE phone_number = %s"


def test_get_or_create_user_reports_insert():
    conn = FakeConnection([FakeCursor([_user_row(id="fresh")])])
    user, created = _store(FakePool(conn)).get_or_create_user("+15551234567", now=NOW)
    assert created is True
    assert user.id == "fresh"
    assert len(conn.executed) == 1


def test_transaction_pins_one_connection():
    conn = FakeConnection()
    pool = FakePool(conn)
    store = _store(pool)

    with store.transaction():
        store.claim_refresh_token("tok", now=NOW)
        store.get_user("user-1")
        with store.transaction():
            store.get_user("user-1")

    assert pool.checkouts == 1
    assert conn.transactions == 1
    assert len(conn.executed) == 3
    assert store._tx_conn.get() is None


def test_calls_outside_transaction_check_out_per_call():
    pool = FakePool(FakeConnection())
    store = _store(pool)
    store.get_user("a")
    store.get_user("b")
    assert pool.checkouts == 2


def test_unique_violation_maps_to_constraint_violation():
    conn = FakeConnection([errors.UniqueViolation("duplicate key")])
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_refresh_token("user-1", "tok", 7, now=NOW)
    assert exc_info.value.detail == {"field": "token"}


def test_foreign_key_violation_maps_to_constraint_violation():
    conn = FakeConnection([errors.ForeignKeyViolation("missing user")])
    store = _store(FakePool(conn))
    with pytest.raises(ConstraintViolation):
        store.create_session("ghost", "a" * 64, 60, now=NOW)


def test_operational_error_becomes_storage_error():
    store = _store(FakePool(error=psycopg.OperationalError("connection refused")))
    with pytest.raises(StorageError):
        store.verify_connection()


def test_sweep_counts_rows_per_table():
    conn = FakeConnection([FakeCursor(rowcount=2), FakeCursor(rowcount=1), FakeCursor(rowcount=4)])
    result = _store(FakePool(conn)).sweep_expired(now=NOW)

    assert (result.refresh_tokens, result.sessions, result.verification_codes) == (2, 1, 4)
    assert "expires_at <= %s OR is_revoked = TRUE" in conn.executed[0][0]
    assert all(params == (NOW,) for _, params in conn.executed)


def test_update_person_card_rejects_unknown_columns():
    store = _store(FakePool(FakeConnection()))
    with pytest.raises(ValueError):
        store.update_person_card("user-1", "card-1", user_id="someone-else")


def test_update_person_card_builds_owner_scoped_update():
    conn = FakeConnection([FakeCursor()])
    assert _store(FakePool(conn)).update_person_card("user-1", "card-1", name="Sam", is_discoverable=True) is None
    sql, params = conn.executed[0]
    assert sql == (
        "UPDATE person_cards SET name = %s, is_discoverable = %s "
        "WHERE id = %s AND user_id = %s RETURNING *"
    )
    assert params == ["Sam", True, "card-1", "user-1"]


def test_list_person_cards_filters_discoverable():
    conn = FakeConnection([FakeCursor([])])
    _store(FakePool(conn)).list_person_cards("user-1", limit=10, offset=20, discoverable=False)
    sql, params = conn.executed[0]
    assert "AND is_discoverable = %s" in sql
    assert sql.endswith("ORDER BY created_at DESC LIMIT %s OFFSET %s")
    assert params == ["user-1", False, 10, 20]
