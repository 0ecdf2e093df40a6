import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from refreshguard.logging import get_logger
from refreshguard.storage.errors import ConstraintViolation, StorageError
from refreshguard.storage.models import RefreshTokenRecord
from refreshguard.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements; each queued cursor answers the next execute()."""

    def __init__(self, cursors=None, error=None):
        self.statements = []
        self.cursors = list(cursors or [])
        self.error = error
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.cursors.pop(0) if self.cursors else FakeCursor()

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.borrowed = 0

    @contextmanager
    def connection(self):
        self.borrowed += 1
        yield self.conn


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store(pool):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _record(**overrides):
    values = dict(
        token_hash="hash",
        user_id=str(uuid.uuid4()),
        session_id=str(uuid.uuid4()),
        now=NOW,
    )
    values.update(overrides)
    return RefreshTokenRecord.new(**values)


def test_row_mapping_stringifies_uuids():
    token_id, user_id, session_id, successor = (uuid.uuid4() for _ in range(4))
    row = {
        "id": token_id,
        "token_hash": "abc",
        "user_id": user_id,
        "session_id": session_id,
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "revoked_at": NOW,
        "replaced_by": successor,
        "revoked_reason": "rotated",
    }
    conn = FakeConnection([FakeCursor(rows=[row])])
    record = _store(FakePool(conn)).find_refresh_token(str(token_id))
    assert record.id == str(token_id)
    assert record.replaced_by == str(successor)
    assert record.state == "rotated"


def test_missing_record_returns_none():
    conn = FakeConnection([FakeCursor(rows=[])])
    assert _store(FakePool(conn)).find_refresh_token(str(uuid.uuid4())) is None


class TestCompareAndSwap:
    def test_winner_updates_then_inserts_in_one_transaction(self):
        conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=1)])
        pool = FakePool(conn)
        replacement = _record(token_hash="next")

        assert _store(pool).cas_rotate("old-id", revoked_at=NOW, replacement=replacement) is True

        assert pool.borrowed == 1
        update_sql, update_params = conn.statements[0]
        assert update_sql.startswith("UPDATE refresh_token")
        assert "revoked_at IS NULL" in update_sql
        assert update_params == (NOW, replacement.id, "rotated", "old-id")
        insert_sql, insert_params = conn.statements[1]
        assert insert_sql.startswith("INSERT INTO refresh_token")
        assert insert_params[0] == replacement.id
        assert conn.rolled_back is False

    def test_loser_inserts_nothing(self):
        conn = FakeConnection([FakeCursor(rowcount=0)])
        replacement = _record()

        assert _store(FakePool(conn)).cas_rotate("old-id", revoked_at=NOW, replacement=replacement) is False

        assert len(conn.statements) == 1
        assert conn.rolled_back is True


def test_revoke_family_is_one_recursive_statement():
    conn = FakeConnection([FakeCursor(rowcount=3)])
    revoked = _store(FakePool(conn)).revoke_family(
        "session-1", "root-1", revoked_at=NOW, reason="reuse_detected"
    )
    assert revoked == 3
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert sql.startswith("WITH RECURSIVE family")
    assert params == {
        "session_id": "session-1",
        "root_id": "root-1",
        "revoked_at": NOW,
        "reason": "reuse_detected",
    }


def test_revoke_refresh_token_reports_transition():
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    store = _store(FakePool(conn))
    assert store.revoke_refresh_token("id", revoked_at=NOW, reason="logout") is True
    assert store.revoke_refresh_token("id", revoked_at=NOW, reason="logout") is False


def test_purge_passes_cutoffs():
    conn = FakeConnection([FakeCursor(rowcount=4)])
    cutoff = NOW - timedelta(days=30)
    assert _store(FakePool(conn)).purge_expired_refresh_tokens(NOW, revoked_before=cutoff) == 4
    sql, params = conn.statements[0]
    assert sql.startswith("DELETE FROM refresh_token")
    assert params == (NOW, cutoff)


class TestErrorTranslation:
    def test_driver_errors_become_storage_errors(self):
        conn = FakeConnection(error=psycopg.OperationalError("connection refused"))
        with pytest.raises(StorageError) as excinfo:
            _store(FakePool(conn)).find_refresh_token("id")
        assert excinfo.value.status_code == 503
        assert "refused" not in excinfo.value.message

    def test_unique_violation_becomes_constraint_violation(self):
        conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            _store(FakePool(conn)).insert_refresh_token(_record())

    def test_pool_is_not_touched_for_pure_helpers(self):
        store = _store(DummyPool())
        row = {
            "id": uuid.uuid4(),
            "email": "ada@example.com",
        }
        assert store._row_to_user(row).github_username is None
