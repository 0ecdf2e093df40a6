from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from refreshguard.logging import get_logger
from refreshguard.storage.common import REASON_ROTATED
from refreshguard.storage.errors import ConstraintViolation, StorageError
from refreshguard.storage.models import RefreshTokenRecord, Session, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        github_username TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        auth_method TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        reauth_required BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_id UUID NOT NULL REFERENCES auth_session(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by UUID REFERENCES refresh_token(id)
            ON DELETE SET NULL DEFERRABLE INITIALLY DEFERRED,
        revoked_reason TEXT,
        CHECK (replaced_by IS NULL OR revoked_at IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idx ON refresh_token (session_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_replaced_by_idx ON refresh_token (replaced_by)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)

# Every record reachable from the session or the presented record through
# replaced_by links, walking both towards successors and ancestors.
_REVOKE_FAMILY_SQL = """
    WITH RECURSIVE family (id, replaced_by) AS (
        SELECT id, replaced_by FROM refresh_token
        WHERE session_id = %(session_id)s OR id = %(root_id)s
        UNION
        SELECT t.id, t.replaced_by
        FROM refresh_token t
        JOIN family f ON t.id = f.replaced_by OR t.replaced_by = f.id
    )
    UPDATE refresh_token
    SET revoked_at = %(revoked_at)s, revoked_reason = %(reason)s
    WHERE id IN (SELECT id FROM family) AND revoked_at IS NULL
"""


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed session and refresh token store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; one block is one transaction.

        Driver failures surface as ``StorageError`` and integrity failures as
        ``ConstraintViolation``.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            raise ConstraintViolation(
                "storage constraint violated", {"constraint": constraint}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", error_type=type(exc).__name__)
            raise StorageError("session storage unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            github_username=row.get("github_username"),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            auth_method=row["auth_method"],
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            expires_at=row["expires_at"],
            reauth_required=bool(row.get("reauth_required", False)),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            session_id=str(row["session_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by=_str_or_none(row.get("replaced_by")),
            revoked_reason=row.get("revoked_reason"),
        )

    # users

    def create_user(
        self,
        email: str,
        *,
        github_username: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user = User(id=user_id or str(uuid.uuid4()), email=email, github_username=github_username)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO app_user (id, email, github_username) VALUES (%s, %s, %s)",
                (user.id, user.email, user.github_username),
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, github_username FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions

    def create_session(
        self,
        user_id: str,
        auth_method: str,
        *,
        now: datetime,
        ttl_minutes: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            auth_method=auth_method,
            now=now,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, user_id, auth_method, created_at, last_active_at, expires_at, user_agent, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    sess.id,
                    sess.user_id,
                    sess.auth_method,
                    sess.created_at,
                    sess.last_active_at,
                    sess.expires_at,
                    sess.user_agent,
                    sess.ip_address,
                ),
            )
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_active_at = GREATEST(last_active_at, %s) WHERE id = %s",
                (at, session_id),
            )

    def mark_session_reauth(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET reauth_required = TRUE WHERE id = %s",
                (session_id,),
            )

    def expire_user_sessions(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE user_id = %s AND expires_at > %s",
                (at, user_id, at),
            )
            return cur.rowcount

    # refresh tokens

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._connect() as conn:
            self._insert_refresh_token(conn, record)

    @staticmethod
    def _insert_refresh_token(conn: psycopg.Connection, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, session_id, created_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.token_hash,
                record.user_id,
                record.session_id,
                record.created_at,
                record.expires_at,
            ),
        )

    def find_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, session_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE session_id = %s ORDER BY created_at",
                (session_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def cas_rotate(
        self,
        token_id: str,
        *,
        revoked_at: datetime,
        replacement: RefreshTokenRecord,
    ) -> bool:
        with self._connect() as conn:
            # The row lock serialises concurrent rotations; losers see revoked_at set
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked_at = %s, replaced_by = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (revoked_at, replacement.id, REASON_ROTATED, token_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
            self._insert_refresh_token(conn, replacement)
            return True

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, reason: str
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, token_id),
            )
            return cur.rowcount == 1

    def revoke_family(
        self, session_id: str, root_id: str, *, revoked_at: datetime, reason: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                _REVOKE_FAMILY_SQL,
                {
                    "session_id": session_id,
                    "root_id": root_id,
                    "revoked_at": revoked_at,
                    "reason": reason,
                },
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, reason: str
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (revoked_at, reason, user_id),
            )
            return cur.rowcount

    def purge_expired_refresh_tokens(
        self, now: datetime, *, revoked_before: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM refresh_token
                WHERE expires_at <= %s
                   OR (revoked_at IS NOT NULL AND revoked_at < %s)
                """,
                (now, revoked_before),
            )
            purged = cur.rowcount
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged
