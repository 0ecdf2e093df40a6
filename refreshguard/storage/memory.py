from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set

from refreshguard.logging import get_logger
from refreshguard.storage.common import REASON_ROTATED
from refreshguard.storage.errors import ConstraintViolation
from refreshguard.storage.models import RefreshTokenRecord, Session, User


class MemoryStore:
    """Thread-safe in-memory store used by tests and single-process deployments.

    Records handed out are copies, so callers never mutate stored state
    outside the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._token_hashes: Set[str] = set()
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users

    def create_user(
        self,
        email: str,
        *,
        github_username: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                email=email,
                github_username=github_username,
            )
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

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
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                auth_method=auth_method,
                now=now,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_active_at = at

    def mark_session_reauth(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.reauth_required = True

    def expire_user_sessions(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            expired = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.expires_at > at:
                    sess.expires_at = at
                    expired += 1
            return expired

    # refresh tokens

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            self._insert_locked(record)

    def _insert_locked(self, record: RefreshTokenRecord) -> None:
        if record.id in self.refresh_tokens:
            raise ConstraintViolation("refresh token id already exists", {"field": "id"})
        if record.token_hash in self._token_hashes:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            )
        if record.session_id not in self.sessions:
            raise ConstraintViolation(
                "session does not exist", {"session_id": record.session_id}
            )
        self.refresh_tokens[record.id] = replace(record)
        self._token_hashes.add(record.token_hash)

    def find_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            return replace(record) if record else None

    def list_refresh_tokens(self, session_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(r) for r in self.refresh_tokens.values() if r.session_id == session_id
            ]
            return sorted(records, key=lambda r: r.created_at)

    def cas_rotate(
        self,
        token_id: str,
        *,
        revoked_at: datetime,
        replacement: RefreshTokenRecord,
    ) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.revoked_at is not None:
                return False
            self._insert_locked(replacement)
            current.revoked_at = revoked_at
            current.replaced_by = replacement.id
            current.revoked_reason = REASON_ROTATED
            return True

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, reason: str
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at
            record.revoked_reason = reason
            return True

    def _family_ids(self, session_id: str, root_id: str) -> Set[str]:
        family = {
            rid
            for rid, record in self.refresh_tokens.items()
            if record.session_id == session_id or rid == root_id
        }
        # Close over replaced_by links in both directions
        changed = True
        while changed:
            changed = False
            for rid, record in self.refresh_tokens.items():
                if rid in family:
                    if record.replaced_by and record.replaced_by not in family:
                        family.add(record.replaced_by)
                        changed = True
                elif record.replaced_by in family:
                    family.add(rid)
                    changed = True
        return family

    def revoke_family(
        self, session_id: str, root_id: str, *, revoked_at: datetime, reason: str
    ) -> int:
        with self._data_lock:
            revoked = 0
            for rid in self._family_ids(session_id, root_id):
                record = self.refresh_tokens.get(rid)
                if record is not None and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    record.revoked_reason = reason
                    revoked += 1
            return revoked

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, reason: str
    ) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    record.revoked_reason = reason
                    revoked += 1
            return revoked

    def purge_expired_refresh_tokens(
        self, now: datetime, *, revoked_before: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                rid
                for rid, record in self.refresh_tokens.items()
                if record.expires_at <= now
                or (record.revoked_at is not None and record.revoked_at < revoked_before)
            ]
            for rid in stale:
                record = self.refresh_tokens.pop(rid)
                self._token_hashes.discard(record.token_hash)
            if stale:
                self.logger.info("refresh_tokens_purged", count=len(stale))
            return len(stale)
