"""Storage contract shared between the memory and postgres backends."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from refreshguard.storage.models import RefreshTokenRecord, Session, User

# Reasons recorded in refresh_token.revoked_reason
REASON_ROTATED = "rotated"
REASON_REUSE_DETECTED = "reuse_detected"
REASON_LOGOUT = "logout"
REASON_USER_REVOKED = "user_revoked"


class SessionStore(Protocol):
    """Persistence consumed by the issuer and the rotation engine.

    Refresh records are looked up by id only; the raw secret never reaches
    the store. ``cas_rotate`` must be atomic: exactly one concurrent caller
    may move a given record out of the active state.
    """

    def create_user(
        self,
        email: str,
        *,
        github_username: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        auth_method: str,
        *,
        now: datetime,
        ttl_minutes: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> None: ...

    def mark_session_reauth(self, session_id: str) -> None: ...

    def expire_user_sessions(self, user_id: str, at: datetime) -> int: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def find_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def list_refresh_tokens(self, session_id: str) -> List[RefreshTokenRecord]: ...

    def cas_rotate(
        self,
        token_id: str,
        *,
        revoked_at: datetime,
        replacement: RefreshTokenRecord,
    ) -> bool: ...

    def revoke_refresh_token(
        self, token_id: str, *, revoked_at: datetime, reason: str
    ) -> bool: ...

    def revoke_family(
        self, session_id: str, root_id: str, *, revoked_at: datetime, reason: str
    ) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: str, *, revoked_at: datetime, reason: str
    ) -> int: ...

    def purge_expired_refresh_tokens(
        self, now: datetime, *, revoked_before: datetime
    ) -> int: ...
