from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass
class User:
    id: str
    email: str
    github_username: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    auth_method: str
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    reauth_required: bool = False
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        auth_method: str,
        *,
        now: datetime,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            auth_method=auth_method,
            created_at=now,
            last_active_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.reauth_required and self.expires_at > now


@dataclass
class RefreshTokenRecord:
    """Persisted half of a refresh token; the raw secret is never stored.

    ``replaced_by`` links a rotated record to its successor, so following the
    links from any record walks the rest of its rotation chain.
    """

    id: str
    token_hash: str
    user_id: str
    session_id: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: str,
        session_id: str,
        *,
        now: datetime,
        ttl_minutes: int = 7 * 24 * 60,
        record_id: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=record_id or str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def state(self) -> str:
        if self.replaced_by is not None:
            return "rotated"
        if self.revoked_at is not None:
            return "revoked"
        return "active"

    def is_expired(self, now: datetime) -> bool:
        # Inclusive: a record expiring exactly now is already expired
        return self.expires_at <= now

