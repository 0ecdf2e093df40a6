from __future__ import annotations

import hmac
from datetime import datetime, timedelta
from typing import Optional

from refreshguard.config import Settings
from refreshguard.logging import get_logger
from refreshguard.service.audit import (
    SESSION_EXPIRED,
    TOKEN_EXPIRED,
    TOKEN_REFRESHED,
    TOKEN_REUSE_DETECTED,
    TOKEN_REVOKED,
    TOKEN_VALIDATION_FAILED,
    USER_TOKENS_REVOKED,
    AuditSink,
    emit_event,
)
from refreshguard.service.claims import RefreshMetadata
from refreshguard.service.clock import Clock
from refreshguard.service.errors import (
    InvalidTokenError,
    SessionExpiredError,
    TokenExpiredError,
    TokenReuseDetectedError,
    UserNotFoundError,
)
from refreshguard.service.issuer import TokenIssuer, TokenPair, split_refresh_token
from refreshguard.storage.common import (
    REASON_LOGOUT,
    REASON_REUSE_DETECTED,
    REASON_USER_REVOKED,
    SessionStore,
)
from refreshguard.storage.models import RefreshTokenRecord, Session


class RotationEngine:
    """Single-use refresh token rotation with family revocation on reuse.

    A refresh record moves Active -> Rotated | Revoked | Expired and never
    comes back. Presenting a rotated or revoked token with a matching secret
    is treated as theft: every record in the family is revoked, the session
    is flagged for re-authentication, and ``TokenReuseDetectedError`` is
    raised once those writes are done. A client retry after a lost response
    looks exactly like a replay and is handled the same way.
    """

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        issuer: TokenIssuer,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.issuer = issuer
        self.clock = clock or issuer.clock
        self.audit = audit if audit is not None else issuer.audit
        self.logger = get_logger(__name__)

    def rotate(self, presented_token: str) -> TokenPair:
        now = self.clock.now()
        record = self._authenticate(presented_token, now)
        session = self._active_session(record, now)
        user = self.store.get_user(record.user_id)
        if user is None:
            emit_event(
                self.audit,
                TOKEN_VALIDATION_FAILED,
                {"token_id": record.id, "reason": "user_not_found"},
            )
            raise UserNotFoundError("invalid refresh token")

        successor = self.issuer.new_refresh_token(user.id, session.id)
        if not self.store.cas_rotate(record.id, revoked_at=now, replacement=successor.record):
            # Another caller rotated or revoked this record first
            self.logger.warning("refresh_rotation_race_lost", token_id=record.id)
            self._handle_reuse(record, now)

        self.store.touch_session(session.id, now)
        access_token = self.issuer.issue_access_token(user, session)
        self.logger.info(
            "refresh_token_rotated",
            token_id=record.id,
            replaced_by=successor.record.id,
            session_id=session.id,
        )
        emit_event(
            self.audit,
            TOKEN_REFRESHED,
            {
                "user_id": user.id,
                "session_id": session.id,
                "token_id": record.id,
                "replaced_by": successor.record.id,
            },
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=successor.token,
            expires_in=self.issuer.access_ttl_seconds,
            session_id=session.id,
        )

    def verify_refresh_token(self, presented_token: str) -> RefreshMetadata:
        """Check a refresh token without rotating it.

        Reuse of a rotated or revoked token still revokes the family.
        """
        now = self.clock.now()
        record = self._authenticate(presented_token, now)
        self._active_session(record, now)
        return RefreshMetadata(
            jti=record.id,
            sub=record.user_id,
            session_id=record.session_id,
            iat=int(record.created_at.timestamp()),
            exp=int(record.expires_at.timestamp()),
            iss=self.settings.jwt_issuer,
        )

    def revoke(self, token_id: str, reason: str = REASON_LOGOUT) -> bool:
        """Revoke one record by id. Revoking twice is a no-op returning False."""

        revoked = self.store.revoke_refresh_token(
            token_id, revoked_at=self.clock.now(), reason=reason
        )
        if revoked:
            emit_event(self.audit, TOKEN_REVOKED, {"token_id": token_id, "reason": reason})
        return revoked

    def revoke_presented(self, presented_token: str, reason: str = REASON_LOGOUT) -> bool:
        token_id, secret = split_refresh_token(presented_token)
        record = self.store.find_refresh_token(token_id)
        if record is None or not self._secret_matches(record, secret):
            raise InvalidTokenError("invalid refresh token")
        return self.revoke(record.id, reason)

    def revoke_all_for_user(self, user_id: str, terminate_sessions: bool = False) -> int:
        now = self.clock.now()
        revoked = self.store.revoke_user_refresh_tokens(
            user_id, revoked_at=now, reason=REASON_USER_REVOKED
        )
        sessions_expired = 0
        if terminate_sessions:
            sessions_expired = self.store.expire_user_sessions(user_id, now)
        self.logger.info(
            "user_refresh_tokens_revoked",
            user_id=user_id,
            revoked=revoked,
            sessions_expired=sessions_expired,
        )
        emit_event(
            self.audit,
            USER_TOKENS_REVOKED,
            {
                "user_id": user_id,
                "revoked": revoked,
                "terminate_sessions": terminate_sessions,
            },
        )
        return revoked

    def purge_expired(self, retention: timedelta) -> int:
        now = self.clock.now()
        return self.store.purge_expired_refresh_tokens(now, revoked_before=now - retention)

    def _secret_matches(self, record: RefreshTokenRecord, secret: str) -> bool:
        return hmac.compare_digest(self.issuer.hash_refresh_secret(secret), record.token_hash)

    def _authenticate(self, presented_token: str, now: datetime) -> RefreshTokenRecord:
        try:
            token_id, secret = split_refresh_token(presented_token)
        except InvalidTokenError:
            emit_event(self.audit, TOKEN_VALIDATION_FAILED, {"reason": "malformed"})
            raise
        record = self.store.find_refresh_token(token_id)
        if record is None:
            emit_event(
                self.audit, TOKEN_VALIDATION_FAILED, {"token_id": token_id, "reason": "unknown"}
            )
            raise InvalidTokenError("invalid refresh token")
        if record.is_expired(now):
            emit_event(
                self.audit,
                TOKEN_EXPIRED,
                {"token_id": record.id, "session_id": record.session_id},
            )
            raise TokenExpiredError("refresh token expired")
        if not self._secret_matches(record, secret):
            emit_event(
                self.audit,
                TOKEN_VALIDATION_FAILED,
                {"token_id": record.id, "reason": "hash_mismatch"},
            )
            raise InvalidTokenError("invalid refresh token")
        if record.revoked_at is not None:
            self._handle_reuse(record, now)
        return record

    def _active_session(self, record: RefreshTokenRecord, now: datetime) -> Session:
        session = self.store.get_session(record.session_id)
        if session is None or not session.is_active(now):
            emit_event(
                self.audit,
                SESSION_EXPIRED,
                {"session_id": record.session_id, "token_id": record.id},
            )
            raise SessionExpiredError("session expired")
        return session

    def _handle_reuse(self, record: RefreshTokenRecord, now: datetime) -> None:
        """Revoke the family and flag the session, then report the theft signal.

        The critical audit event is emitted even when a store write fails;
        the storage error then propagates instead of the reuse error.
        """
        revoked: Optional[int] = None
        contained = False
        try:
            revoked = self.store.revoke_family(
                record.session_id, record.id, revoked_at=now, reason=REASON_REUSE_DETECTED
            )
            self.store.mark_session_reauth(record.session_id)
            contained = True
        finally:
            context = {
                "token_id": record.id,
                "session_id": record.session_id,
                "user_id": record.user_id,
                "family_revoked": revoked,
                "containment_complete": contained,
            }
            log_fn = self.logger.warning if contained else self.logger.error
            log_fn("refresh_token_reuse_detected", **context)
            emit_event(self.audit, TOKEN_REUSE_DETECTED, context)
        raise TokenReuseDetectedError("refresh token reuse detected")
