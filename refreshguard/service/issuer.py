from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from refreshguard.config import Settings
from refreshguard.logging import get_logger
from refreshguard.service.audit import SESSION_STARTED, AuditSink, emit_event
from refreshguard.service.claims import AccessClaims, ClaimsValidator
from refreshguard.service.clock import Clock, SystemClock
from refreshguard.service.codec import TokenCodec
from refreshguard.service.errors import ClaimsValidationError, InvalidTokenError
from refreshguard.service.signing_keys import SigningKey
from refreshguard.storage.common import SessionStore
from refreshguard.storage.models import RefreshTokenRecord, Session, User

logger = get_logger(__name__)

REFRESH_SECRET_BYTES = 32
DEFAULT_AUTH_METHOD = "oauth"

# token_urlsafe(32) yields 43 characters; longer secrets are accepted
_REFRESH_SECRET_RE = re.compile(r"^[A-Za-z0-9_-]{43,}$")
_JTI_ATTEMPTS = 5


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    record: RefreshTokenRecord


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str


def split_refresh_token(token: str) -> Tuple[str, str]:
    """Split a ``<id>.<secret>`` bearer into its parts.

    Raises ``InvalidTokenError`` for anything that is not exactly that shape,
    using the same message as an unknown token.
    """
    if not isinstance(token, str):
        raise InvalidTokenError("invalid refresh token")
    token_id, sep, secret = token.partition(".")
    if not sep or not _REFRESH_SECRET_RE.match(secret):
        raise InvalidTokenError("invalid refresh token")
    try:
        parsed = uuid.UUID(token_id)
    except ValueError as exc:
        raise InvalidTokenError("invalid refresh token") from exc
    if str(parsed) != token_id:
        raise InvalidTokenError("invalid refresh token")
    return token_id, secret


class TokenIssuer:
    """Mint access tokens and persist refresh records for a session."""

    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        key: SigningKey,
        *,
        codec: Optional[TokenCodec] = None,
        validator: Optional[ClaimsValidator] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.key = key
        self.clock = clock or SystemClock()
        self.codec = codec or TokenCodec()
        self.validator = validator or ClaimsValidator(settings, clock=self.clock)
        self.audit = audit

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def hash_refresh_secret(self, secret: str) -> str:
        return hmac.new(self.key.material, secret.encode("utf-8"), hashlib.sha256).hexdigest()

    def _new_jti(self) -> str:
        for _ in range(_JTI_ATTEMPTS):
            candidate = str(uuid.uuid4())
            try:
                return self.validator.validate_jti(candidate)
            except ClaimsValidationError:
                continue
        raise ClaimsValidationError("could not generate a token id", detail={"claim": "jti"})

    def issue_access_token(
        self, user: User, session: Session, auth_method: Optional[str] = None
    ) -> str:
        self.validator.validate_subject(user.id)
        iat = int(self.clock.now().timestamp())
        claims = AccessClaims(
            sub=user.id,
            email=user.email,
            session_id=session.id,
            auth_method=auth_method or session.auth_method or DEFAULT_AUTH_METHOD,
            iat=iat,
            exp=iat + self.access_ttl_seconds,
            iss=self.settings.jwt_issuer,
            aud=list(self.settings.jwt_audience),
            jti=self._new_jti(),
            github_username=user.github_username,
        )
        return self.codec.sign(claims.to_payload(), self.key)

    def new_refresh_token(self, user_id: str, session_id: str) -> IssuedRefreshToken:
        """Build a refresh token and its record without persisting it."""

        secret = secrets.token_urlsafe(REFRESH_SECRET_BYTES)
        record = RefreshTokenRecord.new(
            token_hash=self.hash_refresh_secret(secret),
            user_id=user_id,
            session_id=session_id,
            now=self.clock.now(),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )
        return IssuedRefreshToken(token=f"{record.id}.{secret}", record=record)

    def issue_refresh_token(self, user_id: str, session_id: str) -> IssuedRefreshToken:
        issued = self.new_refresh_token(user_id, session_id)
        self.store.insert_refresh_token(issued.record)
        logger.info(
            "refresh_token_issued",
            token_id=issued.record.id,
            user_id=user_id,
            session_id=session_id,
        )
        return issued

    def start_session(
        self,
        user: User,
        auth_method: str = DEFAULT_AUTH_METHOD,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[Session, TokenPair]:
        """Open a session for an authenticated user and issue its first pair."""

        self.validator.validate_subject(user.id)
        session = self.store.create_session(
            user.id,
            auth_method,
            now=self.clock.now(),
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        refresh = self.issue_refresh_token(user.id, session.id)
        access = self.issue_access_token(user, session, auth_method)
        emit_event(
            self.audit,
            SESSION_STARTED,
            {"user_id": user.id, "session_id": session.id, "auth_method": auth_method},
        )
        return session, TokenPair(
            access_token=access,
            refresh_token=refresh.token,
            expires_in=self.access_ttl_seconds,
            session_id=session.id,
        )
