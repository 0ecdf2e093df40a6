from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    Token failures use the wire codes clients discriminate on:
    - INVALID_TOKEN (401)
    - TOKEN_EXPIRED (401)
    - TOKEN_REUSE_DETECTED (401)
    - SESSION_EXPIRED (401)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(ServiceError):
    """Missing, weak or cross-environment signing secret.

    Fatal at startup; ``reason`` is a stable code safe to log.
    """
    status_code = 500
    error_code = "configuration_error"

    def __init__(self, message: str, *, reason: str, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={"reason": reason, **(detail or {})})
        self.reason = reason


class TokenError(ServiceError):
    """Base for every token rejection (401)."""
    status_code = 401
    error_code = "INVALID_TOKEN"


class InvalidTokenError(TokenError):
    """Token unknown, forged, or otherwise not acceptable."""
    pass


class TokenFormatError(InvalidTokenError):
    """Malformed wire format; always a client error."""
    pass


class UnsupportedAlgorithmError(TokenFormatError):
    """Header names an algorithm other than HS256."""
    pass


class InvalidSignatureError(InvalidTokenError):
    """Signature does not match the signing input."""
    pass


class ClaimsValidationError(InvalidTokenError):
    """Payload decoded but a claim failed validation."""
    pass


class TokenExpiredError(TokenError):
    error_code = "TOKEN_EXPIRED"


class TokenReuseDetectedError(TokenError):
    """A rotated or revoked refresh token was presented again.

    Raised only after the token family has been revoked.
    """
    error_code = "TOKEN_REUSE_DETECTED"


class SessionExpiredError(TokenError):
    error_code = "SESSION_EXPIRED"


class UserNotFoundError(TokenError):
    """The token's subject no longer exists; reported to clients as INVALID_TOKEN."""
    pass


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "TokenError",
    "InvalidTokenError",
    "TokenFormatError",
    "UnsupportedAlgorithmError",
    "InvalidSignatureError",
    "ClaimsValidationError",
    "TokenExpiredError",
    "TokenReuseDetectedError",
    "SessionExpiredError",
    "UserNotFoundError",
]
