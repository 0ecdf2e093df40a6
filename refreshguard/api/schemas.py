from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stable error codes; the four token codes are what clients branch on
_VALID_ERROR_CODES = frozenset({
    "INVALID_TOKEN",
    "TOKEN_EXPIRED",
    "TOKEN_REUSE_DETECTED",
    "SESSION_EXPIRED",
    "unauthorized",
    "validation_error",
    "not_found",
    "conflict",
    "configuration_error",
    "storage_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class TokenRefreshRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=2048)


class TokenPairResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    expires_in: int = Field(..., alias="expiresIn")


class RevokeRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=2048)


class RevokeResponse(_CamelModel):
    revoked: bool


class RevokeAllRequest(_CamelModel):
    terminate_sessions: bool = Field(False, alias="terminateSessions")


class RevokeAllResponse(_CamelModel):
    revoked: int
    terminate_sessions: bool = Field(..., alias="terminateSessions")


class AccessClaimsResponse(_CamelModel):
    sub: str
    email: str
    session_id: str = Field(..., alias="sessionId")
    auth_method: str = Field(..., alias="authMethod")
    iat: int
    exp: int
    iss: str
    aud: List[str]
    jti: str
    github_username: Optional[str] = Field(None, alias="githubUsername")
