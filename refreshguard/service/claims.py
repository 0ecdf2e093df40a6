from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from refreshguard.config import Settings
from refreshguard.service.clock import Clock, SystemClock
from refreshguard.service.errors import ClaimsValidationError, TokenExpiredError

# Any run this long of repeated or stepping hex digits marks a JTI as predictable
_MAX_HEX_RUN = 8
_MIN_DISTINCT_HEX = 8


class AccessClaims(BaseModel):
    """Payload of a signed access token."""

    model_config = ConfigDict(populate_by_name=True, strict=True, extra="ignore")

    token_type: Literal["access"] = Field("access", alias="tokenType")
    sub: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    auth_method: str = Field(..., alias="authMethod", min_length=1)
    iat: int
    exp: int
    iss: str
    aud: list[str] = Field(..., min_length=1)
    jti: str
    github_username: Optional[str] = Field(None, alias="githubUsername")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RefreshMetadata(BaseModel):
    """Server-side view of a refresh token, tagged so it can never pass as access."""

    model_config = ConfigDict(populate_by_name=True, strict=True, extra="ignore")

    token_type: Literal["refresh"] = Field("refresh", alias="tokenType")
    jti: str
    sub: str
    session_id: str = Field(..., alias="sessionId")
    iat: int
    exp: int
    iss: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


TokenClaims = Annotated[
    Union[AccessClaims, RefreshMetadata], Field(discriminator="token_type")
]
_CLAIMS_ADAPTER: TypeAdapter = TypeAdapter(TokenClaims)


def mark_test_subject(value: Optional[uuid.UUID] = None, marker: str = "7e577e57") -> str:
    """Return a UUID whose final group starts with the test marker."""

    raw = (value or uuid.uuid4()).hex
    return str(uuid.UUID(raw[:20] + marker + raw[28:]))


def _canonical_uuid(value: str, claim: str) -> uuid.UUID:
    try:
        parsed = uuid.UUID(value)
    except (ValueError, TypeError, AttributeError) as exc:
        raise ClaimsValidationError(
            f"{claim} must be a UUID", detail={"claim": claim}
        ) from exc
    if str(parsed) != value.lower():
        raise ClaimsValidationError(
            f"{claim} must be a hyphenated UUID", detail={"claim": claim}
        )
    return parsed


def _longest_run(hex_digits: str) -> int:
    values = [int(c, 16) for c in hex_digits]
    longest = 1
    repeat = ascend = descend = 1
    for prev, cur in zip(values, values[1:]):
        repeat = repeat + 1 if cur == prev else 1
        ascend = ascend + 1 if cur == prev + 1 else 1
        descend = descend + 1 if cur == prev - 1 else 1
        longest = max(longest, repeat, ascend, descend)
    return longest


class ClaimsValidator:
    """Validate decoded token payloads against issuer, audience and environment rules."""

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.environment = settings.environment
        self.issuer = settings.jwt_issuer
        self.audience = frozenset(settings.jwt_audience)
        self.max_lifetime_seconds = settings.max_token_lifetime_minutes * 60
        self.leeway_seconds = settings.clock_skew_leeway_seconds
        self.test_marker = settings.test_subject_marker
        self.demo_prefix = settings.demo_subject_prefix
        self.clock = clock or SystemClock()

    def decode(self, claims: Mapping[str, Any]) -> Union[AccessClaims, RefreshMetadata]:
        """Decode a payload into its tagged variant."""

        try:
            return _CLAIMS_ADAPTER.validate_python(dict(claims))
        except ValidationError as exc:
            failed = sorted(
                {".".join(str(part) for part in err["loc"]) for err in exc.errors()}
            )
            raise ClaimsValidationError(
                "token claims failed schema validation", detail={"claims": failed}
            ) from exc

    def validate_access_claims(self, claims: Mapping[str, Any]) -> AccessClaims:
        decoded = self.decode(claims)
        if not isinstance(decoded, AccessClaims):
            raise ClaimsValidationError(
                "expected an access token", detail={"claim": "tokenType"}
            )
        if decoded.exp <= decoded.iat:
            raise ClaimsValidationError(
                "token expires before it was issued", detail={"claim": "exp"}
            )
        if decoded.exp - decoded.iat > self.max_lifetime_seconds:
            raise ClaimsValidationError(
                "token lifetime exceeds the allowed maximum",
                detail={"claim": "exp", "max_lifetime_seconds": self.max_lifetime_seconds},
            )
        if decoded.iss != self.issuer:
            raise ClaimsValidationError("unexpected token issuer", detail={"claim": "iss"})
        if not self.audience.intersection(decoded.aud):
            raise ClaimsValidationError("unexpected token audience", detail={"claim": "aud"})
        self.validate_subject(decoded.sub)
        self.validate_jti(decoded.jti)

        now = self.clock.now().timestamp()
        if decoded.iat > now + self.leeway_seconds:
            raise ClaimsValidationError(
                "token issued in the future", detail={"claim": "iat"}
            )
        if decoded.exp <= now - self.leeway_seconds:
            raise TokenExpiredError("access token expired", detail={"claim": "exp"})
        return decoded

    def validate_subject(self, sub: str) -> str:
        parsed = _canonical_uuid(sub, "sub")
        groups = str(parsed).split("-")
        is_test = groups[4].startswith(self.test_marker)
        is_demo = groups[0] == self.demo_prefix
        if self.environment.is_production:
            if is_test or is_demo:
                raise ClaimsValidationError(
                    "test subject presented in production", detail={"claim": "sub"}
                )
        elif not (is_test or is_demo):
            raise ClaimsValidationError(
                "subject lacks the test marker outside production",
                detail={"claim": "sub", "environment": self.environment.value},
            )
        return str(parsed)

    def validate_jti(self, jti: str) -> str:
        parsed = _canonical_uuid(jti, "jti")
        if self.environment.is_production:
            digits = parsed.hex
            if len(set(digits)) < _MIN_DISTINCT_HEX or _longest_run(digits) >= _MAX_HEX_RUN:
                raise ClaimsValidationError(
                    "token id has insufficient entropy", detail={"claim": "jti"}
                )
        return str(parsed)
