from __future__ import annotations

from typing import Optional

from refreshguard.config import Settings
from refreshguard.service.claims import AccessClaims, ClaimsValidator
from refreshguard.service.clock import Clock
from refreshguard.service.codec import TokenCodec
from refreshguard.service.signing_keys import SigningKey


class AccessTokenVerifier:
    """Stateless access-token check: signature, then claims. Never touches the store."""

    def __init__(
        self,
        settings: Settings,
        key: SigningKey,
        *,
        codec: Optional[TokenCodec] = None,
        validator: Optional[ClaimsValidator] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.key = key
        self.codec = codec or TokenCodec()
        self.validator = validator or ClaimsValidator(settings, clock=clock)

    def verify(self, token: str) -> AccessClaims:
        payload = self.codec.verify(token, self.key)
        return self.validator.validate_access_claims(payload)
