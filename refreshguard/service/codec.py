from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
from typing import Any, Mapping

from refreshguard.logging import get_logger
from refreshguard.service.errors import (
    InvalidSignatureError,
    TokenFormatError,
    UnsupportedAlgorithmError,
)
from refreshguard.service.signing_keys import SigningKey

logger = get_logger(__name__)

ALGORITHM = "HS256"
HEADER = {"alg": ALGORITHM, "typ": "JWT"}

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Well above any token this service signs
MAX_TOKEN_LENGTH = 8192


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode_segment(segment: str) -> bytes:
    """Decode one unpadded base64url segment.

    Raises ``TokenFormatError`` for characters outside the url-safe alphabet
    or an impossible length.
    """
    if not _SEGMENT_RE.match(segment) or len(segment) % 4 == 1:
        raise TokenFormatError("token segment is not base64url")
    padding = "=" * ((4 - len(segment) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (binascii.Error, ValueError) as exc:
        raise TokenFormatError("token segment is not base64url") from exc


def _decode_json_object(segment: str, part: str) -> dict[str, Any]:
    raw = decode_segment(segment)
    try:
        value = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise TokenFormatError(f"token {part} is not valid JSON", detail={"part": part}) from exc
    if not isinstance(value, dict):
        raise TokenFormatError(f"token {part} must be a JSON object", detail={"part": part})
    return value


class TokenCodec:
    """Compact ``header.payload.signature`` encoding pinned to HS256.

    Stateless: the signing key is passed on every call, so one codec may be
    shared by any number of threads.
    """

    def sign(self, claims: Mapping[str, Any], key: SigningKey) -> str:
        header_enc = encode_segment(json.dumps(HEADER, separators=(",", ":")).encode())
        payload_enc = encode_segment(
            json.dumps(dict(claims), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{encode_segment(self._signature(signing_input, key))}"

    def verify(self, token: str, key: SigningKey) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenFormatError("token must be a string")
        if len(token) > MAX_TOKEN_LENGTH:
            raise TokenFormatError("token too long", detail={"length": len(token)})
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenFormatError(
                "token must have three segments", detail={"segments": len(parts)}
            )
        if not all(_SEGMENT_RE.match(part) for part in parts):
            raise TokenFormatError("token segment is not base64url")
        header_b64, payload_b64, sig_b64 = parts

        # Algorithm is checked before the signature to rule out alg confusion
        header = _decode_json_object(header_b64, "header")
        alg = header.get("alg")
        if alg != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=str(alg))
            raise UnsupportedAlgorithmError(
                "unsupported token algorithm", detail={"alg": str(alg)}
            )
        if header.get("typ", "JWT") != "JWT":
            raise TokenFormatError("unsupported token type", detail={"typ": str(header.get("typ"))})

        signature = decode_segment(sig_b64)
        expected = self._signature(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("token signature mismatch")

        return _decode_json_object(payload_b64, "payload")

    @staticmethod
    def _signature(signing_input: str, key: SigningKey) -> bytes:
        return hmac.new(key.material, signing_input.encode("ascii"), hashlib.sha256).digest()
