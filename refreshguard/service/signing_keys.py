from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from refreshguard.config import Environment, Settings
from refreshguard.logging import get_logger
from refreshguard.service.errors import ConfigurationError

logger = get_logger(__name__)

SECRET_VARIABLES: dict[Environment, str] = {
    Environment.DEVELOPMENT: "JWT_SECRET",
    Environment.PRODUCTION: "JWT_SECRET",
    Environment.TEST: "JWT_SECRET_TEST",
}

MIN_SECRET_BYTES: dict[Environment, int] = {
    Environment.DEVELOPMENT: 32,
    Environment.TEST: 32,
    Environment.PRODUCTION: 64,
}

WEAK_SUBSTRINGS = ("password", "123", "abc", "qwerty", "admin", "default", "secret")

_TEST_SECRET_PATTERN = re.compile(r"test|dev|demo|sample|example|fixture|mock", re.IGNORECASE)
_PRODUCTION_SECRET_PATTERN = re.compile(r"(?:^|[^a-z])(?:prod|production|live)(?:[^a-z]|$)", re.IGNORECASE)


@dataclass(frozen=True)
class SigningKey:
    """HMAC key material bound to the environment it was resolved for."""

    environment: Environment
    material: bytes = field(repr=False)
    fingerprint: str

    @classmethod
    def from_secret(cls, environment: Environment, secret: str) -> "SigningKey":
        material = bytes(secret.encode("utf-8"))
        return cls(
            environment=environment,
            material=material,
            fingerprint=hashlib.sha256(material).hexdigest()[:16],
        )


def _char_classes(secret: str) -> dict[str, bool]:
    return {
        "upper": any(c.isupper() for c in secret),
        "lower": any(c.islower() for c in secret),
        "digit": any(c.isdigit() for c in secret),
        "symbol": any(not c.isalnum() for c in secret),
    }


class SecretProvider:
    """Resolve and validate the signing secret for an explicit environment.

    ``source`` maps variable names (``JWT_SECRET``, ``JWT_SECRET_TEST``) to
    values and is snapshotted at construction; nothing is read from the
    process environment afterwards.
    """

    def __init__(self, environment: Environment, source: Mapping[str, str]) -> None:
        self.environment = Environment(environment)
        self._source = dict(source)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretProvider":
        return cls(settings.environment, settings.secret_source())

    def resolve_secret(self, environment: Optional[Environment] = None) -> SigningKey:
        env = Environment(environment) if environment is not None else self.environment
        variable = SECRET_VARIABLES[env]
        try:
            secret = self._validated_secret(env, variable)
        except ConfigurationError as exc:
            logger.error(
                "signing_secret_rejected",
                environment=env.value,
                secret_variable=variable,
                reason=exc.reason,
            )
            raise
        key = SigningKey.from_secret(env, secret)
        logger.info(
            "signing_secret_resolved",
            environment=env.value,
            secret_variable=variable,
            key_fingerprint=key.fingerprint,
        )
        return key

    def _validated_secret(self, env: Environment, variable: str) -> str:
        secret = self._source.get(variable)
        if secret is None or not secret.strip():
            raise ConfigurationError(
                f"{variable} is required and cannot be empty", reason="secret_missing"
            )

        minimum = MIN_SECRET_BYTES[env]
        if len(secret.encode("utf-8")) < minimum:
            raise ConfigurationError(
                f"{variable} must be at least {minimum} bytes in {env.value}",
                reason="secret_too_short",
                detail={"minimum_bytes": minimum},
            )

        if env.is_production:
            self._check_production_secret(variable, secret)
        elif env is Environment.TEST and _PRODUCTION_SECRET_PATTERN.search(secret):
            raise ConfigurationError(
                f"{variable} is tagged as a production secret",
                reason="secret_production_marker_in_test",
            )
        return secret

    def _check_production_secret(self, variable: str, secret: str) -> None:
        if _TEST_SECRET_PATTERN.search(secret):
            raise ConfigurationError(
                f"{variable} contains test/dev keywords in production",
                reason="secret_test_marker_in_production",
            )

        lowered = secret.lower()
        if any(weak in lowered for weak in WEAK_SUBSTRINGS):
            raise ConfigurationError(
                f"{variable} contains a weak or predictable pattern",
                reason="secret_weak_pattern",
            )

        classes = _char_classes(secret)
        unique_chars = len(set(secret))
        if (
            not (classes["upper"] and classes["lower"])
            or not (classes["digit"] or classes["symbol"])
            or unique_chars < 8
            or unique_chars / len(secret) < 0.2
        ):
            raise ConfigurationError(
                f"{variable} has insufficient entropy",
                reason="secret_low_diversity",
            )

        test_secret = self._source.get(SECRET_VARIABLES[Environment.TEST])
        if test_secret and test_secret == secret:
            raise ConfigurationError(
                f"{variable} is shared with the test environment",
                reason="secret_reused_across_environments",
            )
