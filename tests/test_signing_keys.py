"""Tests for signing secret resolution and environment isolation."""

import pytest

from refreshguard.config import Environment, Settings
from refreshguard.service.errors import ConfigurationError
from refreshguard.service.signing_keys import SecretProvider, SigningKey

PROD_SECRET = "Kq7#Vz2!Rm9$Wx4@Lp8%Nt5^Hy3&Jb6*Fg1(Cs0)Ud2-Ew7+Ta9=Zo4?Yi5~Xr8!"
TEST_SECRET = "refreshguard-suite-signing-key-0f9e8d7c6b5a4"


def _reason(environment, source):
    with pytest.raises(ConfigurationError) as excinfo:
        SecretProvider(environment, source).resolve_secret()
    return excinfo.value.reason


class TestProductionSecrets:
    def test_strong_secret_resolves(self):
        key = SecretProvider(Environment.PRODUCTION, {"JWT_SECRET": PROD_SECRET}).resolve_secret()
        assert key.environment is Environment.PRODUCTION
        assert key.material == PROD_SECRET.encode()
        assert len(key.fingerprint) == 16

    def test_missing_secret(self):
        assert _reason(Environment.PRODUCTION, {}) == "secret_missing"

    def test_blank_secret(self):
        assert _reason(Environment.PRODUCTION, {"JWT_SECRET": "   "}) == "secret_missing"

    def test_short_secret(self):
        assert _reason(Environment.PRODUCTION, {"JWT_SECRET": PROD_SECRET[:40]}) == "secret_too_short"

    def test_test_keyword_rejected(self):
        source = {"JWT_SECRET": "test" + PROD_SECRET}
        assert _reason(Environment.PRODUCTION, source) == "secret_test_marker_in_production"

    def test_weak_pattern_rejected(self):
        source = {"JWT_SECRET": "qwerty" + PROD_SECRET}
        assert _reason(Environment.PRODUCTION, source) == "secret_weak_pattern"

    def test_low_diversity_rejected(self):
        source = {"JWT_SECRET": "Zz9" * 22}
        assert _reason(Environment.PRODUCTION, source) == "secret_low_diversity"

    def test_single_case_rejected(self):
        source = {"JWT_SECRET": PROD_SECRET.lower()}
        assert _reason(Environment.PRODUCTION, source) == "secret_low_diversity"

    def test_secret_shared_with_test_environment_rejected(self):
        source = {"JWT_SECRET": PROD_SECRET, "JWT_SECRET_TEST": PROD_SECRET}
        assert _reason(Environment.PRODUCTION, source) == "secret_reused_across_environments"

    def test_error_maps_to_configuration_code(self):
        with pytest.raises(ConfigurationError) as excinfo:
            SecretProvider(Environment.PRODUCTION, {}).resolve_secret()
        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "configuration_error"
        assert excinfo.value.detail["reason"] == "secret_missing"


class TestEnvironmentIsolation:
    """Each environment reads its own variable from the same source."""

    def test_test_environment_ignores_production_variable(self):
        assert _reason(Environment.TEST, {"JWT_SECRET": PROD_SECRET}) == "secret_missing"

    def test_test_environment_reads_its_own_variable(self):
        source = {"JWT_SECRET": PROD_SECRET, "JWT_SECRET_TEST": TEST_SECRET}
        provider = SecretProvider(Environment.TEST, source)
        test_key = provider.resolve_secret()
        prod_key = provider.resolve_secret(Environment.PRODUCTION)
        assert test_key.material == TEST_SECRET.encode()
        assert prod_key.material == PROD_SECRET.encode()
        assert test_key.fingerprint != prod_key.fingerprint

    def test_production_tagged_secret_rejected_in_test(self):
        source = {"JWT_SECRET_TEST": "prod-" + TEST_SECRET}
        assert _reason(Environment.TEST, source) == "secret_production_marker_in_test"

    def test_development_accepts_test_like_secret(self):
        key = SecretProvider(Environment.DEVELOPMENT, {"JWT_SECRET": TEST_SECRET}).resolve_secret()
        assert key.environment is Environment.DEVELOPMENT

    def test_short_secret_rejected_outside_production(self):
        assert _reason(Environment.DEVELOPMENT, {"JWT_SECRET": "x" * 31}) == "secret_too_short"

    def test_source_is_snapshotted(self):
        source = {"JWT_SECRET_TEST": TEST_SECRET}
        provider = SecretProvider(Environment.TEST, source)
        source["JWT_SECRET_TEST"] = "changed-after-construction-000000000000"
        assert provider.resolve_secret().material == TEST_SECRET.encode()

    def test_from_settings(self):
        settings = Settings(environment="test", jwt_secret_test=TEST_SECRET)
        key = SecretProvider.from_settings(settings).resolve_secret()
        assert key.environment is Environment.TEST


class TestSigningKey:
    def test_repr_hides_material(self):
        key = SigningKey.from_secret(Environment.TEST, TEST_SECRET)
        assert TEST_SECRET not in repr(key)

    def test_keys_are_independent_values(self):
        provider = SecretProvider(Environment.TEST, {"JWT_SECRET_TEST": TEST_SECRET})
        first = provider.resolve_secret()
        second = provider.resolve_secret()
        assert first == second
        assert first is not second
        with pytest.raises(AttributeError):
            first.material = b"other"
