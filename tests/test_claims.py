"""Tests for claim schemas and the claims validator."""

import uuid
from datetime import datetime, timezone

import pytest

from refreshguard.config import Settings
from refreshguard.service.claims import (
    AccessClaims,
    ClaimsValidator,
    RefreshMetadata,
    mark_test_subject,
)
from refreshguard.service.clock import ManualClock
from refreshguard.service.errors import ClaimsValidationError, TokenExpiredError

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW_TS = int(NOW.timestamp())
TEST_SUB = mark_test_subject(uuid.UUID("1b4e28ba-2fa1-41d2-883f-0016d3cca427"))
PROD_SUB = "1b4e28ba-2fa1-41d2-883f-0016d3cca427"
GOOD_JTI = "3f9a2c71-5e8b-4d06-9b3a-7c1e5f28d4a6"


def _payload(**overrides):
    payload = {
        "tokenType": "access",
        "sub": TEST_SUB,
        "email": "ada@example.com",
        "sessionId": "0d6f1c3e-8a2b-4f57-9c11-5b7e2a9d4c80",
        "authMethod": "oauth",
        "iat": NOW_TS,
        "exp": NOW_TS + 900,
        "iss": "refreshguard",
        "aud": ["refreshguard-api"],
        "jti": GOOD_JTI,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def validator():
    return ClaimsValidator(Settings(environment="test"), clock=ManualClock(NOW))


@pytest.fixture
def prod_validator():
    return ClaimsValidator(Settings(environment="production"), clock=ManualClock(NOW))


class TestSchemaDecode:
    def test_valid_access_payload(self, validator):
        claims = validator.validate_access_claims(_payload())
        assert isinstance(claims, AccessClaims)
        assert claims.session_id == "0d6f1c3e-8a2b-4f57-9c11-5b7e2a9d4c80"
        assert claims.to_payload()["sessionId"] == claims.session_id
        assert "githubUsername" not in claims.to_payload()

    def test_refresh_payload_is_not_an_access_token(self, validator):
        refresh = RefreshMetadata(
            jti=GOOD_JTI,
            sub=TEST_SUB,
            session_id="s",
            iat=NOW_TS,
            exp=NOW_TS + 60,
            iss="refreshguard",
        ).to_payload()
        assert isinstance(validator.decode(refresh), RefreshMetadata)
        with pytest.raises(ClaimsValidationError):
            validator.validate_access_claims(refresh)

    def test_missing_tag_rejected(self, validator):
        payload = _payload()
        del payload["tokenType"]
        with pytest.raises(ClaimsValidationError):
            validator.validate_access_claims(payload)

    def test_missing_claim_named_in_detail(self, validator):
        payload = _payload()
        del payload["email"]
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_access_claims(payload)
        assert any(name.endswith("email") for name in excinfo.value.detail["claims"])

    def test_wrong_claim_type_rejected(self, validator):
        with pytest.raises(ClaimsValidationError):
            validator.validate_access_claims(_payload(iat=str(NOW_TS)))

    def test_empty_audience_rejected(self, validator):
        with pytest.raises(ClaimsValidationError):
            validator.validate_access_claims(_payload(aud=[]))


class TestTimeClaims:
    def test_exp_must_follow_iat(self, validator):
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_access_claims(_payload(exp=NOW_TS))
        assert excinfo.value.detail["claim"] == "exp"

    def test_lifetime_capped_at_seven_days(self, validator):
        with pytest.raises(ClaimsValidationError):
            validator.validate_access_claims(_payload(exp=NOW_TS + 7 * 24 * 3600 + 1))

    def test_lifetime_of_exactly_seven_days_allowed(self, validator):
        validator.validate_access_claims(_payload(exp=NOW_TS + 7 * 24 * 3600))

    def test_expired_token(self, validator):
        with pytest.raises(TokenExpiredError):
            validator.validate_access_claims(_payload(iat=NOW_TS - 960, exp=NOW_TS - 31))

    def test_expiry_within_leeway_accepted(self, validator):
        validator.validate_access_claims(_payload(iat=NOW_TS - 900, exp=NOW_TS - 29))

    def test_future_iat_rejected(self, validator):
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_access_claims(_payload(iat=NOW_TS + 120, exp=NOW_TS + 1020))
        assert excinfo.value.detail["claim"] == "iat"


class TestIssuerAudience:
    def test_wrong_issuer(self, validator):
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_access_claims(_payload(iss="someone-else"))
        assert excinfo.value.detail["claim"] == "iss"

    def test_disjoint_audience(self, validator):
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_access_claims(_payload(aud=["other-api"]))
        assert excinfo.value.detail["claim"] == "aud"

    def test_overlapping_audience_accepted(self, validator):
        validator.validate_access_claims(_payload(aud=["other-api", "refreshguard-api"]))


class TestSubjectRules:
    def test_marker_position(self):
        marked = mark_test_subject()
        assert marked.split("-")[4].startswith("7e577e57")
        assert uuid.UUID(marked)

    def test_unmarked_subject_rejected_outside_production(self, validator):
        with pytest.raises(ClaimsValidationError) as excinfo:
            validator.validate_subject(PROD_SUB)
        assert excinfo.value.detail["claim"] == "sub"

    def test_demo_prefix_accepted_outside_production(self, validator):
        assert validator.validate_subject("de300000-2fa1-41d2-883f-0016d3cca427")

    def test_marked_subject_rejected_in_production(self, prod_validator):
        with pytest.raises(ClaimsValidationError):
            prod_validator.validate_subject(TEST_SUB)

    def test_demo_subject_rejected_in_production(self, prod_validator):
        with pytest.raises(ClaimsValidationError):
            prod_validator.validate_subject("de300000-2fa1-41d2-883f-0016d3cca427")

    def test_plain_subject_accepted_in_production(self, prod_validator):
        assert prod_validator.validate_subject(PROD_SUB) == PROD_SUB

    @pytest.mark.parametrize("sub", ["not-a-uuid", "", TEST_SUB.replace("-", ""), "{" + TEST_SUB + "}"])
    def test_non_canonical_subject_rejected(self, validator, sub):
        with pytest.raises(ClaimsValidationError):
            validator.validate_subject(sub)


class TestJtiRules:
    @pytest.mark.parametrize(
        "jti",
        [
            "00000000-0000-4000-8000-000000000000",
            "01234567-89ab-4cde-8f01-23456789abcd",
            "a1b2c3d4-ffff-ffff-4e5f-6a7b8c9d0e1f",
            "fedcba98-7654-4321-8e1d-3c2b4a5f6e7d",
        ],
    )
    def test_low_entropy_rejected_in_production(self, prod_validator, jti):
        with pytest.raises(ClaimsValidationError) as excinfo:
            prod_validator.validate_jti(jti)
        assert excinfo.value.detail["claim"] == "jti"

    def test_random_jti_accepted_in_production(self, prod_validator):
        assert prod_validator.validate_jti(GOOD_JTI) == GOOD_JTI

    def test_low_entropy_allowed_outside_production(self, validator):
        validator.validate_jti("00000000-0000-4000-8000-000000000000")

    def test_jti_must_be_uuid(self, validator):
        with pytest.raises(ClaimsValidationError):
            validator.validate_jti("jti-1")

    def test_production_payload_end_to_end(self, prod_validator):
        claims = prod_validator.validate_access_claims(_payload(sub=PROD_SUB))
        assert claims.sub == PROD_SUB
