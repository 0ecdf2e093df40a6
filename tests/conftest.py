import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Configure the test environment before any imports that might initialize runtime
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET_TEST", "refreshguard-suite-signing-key-0f9e8d7c6b5a4")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from refreshguard.config import Environment, Settings  # noqa: E402
from refreshguard.service.audit import MemoryAuditSink  # noqa: E402
from refreshguard.service.claims import mark_test_subject  # noqa: E402
from refreshguard.service.clock import ManualClock  # noqa: E402
from refreshguard.service.issuer import TokenIssuer  # noqa: E402
from refreshguard.service.rotation import RotationEngine  # noqa: E402
from refreshguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from refreshguard.service.signing_keys import SigningKey  # noqa: E402
from refreshguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET_TEST"]
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(environment=Environment.TEST, jwt_secret_test=TEST_SECRET)


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def key():
    return SigningKey.from_secret(Environment.TEST, TEST_SECRET)


@pytest.fixture
def issuer(settings, store, key, clock, audit):
    return TokenIssuer(settings, store, key, clock=clock, audit=audit)


@pytest.fixture
def engine(settings, store, issuer, clock, audit):
    return RotationEngine(settings, store, issuer, clock=clock, audit=audit)


@pytest.fixture
def user(store):
    return store.create_user(
        "ada@example.com", github_username="ada", user_id=mark_test_subject()
    )
