import importlib.util
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from refreshguard.service.claims import mark_test_subject
from refreshguard.service.clock import ManualClock
from refreshguard.service.runtime import reset_runtime_for_tests

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "purge_expired_tokens.py"


@pytest.fixture
def purge_script():
    spec = importlib.util.spec_from_file_location("purge_expired_tokens", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_purge_uses_configured_retention(purge_script):
    clock = ManualClock(datetime(2026, 3, 1, tzinfo=timezone.utc))
    runtime = reset_runtime_for_tests(clock=clock)
    user = runtime.store.create_user("lin@example.com", user_id=mark_test_subject())
    _, pair = runtime.issuer.start_session(user)
    runtime.rotation.revoke_presented(pair.refresh_token)

    clock.advance(timedelta(days=2))
    assert purge_script.purge() == 0
    assert purge_script.purge(retention_days=1) == 1


def test_main_reports_success(purge_script):
    assert purge_script.main([]) == 0


def test_main_rejects_negative_retention(purge_script):
    assert purge_script.main(["--retention-days", "-1"]) == 1
