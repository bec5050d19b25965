import asyncio
import hashlib
import hmac
import inspect
import json
import os
import sys
import tempfile
import time
from pathlib import Path
from urllib.parse import urlencode

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="identitygate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("BOT_TOKEN", "123456:test-bot-token")
os.environ.setdefault("PUBLIC_BASE_URL", "https://id.example.test")
os.environ.setdefault("MAGIC_PURGE_INTERVAL_SECONDS", "0")
# Stamp cache and rate limits stay per-process so tests never share Redis state
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from identitygate.service.runtime import reset_runtime_for_tests  # noqa: E402

BOT_TOKEN = os.environ["BOT_TOKEN"]


def sign_init_data(fields, bot_token=BOT_TOKEN):
    """Build an initData string the way the host shell does."""
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    check_string = "\n".join(f"{k}={v}" for k, v in sorted(fields.items()))
    digest = hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()
    return urlencode({**fields, "hash": digest})


def make_init_data(user_id=777, *, auth_date=None, bot_token=BOT_TOKEN, **user_fields):
    user = {"id": user_id, "first_name": "Test", **user_fields}
    fields = {
        "auth_date": str(int(time.time()) if auth_date is None else auth_date),
        "query_id": "AAE-test",
        "user": json.dumps(user, separators=(",", ":")),
    }
    return sign_init_data(fields, bot_token)


@pytest.fixture
def init_data_factory():
    return make_init_data


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh memory-store snapshot per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
