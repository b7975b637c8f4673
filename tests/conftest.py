import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read at import time by archauth.app, so the environment must be
# prepared before anything from the package is imported.
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only")
os.environ.setdefault("OAUTH_SESSION_SECRET", "test-oauth-secret-for-automation-only")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")
# Cheap argon2 parameters keep the suite fast; production uses the defaults.
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.pop("REDIS_URL", None)
os.environ.pop("DATA_ROOT", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from archauth.config import Settings  # noqa: E402
from archauth.service.passwords import PasswordUtility  # noqa: E402
from archauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from archauth.service.sessions import CookiePolicy, CookieSessionManager  # noqa: E402
from archauth.service.tokens import TokenCodec  # noqa: E402
from archauth.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = os.environ["JWT_SECRET"]
REFRESH_SECRET = os.environ["JWT_REFRESH_SECRET"]
OAUTH_SECRET = os.environ["OAUTH_SESSION_SECRET"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        oauth_session_secret=OAUTH_SECRET,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def passwords():
    return PasswordUtility(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def session_manager(memory_store, codec):
    return CookieSessionManager(memory_store, codec, CookiePolicy(), store_timeout=2.0)


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
