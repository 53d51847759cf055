import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Environment must be in place before any import that reads settings
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from argon2 import PasswordHasher  # noqa: E402

from backoffice.config import Settings  # noqa: E402
from backoffice.service.clock import FixedClock  # noqa: E402
from backoffice.service.context import RequestContext  # noqa: E402
from backoffice.service.passwords import PasswordCredentialVerifier  # noqa: E402
from backoffice.service.runtime import reset_runtime_for_tests  # noqa: E402
from backoffice.storage.memory import MemoryStore  # noqa: E402

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def verifier():
    # minimal argon2 cost keeps the suite fast
    return PasswordCredentialVerifier(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def ctx():
    return RequestContext(correlation_id="test-correlation", client_ip="127.0.0.1")


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
