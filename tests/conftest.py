import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Environment must be in place before tutorbridge modules read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tutorbridge_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("INTERNAL_SERVICE_KEY", "test-service-key")
os.environ.setdefault("CREDENTIAL_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from tutorbridge.app import create_app  # noqa: E402
from tutorbridge.config import get_settings, reset_settings_cache  # noqa: E402
from tutorbridge.service.generation import (  # noqa: E402
    GenerationResult,
    detect_format,
    fallback_result,
)
from tutorbridge.service.runtime import Runtime  # noqa: E402
from tutorbridge.storage.memory import MemoryStore  # noqa: E402
from tutorbridge.storage.models import utcnow  # noqa: E402

# Cheap argon2 parameters so auth tests stay fast
FAST_HASHER = PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)

DEFAULT_REPLY = "Hi there! How can I help you today?"


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeGenerator:
    """Generation adapter double that records every call."""

    def __init__(self, reply: str = DEFAULT_REPLY, fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.calls = []
        self.closed = False

    async def generate(self, history, message, *, caller):
        self.calls.append(
            {
                "history": [(turn.role, turn.content) for turn in history],
                "message": message,
                "caller": caller,
            }
        )
        if self.fail:
            return fallback_result("fake-model")
        return GenerationResult(
            content=self.reply,
            format=detect_format(self.reply),
            metadata={"model": "fake-model", "tokens": len(self.reply) // 4},
        )

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(store, generator, clock):
    return Runtime(get_settings(), store, generator, clock=clock, hasher=FAST_HASHER)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


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
