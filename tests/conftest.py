import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.auth import Authenticator  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.service.tokens import TokenCodec  # noqa: E402
from authkernel.storage.memory import MemoryRevocationCache, MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Settable clock shared by the codec and the revocation cache."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "use_memory_store": True,
        "test_mode": True,
        "token_ttl_seconds": 3600,
    }
    values.update(overrides)
    return Settings(**values)


def make_authenticator(settings: Settings | None = None, clock: FakeClock | None = None):
    settings = settings or make_settings()
    store = MemoryStore()
    cache = MemoryRevocationCache(clock=clock)
    codec = TokenCodec.from_settings(settings, clock=clock)
    return Authenticator(store, cache, codec, settings)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def authenticator(settings, clock):
    return make_authenticator(settings, clock)


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
