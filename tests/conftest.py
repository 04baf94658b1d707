import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings read the environment lazily; pin test defaults before any app import
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("EMAIL_PROVIDER", "mock")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mailgate.config import Settings, reset_settings_cache  # noqa: E402
from mailgate.service.email import MockEmailSender  # noqa: E402
from mailgate.service.runtime import Runtime  # noqa: E402
from mailgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class FixedRandomSource:
    """Hands out the given codes in order, repeating the last one."""

    def __init__(self, *codes: str) -> None:
        self.codes = list(codes) or ["123456"]

    def secure_digits(self, length: int) -> str:
        if len(self.codes) > 1:
            return self.codes.pop(0)
        return self.codes[0]


def make_settings(**overrides) -> Settings:
    values = dict(
        test_mode=True,
        jwt_secret=TEST_SECRET,
        # Cheap hashing keeps the suite fast
        otp_hash_time_cost=1,
        otp_hash_memory_kib=8,
        cookie_secure=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return MockEmailSender()


@pytest.fixture
def runtime(settings, store, mailer, clock):
    return Runtime(
        settings,
        store=store,
        email_sender=mailer,
        clock=clock,
        random_source=FixedRandomSource("123456"),
    )


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
