import asyncio
import hashlib
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_CACHE_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to the in-memory cache.
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("ARGON2_MEMORY_COST", "8192")
os.environ.setdefault("ARGON2_TIME_COST", "1")

import pyotp  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dunnoauth.config import Settings  # noqa: E402
from dunnoauth.service.auth import AuthService  # noqa: E402
from dunnoauth.service.passwords import PasswordVerifier  # noqa: E402
from dunnoauth.service.rate_limit import RateLimiter  # noqa: E402
from dunnoauth.service.revocation import RevocationStore  # noqa: E402
from dunnoauth.service.tokens import TokenService  # noqa: E402
from dunnoauth.service.two_factor import TwoFactorManager  # noqa: E402
from dunnoauth.storage.memory import MemoryCache, MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
PASSWORD = "s3cret!!42"


class FakeClock:
    """Shared wall clock for the cache, tokens, limiter and TOTP checks."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.current = start

    def time(self) -> float:
        return self.current

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.current, tz=timezone.utc)

    def advance(self, seconds: float = 0, *, minutes: float = 0, days: float = 0) -> None:
        self.current += seconds + minutes * 60 + days * 86400


def totp_for(secret: str, clock: FakeClock) -> str:
    totp = pyotp.TOTP(secret, digits=6, digest=hashlib.sha512, interval=30)
    return totp.at(int(clock.time()))


def wrong_totp_for(secret: str, clock: FakeClock) -> str:
    code = totp_for(secret, clock)
    return f"{(int(code) + 1) % 1_000_000:06d}"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        argon2_memory_cost=8192,
        argon2_time_cost=1,
        cookie_secure=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.time)


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-material")


@pytest.fixture
def passwords(settings):
    return PasswordVerifier(settings)


@pytest.fixture
def revocations(cache):
    return RevocationStore(cache)


@pytest.fixture
def tokens(settings, revocations, clock):
    return TokenService(settings, revocations, clock=clock.now)


@pytest.fixture
def rate_limiter(settings, cache, clock):
    return RateLimiter(settings, cache, clock=clock.time)


@pytest.fixture
def two_factor(store, passwords, settings, clock):
    return TwoFactorManager(store, passwords, settings, clock=clock.time)


@pytest.fixture
def auth(settings, store, passwords, tokens, rate_limiter, two_factor, clock):
    return AuthService(
        settings,
        store,
        passwords,
        tokens,
        rate_limiter,
        two_factor,
        now=clock.now,
    )


@pytest.fixture
def user(store, passwords):
    return store.create_user("alice", "alice@example.com", passwords.hash(PASSWORD))


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
