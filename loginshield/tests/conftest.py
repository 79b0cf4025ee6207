"""Shared test fixtures for login shield tests.

Provides:
- Deterministic clock and recording notifiers
- Tracker, captcha manager and gate wired over in-memory backends
- FastAPI test app and httpx AsyncClient for API testing
"""
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Set required environment variables BEFORE any app imports
os.environ.setdefault("SHIELD_SECRET_KEY", "test-secret-key-for-unit-tests-only")
os.environ.setdefault("SHIELD_NOTIFY_CHANNEL", "none")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)

# Clear the lru_cache so test env vars take effect
from loginshield.core.config import get_shield_settings
get_shield_settings.cache_clear()

from httpx import ASGITransport, AsyncClient

from loginshield.core.attempt_tracker import AttemptTracker
from loginshield.core.cache import TransientCache
from loginshield.core.captcha import CaptchaManager
from loginshield.core.config import PolicyConfig, ShieldSettings
from loginshield.core.errors import NotifyFailure
from loginshield.core.policy_gate import PolicyGate
from loginshield.core.rate_limit import limiter
from loginshield.core.store import InMemoryRecordStore
from loginshield.main import create_app

TEST_SECRET = "test-secret-key-for-unit-tests-only"
ADMIN_KEY = "test-admin-key"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.sent = []

    async def notify(self, address, subject, body):
        self.sent.append((address, subject, body))


class FailingNotifier:
    """Always fails, like an unreachable mail relay."""

    def __init__(self):
        self.calls = 0

    async def notify(self, address, subject, body):
        self.calls += 1
        raise NotifyFailure("relay down")


class FixedRandom:
    """Stands in for SystemRandom so generated questions are predictable."""

    def __init__(self, num1, num2, op):
        self._numbers = [num1, num2]
        self._op = op

    def randint(self, a, b):
        return self._numbers.pop(0)

    def choice(self, seq):
        return self._op


def make_policy(**overrides) -> PolicyConfig:
    values = {
        "max_attempts": 5,
        "lockout_duration": timedelta(minutes=10),
        "captcha_after_attempts": 3,
        "captcha_enabled": True,
        "notify_address": "admin@example.com",
    }
    values.update(overrides)
    return PolicyConfig(**values)


def make_settings(**overrides) -> ShieldSettings:
    env = {
        "SHIELD_SECRET_KEY": TEST_SECRET,
        "SHIELD_NOTIFY_CHANNEL": "none",
        "SHIELD_ADMIN_API_KEY": ADMIN_KEY,
    }
    env.update(overrides)
    return ShieldSettings(**env)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    limiter.reset()
    yield


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def store():
    return InMemoryRecordStore()


@pytest.fixture()
def policy():
    return make_policy()


@pytest.fixture()
def tracker(store, policy, notifier, clock):
    return AttemptTracker(store, policy, notifier=notifier, clock=clock)


@pytest.fixture()
def cache():
    return TransientCache()


@pytest.fixture()
def captcha(cache, store, policy):
    return CaptchaManager(cache, store, policy)


@pytest.fixture()
def gate(tracker, captcha):
    return PolicyGate(tracker, captcha, TEST_SECRET)


# ── App and client fixtures ──────────────────────────────────

@pytest.fixture()
def app(store, notifier):
    """Create a fresh FastAPI app over in-memory backends."""
    get_shield_settings.cache_clear()
    _app = create_app(settings=make_settings(), store=store, notifier=notifier)
    yield _app
    _app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    """Anonymous HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def admin_client(app):
    """HTTP client sending the admin key."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Admin-Key": ADMIN_KEY},
    ) as ac:
        yield ac
