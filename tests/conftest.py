import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="clinicauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production"
)
# Sessions, OTPs and the blacklist live in MemoryCache during tests
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinicauth.config import Settings  # noqa: E402
from clinicauth.service.auth import AuthService  # noqa: E402
from clinicauth.service.mobile import MobileInstanceRegistrar  # noqa: E402
from clinicauth.service.notifier import Notifier  # noqa: E402
from clinicauth.service.otp import OtpEngine  # noqa: E402
from clinicauth.service.passwords import PasswordHasher  # noqa: E402
from clinicauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from clinicauth.service.tokens import TokenEngine  # noqa: E402
from clinicauth.storage.memory import MemoryStore  # noqa: E402
from clinicauth.storage.memory_cache import MemoryCache  # noqa: E402
from clinicauth.storage.models import RoleRef  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock shared by the cache, OTP and token engines."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
        redis_url="",
    )
    values.update(overrides)
    return Settings(**values)


def build_auth_service(settings: Settings, store: MemoryStore, cache: MemoryCache, clock):
    return AuthService(
        store,
        cache,
        settings,
        otp=OtpEngine(cache, settings, clock=clock),
        tokens=TokenEngine(settings, clock=clock),
        hasher=PasswordHasher(),
        notifier=Notifier.from_settings(settings),
        mobile=MobileInstanceRegistrar(store, cache, settings),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def auth_service(settings, memory_store, cache, clock):
    return build_auth_service(settings, memory_store, cache, clock)


@pytest.fixture
def make_service(memory_store, cache, clock):
    """Build an AuthService over the shared store/cache with setting overrides."""

    def _make(**overrides):
        return build_auth_service(make_settings(**overrides), memory_store, cache, clock)

    return _make


@pytest.fixture
def alice(memory_store):
    password_hash, algo = PasswordHasher().hash("P@ss1")
    return memory_store.create_user(
        "alice",
        email="alice@example.com",
        mobile_number="9876543210",
        password_hash=password_hash,
        password_algo=algo,
        roles=[RoleRef(role_id="role-doctor", role_name="Doctor", role_category="CLINICAL")],
        person_id="person-alice",
        user_name="Alice",
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
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
