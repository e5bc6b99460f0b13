import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Empty URL keeps the runtime on the process-local KV store
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.auth import AuthService  # noqa: E402
from authkernel.storage.kv import MemoryKeyValueStore  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = "Access-Secret_for-Automation-Only-0123456789"
REFRESH_SECRET = "Refresh-Secret_for-Automation-Only-9876543210"


class FakeClock:
    """Controllable time source shared by the KV store and the orchestrator."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """Collects verification links instead of sending mail."""

    def __init__(self):
        self.sent = []

    def send_email_verification(self, to_email, verify_url, expires_in_minutes):
        self.sent.append((to_email, verify_url, expires_in_minutes))
        return True

    @property
    def last_token(self):
        _, url, _ = self.sent[-1]
        return url.split("token=", 1)[1]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        shared_fs_root=str(tmp_path),
        access_token_secret=ACCESS_SECRET,
        refresh_token_secret=REFRESH_SECRET,
        verification_base_url="https://auth.example.com/verify",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def password_hasher():
    # Minimum argon2 cost keeps the suite fast
    return PasswordHasher(
        time_cost=1, memory_cost=8, parallelism=1, hash_len=16, salt_len=16, type=Type.ID
    )


@pytest.fixture
def auth_service(memory_store, kv, settings, sender, password_hasher, clock):
    service = AuthService(
        memory_store,
        kv,
        settings,
        email_service=sender,
        password_hasher=password_hasher,
        clock=clock,
    )
    service.seed_roles()
    return service


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
