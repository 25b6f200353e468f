import asyncio
import inspect
import os
import tempfile

# Environment must be in place before tokenward modules read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process validation cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from tokenward.service.credentials import CredentialVerifier  # noqa: E402
from tokenward.service.ledger import TokenLedger  # noqa: E402
from tokenward.service.login_attempts import LoginAttemptService  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.service.sessions import SessionManager  # noqa: E402
from tokenward.service.signer import TokenSigner  # noqa: E402
from tokenward.storage.local_cache import LocalTokenCache  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402
from tokenward.storage.models import Role  # noqa: E402

TEST_PASSWORD = "CorrectHorse9!"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh state directory per test keeps MemoryStore persistence isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    # Drop the test's env overrides before re-reading settings on teardown
    monkeypatch.undo()
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()


@pytest.fixture
def cheap_hasher():
    """Argon2id with minimal cost so tests that hash stay fast."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return LocalTokenCache(ttl_seconds=30)


@pytest.fixture
def signer():
    return TokenSigner(
        "unit-test-signing-key-with-enough-entropy-0123456789",
        issuer="tokenward",
        audience="tokenward-clients",
    )


@pytest.fixture
def credentials(store, cheap_hasher):
    return CredentialVerifier(store, hasher=cheap_hasher)


@pytest.fixture
def ledger(store, cache):
    return TokenLedger(store, cache)


@pytest.fixture
def attempts(store):
    return LoginAttemptService(store, threshold=3, window_minutes=30)


@pytest.fixture
def sessions(ledger, signer, credentials, attempts):
    return SessionManager(
        ledger,
        signer,
        credentials,
        attempts=attempts,
        lockout_enabled=True,
    )


@pytest.fixture
def make_user(store, credentials):
    """Create an ACTIVE user with ``TEST_PASSWORD`` set."""

    def _make(email: str = "alice@example.com", role: Role = Role.USER):
        user = store.create_user(email, role=role)
        credentials.set_password(user.id, TEST_PASSWORD)
        return user

    return _make


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
