import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before vendorportal modules read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="vendorportal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from vendorportal.config import Settings  # noqa: E402
from vendorportal.service.auth import AuthService  # noqa: E402
from vendorportal.service.passwords import PasswordHashing  # noqa: E402
from vendorportal.service.runtime import reset_runtime_for_tests  # noqa: E402
from vendorportal.service.sources import FrozenClock  # noqa: E402
from vendorportal.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent = []

    def _record(self, kind, to_email, token=None):
        self.sent.append({"kind": kind, "to": to_email, "token": token})
        return True

    def send_email_verification(self, to_email, token):
        return self._record("email_verification", to_email, token)

    def send_password_reset(self, to_email, token):
        return self._record("password_reset", to_email, token)

    def send_two_factor_enabled(self, to_email):
        return self._record("two_factor_enabled", to_email)

    def send_password_changed(self, to_email):
        return self._record("password_changed", to_email)

    def of_kind(self, kind):
        return [message for message in self.sent if message["kind"] == kind]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret=TEST_JWT_SECRET, min_password_length=8)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key=TEST_JWT_SECRET)


@pytest.fixture
def hasher():
    return PasswordHashing(time_cost=1, memory_cost=1024)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(memory_store, settings, clock, hasher, notifier):
    return AuthService(
        memory_store, settings, notifier=notifier, clock=clock, hasher=hasher
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
