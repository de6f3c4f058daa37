import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="fineguard_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from fineguard.config import Settings  # noqa: E402
from fineguard.service.auth import AuthService  # noqa: E402
from fineguard.service.clock import ManualClock  # noqa: E402
from fineguard.service.email import EmailService  # noqa: E402
from fineguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from fineguard.storage.memory import MemoryIdentityStore, MemoryRevocationList  # noqa: E402

PASSWORD = "Traffic@2024x"
NEW_PASSWORD = "Renewed!Pass99"


class RecordingEmailService(EmailService):
    """EmailService that keeps outgoing tokens instead of sending mail."""

    def __init__(self):
        super().__init__()
        self.sent = []

    def send_password_reset(self, to_email, token, *, expires_minutes):
        self.sent.append(("reset", to_email, token, expires_minutes))
        return True

    def send_email_verification(self, to_email, token, *, expires_minutes):
        self.sent.append(("verification", to_email, token, expires_minutes))
        return True

    def send_second_factor_changed(self, to_email, *, enabled):
        self.sent.append(("second_factor", to_email, enabled, None))
        return True

    def last(self, kind):
        for entry in reversed(self.sent):
            if entry[0] == kind:
                return entry
        raise AssertionError(f"no {kind} email recorded")

    def last_token(self, kind):
        return self.last(kind)[2]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Test settings with a cheap argon2 cost."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        use_memory_store=True,
        argon2_time_cost=1,
        argon2_memory_cost_kib=8192,
        argon2_parallelism=1,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryIdentityStore()


@pytest.fixture
def revocations():
    return MemoryRevocationList()


@pytest.fixture
def mailer():
    return RecordingEmailService()


@pytest.fixture
def auth_service(store, revocations, settings, mailer, clock):
    return AuthService(store, revocations, settings, email=mailer, clock=clock)


@pytest.fixture
def citizen(auth_service):
    """A registered citizen identity (as stored)."""
    view = asyncio.run(
        auth_service.register(
            email="Juan.DelaCruz@example.ph",
            phone_number="+639171234567",
            password=PASSWORD,
            driver_license_number="n01-23-456789",
            first_name="Juan",
            last_name="Dela Cruz",
        )
    )
    return auth_service.credentials.find_by_id(view.id)


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
