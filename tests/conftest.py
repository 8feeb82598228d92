import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="zajel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL selects the in-process MemoryCache
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("FRONTEND_URL", "https://shop.example.com")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from zajel_auth.service.runtime import reset_runtime_for_tests  # noqa: E402


def _wipe_memory_store() -> None:
    state = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    state.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_memory_store()
    reset_runtime_for_tests()
    yield
    _wipe_memory_store()
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


class Mailbox:
    """Captures outgoing mail in place of the SMTP-backed EmailService."""

    def __init__(self):
        self.messages = []

    def _record(self, kind, to_email, **fields):
        self.messages.append({"kind": kind, "to": to_email, **fields})
        return True

    def send_verification_code(self, to_email, name, code):
        return self._record("verification", to_email, code=code)

    def send_email_change_code(self, to_email, code):
        return self._record("email_change", to_email, code=code)

    def send_password_reset(self, to_email, name, reset_url, ttl_minutes):
        return self._record("password_reset", to_email, url=reset_url)

    def send_account_deleted(self, to_email, name):
        return self._record("account_deleted", to_email)

    def last(self, kind, to_email=None):
        for message in reversed(self.messages):
            if message["kind"] == kind and (to_email is None or message["to"] == to_email):
                return message
        raise AssertionError(f"no {kind} message for {to_email}")


class FakeSmsClient:
    """Stands in for Twilio Verify: approves APPROVED_CODE only."""

    APPROVED_CODE = "123456"

    def __init__(self, configured=True):
        self.is_configured = configured
        self.sent = []

    async def send_code(self, phone_number):
        self.sent.append(phone_number)

    async def check_code(self, phone_number, code):
        return code == self.APPROVED_CODE


@pytest.fixture
def runtime(reset_runtime_state):
    from zajel_auth.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def mailbox(runtime):
    box = Mailbox()
    for name in (
        "send_verification_code",
        "send_email_change_code",
        "send_password_reset",
        "send_account_deleted",
    ):
        setattr(runtime.email, name, getattr(box, name))
    return box


@pytest.fixture
def sms(runtime):
    fake = FakeSmsClient()
    runtime.sms = fake
    runtime.verification.sms_channel.sms = fake
    return fake
