import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="identityd_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from argon2 import PasswordHasher, Type  # noqa: E402

from identityd.config import Settings  # noqa: E402
from identityd.service.audit import AuthOutcome  # noqa: E402
from identityd.service.auth import AuthService  # noqa: E402
from identityd.service.credentials import CredentialVerifier  # noqa: E402
from identityd.service.email import BackgroundEmailDispatch  # noqa: E402
from identityd.service.refresh import RefreshTokenManager  # noqa: E402
from identityd.service.tokens import AccessTokenIssuer, SigningKey, TokenCodec  # noqa: E402
from identityd.service.two_factor import TwoFactorChallengeManager  # noqa: E402
from identityd.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Controllable UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Email dispatcher that only remembers what it was asked to send."""

    def __init__(self, *, fail: bool = False) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.codes: list[tuple[str, str]] = []
        self.fail = fail

    def send_verification_email(self, address: str, token: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.verifications.append((address, token))
        return True

    def send_two_factor_code(self, address: str, code: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.codes.append((address, code))
        return True


class RecordingAuditSink:
    def __init__(self) -> None:
        self.outcomes: list[AuthOutcome] = []

    def record(self, outcome: AuthOutcome) -> None:
        self.outcomes.append(outcome)

    def actions(self) -> list[str]:
        return [o.action for o in self.outcomes]


class Engine:
    """Components wired against one memory store and one fake clock."""

    def __init__(
        self,
        store: MemoryStore,
        clock: FakeClock,
        *,
        challenges=None,
        revoke_on_rotation: bool = False,
    ):
        self.store = store
        self.clock = clock
        self.email = RecordingEmail()
        self.dispatch = BackgroundEmailDispatch(self.email)
        self.audit = RecordingAuditSink()
        self.key = SigningKey.from_secret(
            TEST_SECRET, issuer="identityservice", audience="identityservice-api"
        )
        self.codec = TokenCodec(self.key, clock=clock)
        # cheap argon2 parameters keep the suite fast
        self.hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
        self.credentials = CredentialVerifier(
            store, email=self.dispatch, hasher=self.hasher, clock=clock
        )
        self.two_factor = TwoFactorChallengeManager(
            store, challenges or store, self.codec, email=self.dispatch, clock=clock
        )
        self.access_tokens = AccessTokenIssuer(self.codec)
        self.refresh_tokens = RefreshTokenManager(
            store,
            store,
            self.access_tokens,
            revoke_on_rotation=revoke_on_rotation,
            clock=clock,
        )
        self.auth = AuthService(
            self.credentials,
            self.two_factor,
            self.access_tokens,
            self.refresh_tokens,
            audit_sink=self.audit,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), secret_encryption_key=TEST_SECRET)


@pytest.fixture
def engine(store, clock):
    return Engine(store, clock)


@pytest.fixture
def make_engine(store, clock):
    def _make(**kwargs) -> Engine:
        return Engine(store, clock, **kwargs)

    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
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
