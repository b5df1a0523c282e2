import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tollgate_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TOLLGATE_STORE", "memory")
os.environ.setdefault("LOCKOUT_BACKEND", "store")
os.environ.setdefault("TOLLGATE_ENCRYPTION_KEY", "test-encryption-key-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tollgate.config import AuthPolicy  # noqa: E402
from tollgate.service.credentials import CredentialDirectory  # noqa: E402
from tollgate.service.gateway import AuthGateway  # noqa: E402
from tollgate.service.lockout import LockoutTracker  # noqa: E402
from tollgate.service.recovery import RecoveryCodeVault  # noqa: E402
from tollgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from tollgate.service.sessions import SessionRegistry  # noqa: E402
from tollgate.service.totp import TotpEnrollment  # noqa: E402
from tollgate.storage.cipher import BlobCipher  # noqa: E402
from tollgate.storage.memory import MemoryStore  # noqa: E402

# 2024-01-01T00:00:00Z, aligned to a 30 s TOTP step
EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock; call it to read, ``advance`` to move forward."""

    def __init__(self, start: datetime = EPOCH):
        self.start = start
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


def cheap_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests(hasher=cheap_hasher())
    yield
    reset_runtime_for_tests(hasher=cheap_hasher())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    return cheap_hasher()


@pytest.fixture
def policy():
    return AuthPolicy()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cipher():
    return BlobCipher("unit-test-key-material")


@pytest.fixture
def directory(memory_store, hasher):
    return CredentialDirectory(memory_store, hasher=hasher)


@pytest.fixture
def lockout(memory_store, policy, clock):
    return LockoutTracker(memory_store, policy, clock=clock)


@pytest.fixture
def vault(memory_store, cipher):
    return RecoveryCodeVault(memory_store, cipher)


@pytest.fixture
def enrollment(memory_store, cipher, vault, policy, clock):
    return TotpEnrollment(memory_store, cipher, vault, policy, issuer="Tollgate", clock=clock)


@pytest.fixture
def sessions(memory_store, policy, clock):
    return SessionRegistry(memory_store, policy, clock=clock)


@pytest.fixture
def gateway(directory, lockout, enrollment, vault, sessions, clock):
    return AuthGateway(
        directory=directory,
        lockout=lockout,
        enrollment=enrollment,
        vault=vault,
        sessions=sessions,
        clock=clock,
    )


@pytest.fixture
def credential(directory):
    return directory.create("alice@example.com", "CorrectHorse1!")
