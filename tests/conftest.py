import asyncio
import inspect
import os
import sys
import time
from pathlib import Path
from typing import NamedTuple

# Configure the environment before any berthauth import reads it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
for _name in (
    "JWT_KEYS_SECRET_ARN",
    "JWT_KEYSET_JSON",
    "JWT_ACTIVE_KID",
    "JWT_PRIVATE_KEY",
    "JWT_PUBLIC_KEY",
    "JWT_ADDITIONAL_PUBLIC_KEYS",
):
    os.environ.pop(_name, None)

import pytest  # noqa: E402
from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from berthauth.config import Settings  # noqa: E402
from berthauth.service.keystore import KeyStore  # noqa: E402
from berthauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from berthauth.service.tokens import TokenClaims, UserRole  # noqa: E402


class KeyMaterial(NamedTuple):
    kid: str
    private_pem: str
    public_pem: str


def _generate_key(kid: str, bits: int = 2048) -> KeyMaterial:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return KeyMaterial(kid, private_pem, public_pem)


class FakeClock:
    """Manually advanced clock for TTL and window tests."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def primary_key() -> KeyMaterial:
    return _generate_key("primary")


@pytest.fixture(scope="session")
def secondary_key() -> KeyMaterial:
    return _generate_key("2025-02")


@pytest.fixture(scope="session")
def stranger_key() -> KeyMaterial:
    """A key no store under test knows about."""
    return _generate_key("stranger")


@pytest.fixture(scope="session")
def weak_key() -> KeyMaterial:
    return _generate_key("weak", bits=1024)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(primary_key) -> Settings:
    return Settings(
        jwt_active_kid=primary_key.kid,
        jwt_private_key=primary_key.private_pem,
        jwt_public_key=primary_key.public_pem,
        use_memory_cache=True,
        test_mode=True,
    )


@pytest.fixture
def key_store(settings) -> KeyStore:
    return KeyStore.from_environment(settings, environ={})


@pytest.fixture
def claims() -> TokenClaims:
    return TokenClaims(
        user_id="user_001",
        role=UserRole.CAREGIVER,
        zone_id="zone_toronto",
        device_id="device-ios-001",
        email="caregiver@example.com",
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
