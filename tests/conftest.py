import os

from datetime import datetime, timedelta, timezone

import logfire
import pytest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

os.environ.setdefault("STORAGE_BACKEND", "memory")

from schema.users import Principal  # noqa: E402
from security.helpers import load_signing_keys, pwd_context  # noqa: E402
from services.storage import InMemoryPrincipalDirectory  # noqa: E402

PASSWORD = "correct horse battery staple"

# Minimum bcrypt cost keeps the suite fast; verification reads the cost from the hash
fast_bcrypt = pwd_context.handler("bcrypt").using(rounds=4)


class FakeClock:
    """Monotonic seconds that only move when a test says so."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateTimeClock:
    """Wall clock for components that work with aware datetimes."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def write_key_pair(directory) -> tuple:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = directory / "private_key.pem"
    public_path = directory / "public_key.pem"
    private_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    return private_path, public_path


@pytest.fixture(scope="session", autouse=True)
def quiet_logfire():
    logfire.configure(send_to_logfire=False, console=False)


@pytest.fixture(scope="session")
def key_paths(tmp_path_factory):
    return write_key_pair(tmp_path_factory.mktemp("keys"))


@pytest.fixture(scope="session")
def signing_keys(key_paths):
    private_path, public_path = key_paths
    return load_signing_keys(private_path, public_path)


@pytest.fixture(scope="session")
def password_hash():
    return fast_bcrypt.hash(PASSWORD)


@pytest.fixture
def principal(password_hash):
    return Principal(
        id="64b7f0c2a1e4d3b2c1a09f81",
        name="Ada Lovelace",
        email="ada@example.com",
        tax_id="12345678000199",
        password_hash=password_hash,
    )


@pytest.fixture
def directory(principal):
    directory = InMemoryPrincipalDirectory()
    directory.add(principal)
    return directory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeDateTimeClock()
