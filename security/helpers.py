"""Contains all security related helper functions
"""
import hashlib
import secrets

import logfire

from dataclasses import dataclass
from pathlib import Path

from passlib.context import CryptContext
from jose import jwk
from jose.exceptions import JOSEError

from services.errors import SigningKeyUnavailable

# Bytes of entropy in an opaque refresh token
REFRESH_TOKEN_BYTES = 48


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


@dataclass(frozen=True)
class SigningKeys:
    """PEM encoded RSA key pair used to sign and verify access tokens."""

    private_key: str
    public_key: str
    algorithm: str = "RS256"

    def __repr__(self) -> str:
        return f"SigningKeys(algorithm={self.algorithm!r})"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies that `plain_password` and `hashed_password` are equal.

    bcrypt salts every hash and passlib compares digests in constant time.

    Args:
        plain_password (str): The plain text password to verify.
        hashed_password (str): The hashed password to compare against.

    Returns:
        bool: True if the passwords match, False otherwise. Malformed hashes count as a mismatch.
    """
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def dummy_verify() -> None:
    """Spend the same time as a real verification. Used when the principal does not exist."""
    pwd_context.dummy_verify()


def get_password_hash(password: str) -> str:
    """Generates a hash for the given password.

    Args:
        password (str): The plain text password to hash.

    Returns:
        str: The hashed password.
    """
    return pwd_context.hash(password)


def generate_refresh_token() -> str:
    """Generate a URL safe opaque refresh token."""
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_refresh_token(token: str) -> str:
    """Digest stored in place of the refresh token itself."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _read_key(path: Path, algorithm: str, kind: str) -> str:
    try:
        pem = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        logfire.error(f"Could not read {kind} key from {path}: {e.strerror}")
        raise SigningKeyUnavailable(f"{kind.capitalize()} key not readable at {path}") from e

    try:
        # Fails on anything that is not a PEM key usable with `algorithm`
        jwk.construct(pem, algorithm)
    except (JOSEError, ValueError, TypeError) as e:
        logfire.error(f"Could not parse {kind} key at {path}")
        raise SigningKeyUnavailable(f"{kind.capitalize()} key at {path} is not a valid {algorithm} key") from e

    return pem


def load_signing_keys(private_key_path: Path, public_key_path: Path, algorithm: str = "RS256") -> SigningKeys:
    """Load and parse the signing key pair. Called once at startup.

    Args:
        private_key_path (Path): PEM file holding the private key.
        public_key_path (Path): PEM file holding the matching public key.
        algorithm (str, optional): JWS algorithm the keys are used with. Defaults to "RS256".

    Raises:
        SigningKeyUnavailable: Raised when either key is missing or unparsable.

    Returns:
        SigningKeys: The loaded key pair.
    """
    with logfire.span("Loading signing keys"):
        private_key = _read_key(private_key_path, algorithm, "private")
        public_key = _read_key(public_key_path, algorithm, "public")
        logfire.info(f"Signing keys loaded for algorithm {algorithm}")

    return SigningKeys(private_key=private_key, public_key=public_key, algorithm=algorithm)


def mask_email(email: str | None) -> str:
    """Keep the first character and the domain: `j***@example.com`."""
    if not email:
        return "***@***"
    at_index = email.find("@")
    if at_index <= 1:
        return "***@***"
    return f"{email[0]}***{email[at_index:]}"


def mask_tax_id(tax_id: str | None) -> str:
    """Keep only the last four characters."""
    if not tax_id or len(tax_id) < 4:
        return "************"
    return f"********{tax_id[-4:]}"


def mask_identifier(identifier: str | None) -> str:
    """Mask an email or tax id for log lines."""
    if not identifier or not identifier.strip():
        return "***"
    if "@" in identifier:
        return mask_email(identifier)
    return mask_tax_id(identifier)
