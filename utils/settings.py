"""Environment driven configuration for the application."""

import os

from pathlib import Path

from dotenv import load_dotenv

from pydantic import BaseModel, ConfigDict, Field

from typing import Annotated, List, Optional


def _get_list(name: str, default: str) -> List[str]:
    """Read a comma separated environment variable into a list of non empty values."""
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Settings consumed by the token issuer, session store and rate limiter."""

    model_config = ConfigDict(frozen=True)

    # Token lifetimes
    access_token_expire_seconds: Annotated[int, Field(gt=0)] = 900
    refresh_token_expire_days: Annotated[int, Field(gt=0)] = 15

    # Signing key material
    jwt_issuer: str = "turnstile"
    jwt_algorithm: str = "RS256"
    jwt_private_key_path: Path = Path("keys/private_key.pem")
    jwt_public_key_path: Path = Path("keys/public_key.pem")

    # Default route bucket
    rate_limit_default_capacity: Annotated[int, Field(gt=0)] = 100
    rate_limit_default_refill_tokens: Annotated[int, Field(gt=0)] = 100
    rate_limit_default_refill_seconds: Annotated[float, Field(gt=0)] = 60

    # Login route bucket
    rate_limit_login_capacity: Annotated[int, Field(gt=0)] = 5
    rate_limit_login_refill_tokens: Annotated[int, Field(gt=0)] = 5
    rate_limit_login_refill_seconds: Annotated[float, Field(gt=0)] = 900

    rate_limit_login_paths: List[str] = ["/api/v1/auth/login"]
    rate_limit_exclude_paths: List[str] = ["/health"]
    rate_limit_idle_seconds: Annotated[float, Field(gt=0)] = 3600
    rate_limit_max_buckets: Annotated[int, Field(gt=0)] = 100_000
    rate_limit_sweep_batch_size: Annotated[int, Field(gt=0)] = 1000

    failed_attempts_max_tracked: Annotated[int, Field(gt=0)] = 10_000
    persistence_timeout_seconds: Annotated[float, Field(gt=0)] = 5

    # Persistence
    storage_backend: str = "mongo"  # "mongo" or "memory"
    database_connection_string: Optional[str] = None
    database_name: str = "turnstile"

    logfire_write_token: Optional[str] = None
    cors_origins: List[str] = ["*"]

    @property
    def refresh_token_expire_seconds(self) -> int:
        return self.refresh_token_expire_days * 24 * 3600

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, reading `.env` first if present."""
        load_dotenv()

        return cls(
            access_token_expire_seconds=int(os.getenv("ACCESS_TOKEN_EXPIRE_SECONDS", "900")),
            refresh_token_expire_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "15")),
            jwt_issuer=os.getenv("JWT_ISSUER", "turnstile"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "RS256"),
            jwt_private_key_path=Path(os.getenv("JWT_PRIVATE_KEY_PATH", "keys/private_key.pem")),
            jwt_public_key_path=Path(os.getenv("JWT_PUBLIC_KEY_PATH", "keys/public_key.pem")),
            rate_limit_default_capacity=int(os.getenv("RATE_LIMIT_DEFAULT_CAPACITY", "100")),
            rate_limit_default_refill_tokens=int(os.getenv("RATE_LIMIT_DEFAULT_REFILL_TOKENS", "100")),
            rate_limit_default_refill_seconds=float(os.getenv("RATE_LIMIT_DEFAULT_REFILL_SECONDS", "60")),
            rate_limit_login_capacity=int(os.getenv("RATE_LIMIT_LOGIN_CAPACITY", "5")),
            rate_limit_login_refill_tokens=int(os.getenv("RATE_LIMIT_LOGIN_REFILL_TOKENS", "5")),
            rate_limit_login_refill_seconds=float(os.getenv("RATE_LIMIT_LOGIN_REFILL_SECONDS", "900")),
            rate_limit_login_paths=_get_list("RATE_LIMIT_LOGIN_PATHS", "/api/v1/auth/login"),
            rate_limit_exclude_paths=_get_list("RATE_LIMIT_EXCLUDE_PATHS", "/health"),
            rate_limit_idle_seconds=float(os.getenv("RATE_LIMIT_IDLE_SECONDS", "3600")),
            rate_limit_max_buckets=int(os.getenv("RATE_LIMIT_MAX_BUCKETS", "100000")),
            rate_limit_sweep_batch_size=int(os.getenv("RATE_LIMIT_SWEEP_BATCH_SIZE", "1000")),
            failed_attempts_max_tracked=int(os.getenv("FAILED_ATTEMPTS_MAX_TRACKED", "10000")),
            persistence_timeout_seconds=float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", "5")),
            storage_backend=os.getenv("STORAGE_BACKEND", "mongo").lower(),
            database_connection_string=os.getenv("DATABASE_CONNECTION_STRING"),
            database_name=os.getenv("DATABASE_NAME", "turnstile"),
            logfire_write_token=os.getenv("LOGFIRE_WRITE_TOKEN"),
            cors_origins=_get_list("CORS_ORIGINS", "*"),
        )
