"""
Refresh token session store.

Each principal has at most one live refresh token. Creating a new one
supersedes the previous record in a single storage step, validating does not
rotate the token, and revoking is idempotent.
"""

import logfire
import pytz

from datetime import datetime, timedelta
from typing import Callable

from schema.security import IssuedRefreshToken, RefreshTokenRecord
from security.helpers import generate_refresh_token, hash_refresh_token
from services.errors import SessionExpired, SessionNotFound
from services.storage import RefreshTokenRepository, call_with_timeout


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


class SessionStore:
    """Creates, validates and revokes refresh tokens."""

    def __init__(
        self,
        repository: RefreshTokenRepository,
        ttl_seconds: int = 15 * 24 * 3600,
        timeout_seconds: float = 5.0,
        now: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository
        self.ttl = timedelta(seconds=ttl_seconds)
        self.timeout_seconds = timeout_seconds
        self._now = now

    async def create(self, principal_id: str) -> IssuedRefreshToken:
        """Issue a new refresh token for `principal_id`, superseding any older one.

        Args:
            principal_id (str): Owner of the new token.

        Raises:
            PersistenceUnavailable: Raised when the repository times out or fails.

        Returns:
            IssuedRefreshToken: The plain token (returned only here) and its stored record.
        """
        token = generate_refresh_token()
        created_at = self._now()
        record = RefreshTokenRecord(
            token_hash=hash_refresh_token(token),
            principal_id=principal_id,
            expires_at=created_at + self.ttl,
            created_at=created_at,
        )

        await call_with_timeout(
            self.repository.replace_for_principal(record),
            self.timeout_seconds,
            "refresh_token.replace_for_principal",
        )

        logfire.info(f"Refresh token created for principal {principal_id}, expires at {record.expires_at.isoformat()}")
        return IssuedRefreshToken(token=token, record=record)

    async def validate(self, token: str) -> RefreshTokenRecord:
        """Look the token up and check its expiry. The token is not rotated.

        Args:
            token (str): The opaque refresh token presented by the client.

        Raises:
            SessionNotFound: Raised when no record matches the token.
            SessionExpired: Raised when the record's expiry is at or before now.
            PersistenceUnavailable: Raised when the repository times out or fails.

        Returns:
            RefreshTokenRecord: The record, whose `principal_id` is the owning principal.
        """
        if not token:
            raise SessionNotFound()

        record = await call_with_timeout(
            self.repository.find_by_hash(hash_refresh_token(token)),
            self.timeout_seconds,
            "refresh_token.find_by_hash",
        )

        if record is None:
            logfire.warning("Attempt to use an unknown refresh token")
            raise SessionNotFound()

        now = self._now()
        if record.expires_at <= now:
            logfire.info(
                f"Expired refresh token presented for principal {record.principal_id}, "
                f"expired at {record.expires_at.isoformat()}"
            )
            raise SessionExpired()

        logfire.debug(f"Refresh token valid for principal {record.principal_id}")
        return record

    async def revoke(self, token: str) -> None:
        """Delete the record for `token` if there is one. Unknown tokens are a no-op.

        Raises:
            PersistenceUnavailable: Raised when the repository times out or fails.
        """
        if not token:
            return

        deleted = await call_with_timeout(
            self.repository.delete_by_hash(hash_refresh_token(token)),
            self.timeout_seconds,
            "refresh_token.delete_by_hash",
        )

        if deleted:
            logfire.info("Refresh token revoked")
        else:
            logfire.debug("Revoke called for a refresh token that does not exist")
