"""Login, refresh and logout flows.

These run only after the request gate has admitted the request.
"""

import logfire

from typing import Optional

from schema.security import LoginResponse
from security.helpers import mask_identifier
from security.refresh_token import SessionStore
from security.token_issuer import AccessTokenIssuer
from services.credentials import CredentialValidator, Invalid
from services.errors import InvalidCredentials, SessionNotFound
from services.storage import PrincipalDirectory, call_with_timeout


class AuthService:
    """Composes the credential validator, token issuer and session store."""

    def __init__(
        self,
        validator: CredentialValidator,
        issuer: AccessTokenIssuer,
        sessions: SessionStore,
        directory: PrincipalDirectory,
        timeout_seconds: float = 5.0,
    ):
        self.validator = validator
        self.issuer = issuer
        self.sessions = sessions
        self.directory = directory
        self.timeout_seconds = timeout_seconds

    async def login(self, identifier: str, secret: str, origin: Optional[str] = None) -> LoginResponse:
        """Exchange credentials for an access token and a refresh token.

        Args:
            identifier (str): Email or tax id.
            secret (str): Plain text password.
            origin (Optional[str], optional): Client address for audit. Defaults to None.

        Raises:
            InvalidCredentials: Raised for any credential failure.
            PersistenceUnavailable: Raised when a persistence call times out or fails.

        Returns:
            LoginResponse: Token pair and principal summary.
        """
        with logfire.span(f"Login for {mask_identifier(identifier)}"):
            check = await self.validator.validate(identifier, secret, origin=origin)
            if isinstance(check, Invalid):
                raise InvalidCredentials()

            principal = check.principal
            access_token = self.issuer.issue(principal.id)
            refresh_token = await self.sessions.create(principal.id)

            logfire.info(f"Principal {principal.id} logged in successfully")

            return LoginResponse(
                access_token=access_token,
                refresh_token=refresh_token.token,
                expires_in=self.issuer.ttl_seconds,
                user=principal.summary(),
            )

    async def refresh(self, refresh_token: str) -> LoginResponse:
        """Issue a new access token for a valid refresh token.

        The refresh token is returned unchanged and stays valid until it expires,
        is revoked, or is superseded by a new login.

        Raises:
            SessionInvalid: Raised when the token is unknown, expired, or its principal is gone.
            PersistenceUnavailable: Raised when a persistence call times out or fails.
        """
        with logfire.span("Refreshing access token"):
            record = await self.sessions.validate(refresh_token)

            principal = await call_with_timeout(
                self.directory.get_by_id(record.principal_id),
                self.timeout_seconds,
                "principal.get_by_id",
            )
            if principal is None or not principal.is_active:
                logfire.warning(f"Refresh token presented for missing or inactive principal {record.principal_id}")
                await self.sessions.revoke(refresh_token)
                raise SessionNotFound()

            access_token = self.issuer.issue(principal.id)

            logfire.info(f"Access token refreshed for principal {principal.id}")

            return LoginResponse(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=self.issuer.ttl_seconds,
                user=principal.summary(),
            )

    async def logout(self, refresh_token: str) -> None:
        """Revoke the refresh token. Unknown tokens are ignored."""
        with logfire.span("Logging out"):
            await self.sessions.revoke(refresh_token)
