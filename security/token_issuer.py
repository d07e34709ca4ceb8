"""Issues and verifies short lived RS256 access tokens.

The issuer holds the private key; verification only ever needs the public
key, so any process that has it can check a token without calling back here.
"""
import time

import logfire

from typing import Annotated, Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from jose import jwt
from jose.exceptions import JOSEError

from pydantic import ValidationError

from schema.security import AccessTokenClaims
from security.helpers import SigningKeys
from services.errors import AccessTokenInvalid


bearer_scheme = HTTPBearer(auto_error=False)


class AccessTokenIssuer:
    """Stateless signer for access tokens."""

    def __init__(
        self,
        keys: SigningKeys,
        issuer: str,
        ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self._private_key = keys.private_key
        self.algorithm = keys.algorithm
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, principal_id: str) -> str:
        """Sign a token for `principal_id` valid for `ttl_seconds` from now.

        Args:
            principal_id (str): Subject of the token.

        Returns:
            str: The compact JWS.
        """
        issued_at = int(self._clock())
        claims = {
            "iss": self.issuer,
            "sub": str(principal_id),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        token = jwt.encode(claims, self._private_key, algorithm=self.algorithm)

        logfire.debug(f"Access token issued for principal {principal_id}, expires at {claims['exp']}")
        return token


class AccessTokenVerifier:
    """Checks signature, issuer and expiry with the public key only."""

    def __init__(
        self,
        public_key: str,
        issuer: str,
        algorithm: str = "RS256",
        clock: Callable[[], float] = time.time,
    ):
        self._public_key = public_key
        self.issuer = issuer
        self.algorithm = algorithm
        self._clock = clock

    def verify(self, token: str) -> AccessTokenClaims:
        """Decode `token` and return its claims.

        Raises:
            AccessTokenInvalid: Raised when the signature, issuer or expiry check fails.
        """
        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                # Expiry is checked below against the injected clock
                options={"verify_exp": False, "verify_aud": False},
            )
            claims = AccessTokenClaims(**payload)
        except (JOSEError, ValidationError, TypeError):
            raise AccessTokenInvalid()

        if claims.exp <= self._clock():
            raise AccessTokenInvalid("Token has expired")

        return claims

    @classmethod
    def for_keys(cls, keys: SigningKeys, issuer: str, clock: Callable[[], float] = time.time) -> "AccessTokenVerifier":
        return cls(public_key=keys.public_key, issuer=issuer, algorithm=keys.algorithm, clock=clock)


def get_access_token_verifier(request: Request) -> AccessTokenVerifier:
    return request.app.state.access_token_verifier


async def get_current_claims(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    verifier: Annotated[AccessTokenVerifier, Depends(get_access_token_verifier)],
) -> AccessTokenClaims:
    """Resolve the verified claims of the bearer token on the request.

    Raises:
        AccessTokenInvalid: Raised when the header is missing or the token does not verify.
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AccessTokenInvalid()

    return verifier.verify(credentials.credentials)
