"""Defines schema of requests and responses related to security"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from typing import Annotated, Optional, Self

from schema.users import PrincipalSummary


class LoginRequest(BaseModel):
    """Login with either an email or a tax id, plus the password."""

    email: Annotated[Optional[str], Field(default=None, max_length=254)]
    tax_id: Annotated[Optional[str], Field(default=None, max_length=18)]
    password: Annotated[str, Field(min_length=1, max_length=256)]

    @property
    def identifier(self) -> str:
        """Email wins over tax id when both are sent."""
        if self.email and self.email.strip():
            return self.email.strip()
        return (self.tax_id or "").strip()


class LoginResponse(BaseModel):
    """Model representing both access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int  # Access token expiry in seconds
    user: PrincipalSummary


class RefreshTokenRequest(BaseModel):
    """Model for refresh and logout requests."""

    refresh_token: Annotated[str, Field(max_length=512)]


class RefreshTokenRecord(BaseModel):
    """Persisted refresh token. Only the hash of the opaque token is kept."""

    model_config = ConfigDict(frozen=True)

    token_hash: str
    principal_id: str
    expires_at: datetime
    created_at: datetime


class IssuedRefreshToken(BaseModel):
    """Returned by the session store on creation. Holds the plain token exactly once."""

    model_config = ConfigDict(frozen=True)

    token: Annotated[str, Field(repr=False)]
    record: RefreshTokenRecord

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class AccessTokenClaims(BaseModel):
    """Model representing data contained in an access token."""

    sub: str
    iss: str
    iat: int
    exp: int

    @model_validator(mode="after")
    def check_expiry_after_issue(self) -> Self:
        if self.exp <= self.iat:
            raise ValueError("exp must be after iat")
        return self


class SessionInfoResponse(BaseModel):
    """Describes the authenticated session behind an access token."""

    principal_id: str
    expires_at: datetime


class RateLimitErrorResponse(BaseModel):
    """Body of a 429 response."""

    detail: str
    retry_after: int
    remaining: int
    max_attempts: Optional[int] = None
