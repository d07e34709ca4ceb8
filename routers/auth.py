"""
Auth router for issuing, refreshing and revoking sessions.
"""

import logfire

from datetime import datetime, timezone

from fastapi import status, APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from typing import Annotated

from middleware.rate_limiting import RequestGate
from schema.security import AccessTokenClaims, LoginRequest, LoginResponse, RefreshTokenRequest, SessionInfoResponse
from security.token_issuer import get_current_claims
from services.auth import AuthService
from services.errors import InvalidCredentials, PersistenceUnavailable, SessionInvalid


router = APIRouter(
    prefix="/api/v1/auth",
    tags=["Auth"],
)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_address(request: Request) -> str:
    # Set by the rate limiting middleware when it ran for this request
    address = getattr(request.state, "client_address", None)
    if address:
        return address
    return RequestGate.resolve_client_address(request.headers, request.client.host if request.client else None)


@router.post("/login", response_model=LoginResponse)
async def login_for_access_token(
    payload: LoginRequest,
    request: Request,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """Login endpoint that returns both access and refresh tokens.

    Accepts either `email` or `tax_id` together with `password`.

    ## Responses
    ### Invalid credentials
    - status code: 401
    - body: ```{'detail': 'Invalid credentials'}```

    ### Too many login attempts
    - status code: 429
    - body: ```{'detail': '...', 'retry_after': 900, 'remaining': 0, 'max_attempts': 5}```

    ### Persistence unavailable
    - status code: 503
    - body: ```{'detail': 'Service temporarily unavailable'}```
    """
    try:
        return await auth_service.login(payload.identifier, payload.password, origin=_client_address(request))
    except InvalidCredentials as e:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": e.message},
            headers={"WWW-Authenticate": "Bearer"},
        )
    except PersistenceUnavailable as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": e.message},
        )
    except Exception as e:
        logfire.error(f"Fatal error occured during login: {type(e).__name__}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred during login. Please try again later."
            },
        )


@router.post("/refresh", response_model=LoginResponse)
async def refresh_access_token(
    payload: RefreshTokenRequest,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """Refresh endpoint to get a new access token using a refresh token.

    The refresh token in the response is the one that was sent; it stays valid until it expires.

    ## Responses
    ### Invalid or expired refresh token
    - status code: 401
    - body: ```{'detail': 'Invalid or expired refresh token'}```
    """
    try:
        return await auth_service.refresh(payload.refresh_token)
    except SessionInvalid as e:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": e.message},
        )
    except PersistenceUnavailable as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": e.message},
        )
    except Exception as e:
        logfire.error(f"Fatal error occured during token refresh: {type(e).__name__}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "An unexpected error occurred. Please try again later."},
        )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    payload: RefreshTokenRequest,
    auth_service: Annotated[AuthService, Depends(get_auth_service)],
):
    """Logout endpoint that revokes the refresh token.

    Succeeds for unknown or already revoked tokens.
    """
    if not payload.refresh_token.strip():
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "refresh_token is required"},
        )

    try:
        await auth_service.logout(payload.refresh_token)
    except PersistenceUnavailable as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": e.message},
        )

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=SessionInfoResponse)
async def read_session(claims: Annotated[AccessTokenClaims, Depends(get_current_claims)]):
    """Describe the session behind the bearer access token."""
    return SessionInfoResponse(
        principal_id=claims.sub,
        expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
    )
