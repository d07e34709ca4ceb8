import logfire

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from contextlib import asynccontextmanager

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from middleware.rate_limiting import RateLimitMiddleware, RequestGate, rate_limit_exceeded_handler

from models.helpers import RouteClass
from models.users import User
from models.security import RefreshToken

from security.helpers import SigningKeys, load_signing_keys
from security.refresh_token import SessionStore
from security.token_issuer import AccessTokenIssuer, AccessTokenVerifier

from services.auth import AuthService
from services.credentials import CredentialValidator
from services.errors import RateLimitExceeded, ServiceError
from services.rate_limiter import AdmissionController, InMemoryBucketStore, policies_from_settings
from services.storage import (
    BeaniePrincipalDirectory,
    BeanieRefreshTokenRepository,
    InMemoryPrincipalDirectory,
    InMemoryRefreshTokenRepository,
    PrincipalDirectory,
    RefreshTokenRepository,
)

from routers import auth

from utils.logger import configure_logging, instrument_libraries
from utils.settings import Settings


@dataclass
class AuthComponents:
    """Everything the routes need once signing keys and storage are ready."""

    auth_service: AuthService
    access_token_verifier: AccessTokenVerifier


def build_auth_components(
    settings: Settings,
    keys: SigningKeys,
    directory: PrincipalDirectory,
    repository: RefreshTokenRepository,
) -> AuthComponents:
    """Wire the token issuer, session store and credential validator together."""
    timeout = settings.persistence_timeout_seconds

    issuer = AccessTokenIssuer(
        keys,
        issuer=settings.jwt_issuer,
        ttl_seconds=settings.access_token_expire_seconds,
    )
    sessions = SessionStore(
        repository,
        ttl_seconds=settings.refresh_token_expire_seconds,
        timeout_seconds=timeout,
    )
    validator = CredentialValidator(
        directory,
        timeout_seconds=timeout,
        max_tracked=settings.failed_attempts_max_tracked,
    )

    return AuthComponents(
        auth_service=AuthService(validator, issuer, sessions, directory, timeout_seconds=timeout),
        access_token_verifier=AccessTokenVerifier.for_keys(keys, issuer=settings.jwt_issuer),
    )


def build_request_gate(settings: Settings, clock: Optional[Callable[[], float]] = None) -> RequestGate:
    """Create the bucket registry, admission controller and gate for one process."""
    policies = policies_from_settings(settings)
    controller_options = {"clock": clock} if clock else {}
    controller = AdmissionController(
        InMemoryBucketStore(max_buckets=settings.rate_limit_max_buckets),
        default_policy=policies[RouteClass.DEFAULT],
        idle_seconds=settings.rate_limit_idle_seconds,
        sweep_batch_size=settings.rate_limit_sweep_batch_size,
        **controller_options,
    )
    return RequestGate(
        controller,
        policies,
        login_paths=settings.rate_limit_login_paths,
        exclude_paths=settings.rate_limit_exclude_paths,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logfire.info("Starting Turnstile application...")
    settings: Settings = app.state.settings
    client = None

    if app.state.auth_service is None:
        # A missing or broken key aborts startup here
        keys = load_signing_keys(
            settings.jwt_private_key_path,
            settings.jwt_public_key_path,
            settings.jwt_algorithm,
        )

        if settings.storage_backend == "mongo":
            client = AsyncIOMotorClient(
                settings.database_connection_string,
                serverSelectionTimeoutMS=int(settings.persistence_timeout_seconds * 1000),
            )  # * Connect to MongoDB

            await init_beanie(
                database=client[settings.database_name],
                document_models=[User, RefreshToken],
            )
            logfire.info("Database initialized successfully")
            directory, repository = BeaniePrincipalDirectory(), BeanieRefreshTokenRepository()
        else:
            logfire.warning("Using in-memory storage; sessions are lost on restart")
            directory, repository = InMemoryPrincipalDirectory(), InMemoryRefreshTokenRepository()

        components = build_auth_components(settings, keys, directory, repository)
        app.state.auth_service = components.auth_service
        app.state.access_token_verifier = components.access_token_verifier

    yield

    logfire.info("Shutting down Turnstile application...")
    if client is not None:
        client.close()
    logfire.info("Application shutdown complete")


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[AuthComponents] = None,
    rate_limit_clock: Optional[Callable[[], float]] = None,
) -> FastAPI:
    """Application factory.

    Passing `components` skips key loading and database setup at startup.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="Turnstile API",
        description="Issues and revokes short lived API sessions and rate limits inbound requests.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.auth_service = components.auth_service if components else None
    app.state.access_token_verifier = components.access_token_verifier if components else None

    gate = build_request_gate(settings, clock=rate_limit_clock)
    app.state.request_gate = gate

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RateLimitMiddleware, gate=gate)

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(ServiceError, service_error_handler)

    app.include_router(auth.router)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    instrument_libraries(app, settings)
    return app


# Configure logfire BEFORE creating FastAPI app
_settings = Settings.from_env()
configure_logging(_settings)

app = create_app(_settings)
