"""
FastAPI Rate Limiting Middleware using Token Bucket Algorithm

Every request is keyed by client address and route class. Login routes get
the strict login policy, everything else the default policy, and the two
never share a bucket.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from models.helpers import RouteClass
from schema.security import RateLimitErrorResponse
from services.errors import RateLimitExceeded
from services.rate_limiter import AdmissionController, Allowed, BucketPolicy


logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one pass through the gate."""

    allowed: bool
    client_address: str
    route_class: RouteClass
    key: str
    policy: BucketPolicy
    remaining: int
    retry_after: int = 0


class RequestGate:
    """
    Resolves the client, classifies the route and asks the admission controller.

    Holds no business logic beyond that; what happens to an allowed request is
    up to whoever called `evaluate`.
    """

    def __init__(
        self,
        controller: AdmissionController,
        policies: Mapping[RouteClass, BucketPolicy],
        login_paths: Iterable[str],
        exclude_paths: Optional[Iterable[str]] = None,
    ):
        self.controller = controller
        self.policies = dict(policies)
        self.login_paths = {self._normalize(path) for path in login_paths}
        self.exclude_paths = {self._normalize(path) for path in exclude_paths or ()}

        logger.info(
            f"Request gate initialized: login paths {sorted(self.login_paths)}, "
            f"login capacity {self.policies[RouteClass.LOGIN].capacity}, "
            f"default capacity {self.policies[RouteClass.DEFAULT].capacity}"
        )

    @staticmethod
    def _normalize(path: str) -> str:
        return path.rstrip("/") or "/"

    @staticmethod
    def resolve_client_address(headers: Mapping[str, str], direct_address: Optional[str]) -> str:
        """
        Extract the client address from the request.

        The first entry of X-Forwarded-For wins, then X-Real-IP, then the
        address of the direct connection.

        Args:
            headers: Request headers (case insensitive mapping)
            direct_address: Peer address of the connection, if known

        Returns:
            Client address string
        """
        forwarded_for = headers.get("x-forwarded-for")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first one
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first

        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip

        return direct_address or UNKNOWN_CLIENT

    def classify(self, path: str) -> RouteClass:
        if self._normalize(path) in self.login_paths:
            return RouteClass.LOGIN
        return RouteClass.DEFAULT

    def is_excluded(self, path: str) -> bool:
        return self._normalize(path) in self.exclude_paths

    @staticmethod
    def build_key(client_address: str, route_class: RouteClass) -> str:
        return f"{client_address}:{route_class.value}"

    def evaluate(self, headers: Mapping[str, str], direct_address: Optional[str], path: str) -> GateDecision:
        """
        Run one request through the gate.

        Args:
            headers: Request headers (case insensitive mapping)
            direct_address: Peer address of the connection, if known
            path: Request path

        Returns:
            GateDecision, allowed or rejected with the retry delay
        """
        client_address = self.resolve_client_address(headers, direct_address)
        route_class = self.classify(path)
        key = self.build_key(client_address, route_class)
        policy = self.policies[route_class]

        result = self.controller.check(key, policy)

        if isinstance(result, Allowed):
            logger.debug(f"Request allowed for {client_address} on {path} ({result.remaining} tokens remaining)")
            return GateDecision(
                allowed=True,
                client_address=client_address,
                route_class=route_class,
                key=key,
                policy=policy,
                remaining=result.remaining,
            )

        logger.warning(f"Rate limit exceeded for {client_address} on {path} ({route_class.value} route)")
        return GateDecision(
            allowed=False,
            client_address=client_address,
            route_class=route_class,
            key=key,
            policy=policy,
            remaining=result.remaining,
            retry_after=result.wait_seconds,
        )


def _describe_wait(seconds: int) -> str:
    minutes = seconds // 60
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"


def rate_limited_response(decision: GateDecision) -> JSONResponse:
    """Build the 429 response for a rejected decision."""
    capacity = decision.policy.capacity

    if decision.route_class == RouteClass.LOGIN:
        body = RateLimitErrorResponse(
            detail=(
                f"Too many login attempts. You have exceeded the limit of {capacity} attempts. "
                f"Try again in {_describe_wait(decision.retry_after)}."
            ),
            retry_after=decision.retry_after,
            remaining=decision.remaining,
            max_attempts=capacity,
        )
    else:
        body = RateLimitErrorResponse(
            detail=f"Too many requests. Try again in {decision.retry_after} seconds.",
            retry_after=decision.retry_after,
            remaining=decision.remaining,
        )

    return JSONResponse(
        status_code=429,
        content=body.model_dump(exclude_none=True),
        headers={
            "Retry-After": str(decision.retry_after),
            "X-RateLimit-Limit": str(capacity),
            "X-RateLimit-Remaining": str(decision.remaining),
        },
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Exception handler for `RateLimitExceeded` raised inside a route."""
    return JSONResponse(
        status_code=429,
        content=RateLimitErrorResponse(
            detail=exc.message, retry_after=exc.retry_after_seconds, remaining=0
        ).model_dump(exclude_none=True),
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware that runs every request through a `RequestGate`.
    """

    def __init__(self, app: FastAPI, gate: RequestGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process incoming requests and enforce rate limiting.

        Args:
            request: FastAPI Request object
            call_next: Next middleware or route handler

        Returns:
            The downstream response with rate limit headers, or a 429 response
        """
        if self.gate.is_excluded(request.url.path):
            return await call_next(request)

        decision = self.gate.evaluate(
            request.headers,
            request.client.host if request.client else None,
            request.url.path,
        )

        if not decision.allowed:
            return rate_limited_response(decision)

        request.state.client_address = decision.client_address

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.policy.capacity)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
