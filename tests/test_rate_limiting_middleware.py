import json

import pytest

from starlette.datastructures import Headers

from middleware.rate_limiting import RequestGate, _describe_wait, rate_limited_response
from models.helpers import RouteClass
from services.rate_limiter import AdmissionController, InMemoryBucketStore, policies_from_settings
from utils.settings import Settings


@pytest.fixture
def gate(clock):
    policies = policies_from_settings(Settings())
    controller = AdmissionController(InMemoryBucketStore(), policies[RouteClass.DEFAULT], clock=clock)
    return RequestGate(
        controller,
        policies,
        login_paths=["/api/v1/auth/login"],
        exclude_paths=["/health"],
    )


@pytest.mark.parametrize(
    "headers, direct, expected",
    [
        ({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}, "10.0.0.9", "203.0.113.7"),
        ({"x-forwarded-for": " 203.0.113.7 "}, None, "203.0.113.7"),
        ({"X-Real-IP": "198.51.100.2"}, "10.0.0.9", "198.51.100.2"),
        ({"X-Forwarded-For": "", "X-Real-IP": "198.51.100.2"}, None, "198.51.100.2"),
        ({}, "10.0.0.9", "10.0.0.9"),
        ({}, None, "unknown"),
    ],
)
def test_resolve_client_address(headers, direct, expected):
    assert RequestGate.resolve_client_address(Headers(headers), direct) == expected


def test_classify_and_exclude(gate):
    assert gate.classify("/api/v1/auth/login") == RouteClass.LOGIN
    assert gate.classify("/api/v1/auth/login/") == RouteClass.LOGIN
    assert gate.classify("/api/v1/auth/refresh") == RouteClass.DEFAULT
    assert gate.is_excluded("/health")
    assert not gate.is_excluded("/api/v1/auth/me")


def test_key_combines_address_and_route_class():
    assert RequestGate.build_key("10.0.0.1", RouteClass.LOGIN) == "10.0.0.1:login"


def test_login_and_default_buckets_are_separate(gate):
    headers = Headers({"X-Forwarded-For": "203.0.113.7"})
    for _ in range(5):
        assert gate.evaluate(headers, None, "/api/v1/auth/login").allowed

    denied = gate.evaluate(headers, None, "/api/v1/auth/login")
    assert not denied.allowed
    assert denied.retry_after == 900
    assert denied.key == "203.0.113.7:login"

    other = gate.evaluate(headers, None, "/api/v1/auth/refresh")
    assert other.allowed
    assert other.remaining == 99


def test_login_rejection_response(gate):
    for _ in range(6):
        decision = gate.evaluate(Headers({}), "10.0.0.1", "/api/v1/auth/login")

    response = rate_limited_response(decision)
    body = json.loads(response.body)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "900"
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert body["max_attempts"] == 5
    assert body["retry_after"] == 900
    assert "15 minutes" in body["detail"]


def test_default_rejection_response_has_no_attempt_count(clock):
    settings = Settings(rate_limit_default_capacity=1, rate_limit_default_refill_tokens=1)
    policies = policies_from_settings(settings)
    gate = RequestGate(
        AdmissionController(InMemoryBucketStore(), policies[RouteClass.DEFAULT], clock=clock),
        policies,
        login_paths=["/api/v1/auth/login"],
    )
    gate.evaluate(Headers({}), "10.0.0.1", "/api/v1/auth/me")
    decision = gate.evaluate(Headers({}), "10.0.0.1", "/api/v1/auth/me")

    body = json.loads(rate_limited_response(decision).body)

    assert "max_attempts" not in body
    assert body["retry_after"] == 60


@pytest.mark.parametrize(
    "seconds, expected",
    [(900, "15 minutes"), (60, "1 minute"), (119, "1 minute"), (30, "30 seconds"), (1, "1 second")],
)
def test_describe_wait(seconds, expected):
    assert _describe_wait(seconds) == expected
