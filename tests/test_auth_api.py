import pytest

from fastapi.testclient import TestClient

from conftest import FakeClock, PASSWORD
from main import build_auth_components, create_app
from services.errors import SigningKeyUnavailable
from services.storage import InMemoryRefreshTokenRepository
from utils.settings import Settings

LOGIN = "/api/v1/auth/login"
REFRESH = "/api/v1/auth/refresh"
LOGOUT = "/api/v1/auth/logout"
ME = "/api/v1/auth/me"


class BrokenDirectory:
    async def find_by_identifier(self, identifier):
        raise RuntimeError("mongo is down")

    async def get_by_id(self, principal_id):
        raise RuntimeError("mongo is down")


@pytest.fixture
def settings():
    return Settings(storage_backend="memory")


def make_client(settings, signing_keys, directory):
    components = build_auth_components(settings, signing_keys, directory, InMemoryRefreshTokenRepository())
    app = create_app(settings, components=components, rate_limit_clock=FakeClock())
    return TestClient(app)


@pytest.fixture
def client(settings, signing_keys, directory):
    with make_client(settings, signing_keys, directory) as client:
        yield client


def login(client, password=PASSWORD, **identifier):
    payload = identifier or {"email": "ada@example.com"}
    return client.post(LOGIN, json={**payload, "password": password})


def test_login_returns_token_pair(client, principal):
    response = login(client)

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "Bearer"
    assert body["expires_in"] == 900
    assert body["access_token"]
    assert body["refresh_token"]
    assert body["user"] == {
        "id": principal.id,
        "name": "Ada Lovelace",
        "email": "ada@example.com",
        "tax_id": "12345678000199",
    }
    assert "password" not in response.text
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "4"


def test_login_with_tax_id(client):
    response = login(client, tax_id="12345678000199")

    assert response.status_code == 200


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "ada@example.com", "password": "wrong"},
        {"email": "nobody@example.com", "password": PASSWORD},
        {"password": PASSWORD},
    ],
)
def test_login_failures_look_the_same(client, payload):
    response = client.post(LOGIN, json=payload)

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid credentials"}
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_access_token_identifies_principal(client, principal):
    access_token = login(client).json()["access_token"]

    response = client.get(ME, headers={"Authorization": f"Bearer {access_token}"})

    assert response.status_code == 200
    assert response.json()["principal_id"] == principal.id


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-token"}])
def test_me_requires_valid_access_token(client, headers):
    response = client.get(ME, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"detail": "Could not validate credentials"}
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_refresh_reuses_refresh_token(client, principal):
    refresh_token = login(client).json()["refresh_token"]

    response = client.post(REFRESH, json={"refresh_token": refresh_token})

    assert response.status_code == 200
    body = response.json()
    assert body["refresh_token"] == refresh_token
    assert body["user"]["id"] == principal.id

    again = client.post(REFRESH, json={"refresh_token": refresh_token})
    assert again.status_code == 200


def test_logout_revokes_refresh_token(client):
    refresh_token = login(client).json()["refresh_token"]

    response = client.post(LOGOUT, json={"refresh_token": refresh_token})
    assert response.status_code == 204

    response = client.post(REFRESH, json={"refresh_token": refresh_token})
    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid or expired refresh token"}

    # Revoking twice is fine
    assert client.post(LOGOUT, json={"refresh_token": refresh_token}).status_code == 204


def test_logout_requires_token(client):
    response = client.post(LOGOUT, json={"refresh_token": "  "})

    assert response.status_code == 400


def test_new_login_supersedes_previous_session(client):
    first = login(client).json()["refresh_token"]
    second = login(client).json()["refresh_token"]

    assert client.post(REFRESH, json={"refresh_token": first}).status_code == 401
    assert client.post(REFRESH, json={"refresh_token": second}).status_code == 200


def test_refresh_for_deactivated_principal_fails(client, directory, principal):
    refresh_token = login(client).json()["refresh_token"]
    directory.add(principal.model_copy(update={"is_active": False}))

    response = client.post(REFRESH, json={"refresh_token": refresh_token})

    assert response.status_code == 401


def test_sixth_login_attempt_is_rate_limited(client):
    for _ in range(5):
        assert login(client, password="wrong").status_code == 401

    response = login(client)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "900"
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    body = response.json()
    assert body["max_attempts"] == 5
    assert body["retry_after"] == 900
    assert "15 minutes" in body["detail"]


def test_rate_limit_is_per_client_and_route_class(client):
    for _ in range(6):
        login(client, password="wrong")

    other_client = client.post(
        LOGIN,
        json={"email": "ada@example.com", "password": PASSWORD},
        headers={"X-Forwarded-For": "203.0.113.7"},
    )
    assert other_client.status_code == 200

    # Same client, default route class
    assert client.get(ME).status_code == 401
    assert client.get("/health").status_code == 200


def test_health_is_not_rate_limited(client):
    response = client.get("/health")

    assert response.json() == {"status": "ok"}
    assert "X-RateLimit-Limit" not in response.headers


def test_persistence_failure_is_503(settings, signing_keys):
    with make_client(settings, signing_keys, BrokenDirectory()) as client:
        response = login(client)

    assert response.status_code == 503
    assert response.json() == {"detail": "Service temporarily unavailable"}


def test_startup_loads_keys_and_memory_storage(key_paths):
    private_path, public_path = key_paths
    settings = Settings(
        storage_backend="memory",
        jwt_private_key_path=private_path,
        jwt_public_key_path=public_path,
    )

    with TestClient(create_app(settings)) as client:
        assert client.app.state.auth_service is not None
        assert login(client).status_code == 401


def test_startup_fails_without_signing_keys(tmp_path):
    settings = Settings(
        storage_backend="memory",
        jwt_private_key_path=tmp_path / "missing.pem",
        jwt_public_key_path=tmp_path / "missing.pub",
    )

    with pytest.raises(SigningKeyUnavailable):
        with TestClient(create_app(settings)):
            pass
