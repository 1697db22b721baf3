import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import create_app  # noqa: E402
from config import Config  # noqa: E402
from security.csrf import CsrfGuard  # noqa: E402
from security.rate_limit import RateLimiter  # noqa: E402
from security.session import SessionRegistry  # noqa: E402
from security.tokens import TokenService  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-flask-secret"
    JWT_SECRET = TEST_SECRET
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SWEEP_INTERVAL_SECONDS = 0
    SWEEP_PROBABILITY = 0.0
    BCRYPT_ROUNDS = 4
    LOG_LEVEL = "WARNING"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock=clock)


@pytest.fixture
def token_service(registry):
    return TokenService(TEST_SECRET, registry)


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def csrf_guard(clock):
    return CsrfGuard(clock=clock)


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["security"]


STRONG_PASSWORD = "Sup3r$ecret!"


def csrf_token(client, headers=None) -> str:
    resp = client.get("/api/auth/csrf-token", headers=headers or {})
    assert resp.status_code == 200
    return resp.get_json()["csrfToken"]


def register_user(client, email="patient@example.com", username="patient_one", password=STRONG_PASSWORD):
    token = csrf_token(client)
    return client.post(
        "/api/auth/register",
        json={"email": email, "username": username, "password": password},
        headers={"X-CSRF-Token": token},
    )


@pytest.fixture
def registered(client):
    """A registered user's response body (tokens, csrfToken, user)."""
    resp = register_user(client)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()
