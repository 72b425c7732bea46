# sceneaccess/conftest.py
import os

import pytest

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from fastapi.testclient import TestClient

from sceneaccess.api.deps import build_services
from sceneaccess.core.auth import create_session_token
from sceneaccess.core.config import Settings
from sceneaccess.core.database import create_all_tables, dispose_engine, init_engine
from sceneaccess.core.metrics import METRICS
from sceneaccess.core.ratelimit import InMemoryRateLimitStore


TEST_SESSION_SECRET = "test-session-secret"
SITE_ORIGIN = "https://app.example.com"


def make_settings(**overrides) -> Settings:
    values = {
        "ENV": "test",
        "SITE_URL": SITE_ORIGIN,
        "SESSION_SECRET": TEST_SESSION_SECRET,
        "STORE_BACKEND": "memory",
        "RATE_LIMIT_BACKEND": "memory",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def auth_headers(user_id=None, origin=SITE_ORIGIN, **extra):
    """Headers for a same-origin browser request, signed in as user_id when given."""
    headers = {}
    if origin:
        headers["Origin"] = origin
    if user_id:
        token = create_session_token(sub=user_id, email=f"{user_id}@example.com", secret=TEST_SESSION_SECRET)
        headers["Authorization"] = f"Bearer {token}"
    headers.update(extra)
    return headers


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def services(test_settings):
    """In-memory service container with a fresh rate-limit store."""
    return build_services(test_settings, rate_limit_store=InMemoryRateLimitStore())


@pytest.fixture
def client(services):
    from sceneaccess.main import create_app

    return TestClient(create_app(services))


@pytest.fixture
def sqlite_db(tmp_path):
    """
    Fresh SQLite database file with all tables created.

    The module-level engine is swapped for the duration of the test.
    """
    url = f"sqlite:///{tmp_path / 'sceneaccess.db'}"
    engine = init_engine(url)
    create_all_tables()
    yield engine
    dispose_engine()
