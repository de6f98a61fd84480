"""
Pytest configuration and shared fixtures for samlflow tests.

This module provides common fixtures used across all test files:
- Environment defaults applied before the application is imported
- A login flow wired to in-memory components
- Test clients over HTTPS so Secure cookies round-trip
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

# Environment setup before any imports
os.environ["ENVIRONMENT"] = "development"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOGINFLOW_MARKER_SECRET"] = "test-marker-secret"
os.environ["LOGINFLOW_BASE_URL"] = "https://testserver"
os.environ["LOGINFLOW_PROVIDERS_FILE"] = "./tests/data/does-not-exist.json"
os.environ["LOGINFLOW_EXCLUSIONS_FILE"] = "./tests/data/does-not-exist.json"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SENTRY_DSN", None)

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from .saml_mock import build_test_orchestrator, make_provider  # noqa: E402


@pytest.fixture
def settings():
    """Fresh settings from the test environment."""
    from samlflow.config import reload_settings

    return reload_settings()


@pytest.fixture
def provider():
    """An active, fully configured provider with id 3."""
    return make_provider(3)


@pytest.fixture
def orchestrator(provider):
    """Login flow with in-memory state, users and a mocked SAML protocol."""
    return build_test_orchestrator(providers=[provider])


@pytest.fixture
def app(settings, orchestrator):
    """Application wired to the test orchestrator, with a plain landing page."""
    from server import create_app

    application = create_app(settings, orchestrator)

    @application.get("/")
    async def landing():
        return {"page": "landing"}

    @application.post("/login")
    async def login_form():
        return {"page": "login"}

    return application


@pytest.fixture
def client(app):
    """FastAPI test client fixture."""
    from fastapi.testclient import TestClient

    with TestClient(app, base_url="https://testserver") as test_client:
        yield test_client


@pytest.fixture
def mock_sentry():
    """Mock Sentry SDK."""
    with patch("sentry_sdk.capture_exception") as capture_mock, \
         patch("sentry_sdk.get_client") as client_mock:
        mock_client = MagicMock()
        mock_client.is_active.return_value = True
        client_mock.return_value = mock_client
        yield {"capture": capture_mock, "client": client_mock}


# Test environment cleanup
@pytest.fixture(autouse=True)
def reset_environment():
    """Reset environment variables after each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)
