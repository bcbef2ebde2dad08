"""
Pytest configuration and shared test fixtures.

Provides HTTP test clients for the FastAPI application and settings
overrides so tests never depend on the developer's environment.
"""

from typing import AsyncGenerator, Generator

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from laundry_workflow.core.config import get_settings
from laundry_workflow.main import app


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """
    Run every test with the test environment settings.

    Clears the settings cache before and after the test so that
    environment overrides made by a test do not leak.
    """
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(scope="function")
def test_client() -> Generator[TestClient, None, None]:
    """
    Create a synchronous test client for FastAPI application.

    Yields:
        TestClient: Synchronous test client for FastAPI app
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    """
    Create an asynchronous test client for FastAPI application.

    Yields:
        AsyncClient: Asynchronous test client for FastAPI app
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(autouse=True)
def reset_app_state():
    """Drop dependency overrides installed by a test."""
    yield
    app.dependency_overrides.clear()
