"""Fixtures for web gateway application tests."""

from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient

from apps.web_gateway.dependencies import clear_dependency_caches
from apps.web_gateway.main import create_app


@pytest.fixture()
def make_client(monkeypatch: pytest.MonkeyPatch) -> Callable[..., TestClient]:
    """Build a fresh app from the environment plus ``env`` overrides."""

    def _make(**env: str) -> TestClient:
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        clear_dependency_caches()
        return TestClient(create_app())

    return _make


@pytest.fixture()
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client()
