"""
Shared fixtures for tests.

Every test starts with empty singleton caches so settings changed through
monkeypatch are picked up by the next ``get_*`` call.
"""

from collections.abc import Iterator

import pytest

from apps.web_gateway.dependencies import clear_dependency_caches
from libs.platform.security.hash_registry import HashRegistry

FAKE_PUBLIC_IP = "93.184.216.34"


@pytest.fixture(autouse=True)
def _reset_singletons() -> Iterator[None]:
    clear_dependency_caches()
    yield
    clear_dependency_caches()


@pytest.fixture()
def registry() -> HashRegistry:
    """Small registry with one style and one script entry."""
    return HashRegistry.from_contents(
        {
            "hidden": ("style-src", "display: none;"),
            "boot-script": ("script-src", "window.cspHashCheck = true;"),
        }
    )


@pytest.fixture()
def public_resolver():
    """Async resolver returning a single public address for any host."""

    async def resolve(host: str, port: int) -> list[str]:
        return [FAKE_PUBLIC_IP]

    return resolve
