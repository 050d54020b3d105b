"""Tests for the authenticated image proxy route."""

from collections.abc import Callable

import pytest
import respx
from fastapi.testclient import TestClient
from httpx import Response

from apps.web_gateway.dependencies import get_image_proxy_handler
from libs.platform.security.csp_policy import ENFORCE_HEADER
from libs.platform.security.guarded_fetch import FetchPolicy, GuardedFetcher
from libs.platform.security.image_proxy import ImageProxyHandler
from libs.platform.security.path_validator import PathValidator

API = "https://api.example.com"


@pytest.fixture()
def proxy_client(
    make_client: Callable[..., TestClient], public_resolver
) -> Callable[[str], TestClient]:
    """Gateway whose image handler resolves every host to a public address."""

    def _make(upstream_base_url: str = API) -> TestClient:
        client = make_client()
        handler = ImageProxyHandler(
            fetcher=GuardedFetcher("production", resolver=public_resolver),
            validator=PathValidator(allowed_extensions=[".png", ".jpg"]),
            upstream_base_url=upstream_base_url,
            policy=FetchPolicy(allowed_domains=frozenset({"api.example.com"})),
        )
        client.app.dependency_overrides[get_image_proxy_handler] = lambda: handler
        return client

    return _make


def test_requires_session_token(client: TestClient) -> None:
    response = client.get("/images/uploads", params={"path": "uploads/a.png"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}
    assert ENFORCE_HEADER in response.headers


def test_proxies_image_with_bearer_header(proxy_client) -> None:
    client = proxy_client()

    with respx.mock:
        route = respx.get(f"{API}/uploads/a.png").mock(
            return_value=Response(200, content=b"\x89PNG", headers={"Content-Type": "image/png"})
        )
        response = client.get(
            "/images/uploads",
            params={"path": "uploads/a.png"},
            headers={"Authorization": "Bearer tok-123"},
        )

    assert response.status_code == 200
    assert response.content == b"\x89PNG"
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["cache-control"] == "public, max-age=86400"
    assert ENFORCE_HEADER in response.headers
    assert route.calls.last.request.headers["authorization"] == "Bearer tok-123"


def test_session_cookie_token_is_forwarded(proxy_client) -> None:
    client = proxy_client()

    with respx.mock:
        route = respx.get(f"{API}/uploads/b.jpg").mock(
            return_value=Response(200, content=b"jpg", headers={"Content-Type": "image/jpeg"})
        )
        response = client.get(
            "/images/uploads",
            params={"path": "uploads/b.jpg"},
            headers={"Cookie": "session_token=cookie-tok"},
        )

    assert response.status_code == 200
    assert route.calls.last.request.headers["authorization"] == "Bearer cookie-tok"


@pytest.mark.parametrize(
    "path", ["../../etc/passwd", "//evil.com/a.png", "http://evil.com/a.png", "uploads/a.svg"]
)
def test_invalid_path_returns_generic_400(proxy_client, path: str) -> None:
    client = proxy_client()

    response = client.get(
        "/images/uploads", params={"path": path}, headers={"Authorization": "Bearer t"}
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid path"}
    assert "evil" not in response.text


def test_missing_path_returns_400(proxy_client) -> None:
    response = proxy_client().get("/images/uploads", headers={"Authorization": "Bearer t"})

    assert response.status_code == 400


def test_blocked_upstream_returns_generic_403(proxy_client) -> None:
    client = proxy_client(upstream_base_url="http://169.254.169.254")

    response = client.get(
        "/images/uploads",
        params={"path": "latest/a.png"},
        headers={"Authorization": "Bearer t"},
    )

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}
    assert "169.254" not in response.text


def test_unlisted_upstream_host_returns_generic_403(proxy_client) -> None:
    client = proxy_client(upstream_base_url="https://evil.example.net")

    response = client.get(
        "/images/uploads",
        params={"path": "uploads/a.png"},
        headers={"Authorization": "Bearer t"},
    )

    assert response.status_code == 403
    assert response.json() == {"detail": "Forbidden"}
    assert "evil" not in response.text
    assert ENFORCE_HEADER in response.headers


def test_upstream_not_found(proxy_client) -> None:
    client = proxy_client()

    with respx.mock:
        respx.get(f"{API}/uploads/gone.png").mock(return_value=Response(404))
        response = client.get(
            "/images/uploads",
            params={"path": "uploads/gone.png"},
            headers={"Authorization": "Bearer t"},
        )

    assert response.status_code == 404
    assert response.json() == {"detail": "Image not found"}
