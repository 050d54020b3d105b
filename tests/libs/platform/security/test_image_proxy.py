"""Tests for the authenticated image proxy handler."""

import logging

import httpx
import pytest
import respx
from httpx import Response
from prometheus_client import REGISTRY

from libs.platform.security.guarded_fetch import FetchPolicy, GuardedFetcher
from libs.platform.security.image_proxy import (
    CACHE_CONTROL,
    ImageProxyHandler,
    ProxiedImage,
    ProxyFailure,
    safe_content_type,
)
from libs.platform.security.path_validator import PathValidator

API = "https://api.example.com"
TOKEN = "session-token-abc"


@pytest.fixture()
def handler(public_resolver) -> ImageProxyHandler:
    return ImageProxyHandler(
        fetcher=GuardedFetcher("production", resolver=public_resolver),
        validator=PathValidator(allowed_extensions=[".png", ".jpg", ".svg"]),
        upstream_base_url=API + "/",
        policy=FetchPolicy(allowed_domains=frozenset({"api.example.com"}), timeout_ms=2000),
    )


@pytest.mark.parametrize(
    ("upstream", "expected"),
    [
        ("image/png", "image/png"),
        ("IMAGE/JPEG; charset=binary", "image/jpeg"),
        ("image/svg+xml", "application/octet-stream"),
        ("text/html", "application/octet-stream"),
        (None, "application/octet-stream"),
        ("", "application/octet-stream"),
    ],
)
def test_safe_content_type(upstream: str | None, expected: str) -> None:
    assert safe_content_type(upstream) == expected


@pytest.mark.asyncio()
@respx.mock
async def test_proxies_image_with_bearer_token(handler: ImageProxyHandler) -> None:
    route = respx.get(f"{API}/uploads/blog/a.png").mock(
        return_value=Response(200, content=b"\x89PNG", headers={"Content-Type": "image/png"})
    )

    result = await handler.handle(TOKEN, "/uploads/blog/a.png")

    assert isinstance(result, ProxiedImage)
    assert result.body == b"\x89PNG"
    assert result.content_type == "image/png"
    assert result.headers["X-Content-Type-Options"] == "nosniff"
    assert result.headers["Cache-Control"] == CACHE_CONTROL
    assert route.calls.last.request.headers["authorization"] == f"Bearer {TOKEN}"


@pytest.mark.asyncio()
@respx.mock
async def test_svg_served_as_octet_stream(handler: ImageProxyHandler) -> None:
    respx.get(f"{API}/uploads/logo.svg").mock(
        return_value=Response(200, content=b"<svg/>", headers={"Content-Type": "image/svg+xml"})
    )

    result = await handler.handle(TOKEN, "uploads/logo.svg")

    assert isinstance(result, ProxiedImage)
    assert result.content_type == "application/octet-stream"


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    "raw_path",
    [None, "", "../../etc/passwd", "http://evil.com/a.png", "//evil.com/a.png", "a.gif"],
)
async def test_invalid_path_is_uniform_400(handler: ImageProxyHandler, raw_path) -> None:
    result = await handler.handle(TOKEN, raw_path)

    assert result == ProxyFailure(400, "Invalid path")


@pytest.mark.asyncio()
async def test_rejected_path_reason_logged_not_returned(
    handler: ImageProxyHandler, caplog: pytest.LogCaptureFixture
) -> None:
    labels = {"outcome": "invalid_path"}
    before = REGISTRY.get_sample_value("image_proxy_requests_total", labels) or 0.0

    with caplog.at_level(logging.WARNING, logger="libs.platform.security.image_proxy"):
        result = await handler.handle(TOKEN, "uploads/../secret.png")

    assert result == ProxyFailure(400, "Invalid path")
    assert REGISTRY.get_sample_value("image_proxy_requests_total", labels) == before + 1
    record = next(r for r in caplog.records if r.getMessage() == "Image proxy rejected path")
    assert record.reason == "traversal"


@pytest.mark.asyncio()
async def test_containment_block_is_uniform_403(public_resolver) -> None:
    handler = ImageProxyHandler(
        fetcher=GuardedFetcher("production", resolver=public_resolver),
        validator=PathValidator(),
        upstream_base_url="http://127.0.0.1:9000",
        policy=FetchPolicy(allowed_domains=frozenset({"api.example.com"})),
    )

    result = await handler.handle(TOKEN, "uploads/a.png")

    assert result == ProxyFailure(403, "Forbidden")


@pytest.mark.asyncio()
async def test_unlisted_upstream_host_is_uniform_403(public_resolver) -> None:
    handler = ImageProxyHandler(
        fetcher=GuardedFetcher("production", resolver=public_resolver),
        validator=PathValidator(),
        upstream_base_url="https://evil.example.net",
        policy=FetchPolicy(allowed_domains=frozenset({"api.example.com"})),
    )
    before = REGISTRY.get_sample_value(
        "ssrf_blocked_requests_total", {"reason": "host-not-allowlisted"}
    )

    result = await handler.handle(TOKEN, "uploads/a.png")

    assert result == ProxyFailure(403, "Forbidden")
    after = REGISTRY.get_sample_value(
        "ssrf_blocked_requests_total", {"reason": "host-not-allowlisted"}
    )
    assert after == (before or 0.0) + 1


@pytest.mark.asyncio()
@respx.mock
async def test_upstream_404_maps_to_404(handler: ImageProxyHandler) -> None:
    respx.get(f"{API}/uploads/missing.png").mock(return_value=Response(404))

    result = await handler.handle(TOKEN, "uploads/missing.png")

    assert result == ProxyFailure(404, "Image not found")


@pytest.mark.asyncio()
@respx.mock
async def test_upstream_5xx_maps_to_500(handler: ImageProxyHandler) -> None:
    respx.get(f"{API}/uploads/a.png").mock(return_value=Response(503))

    result = await handler.handle(TOKEN, "uploads/a.png")

    assert result == ProxyFailure(500, "Failed to fetch image")


@pytest.mark.asyncio()
@respx.mock
async def test_upstream_timeout_maps_to_500(handler: ImageProxyHandler) -> None:
    respx.get(f"{API}/uploads/a.png").mock(
        side_effect=httpx.ConnectTimeout("slow", request=httpx.Request("GET", API))
    )

    result = await handler.handle(TOKEN, "uploads/a.png")

    assert result == ProxyFailure(500, "Failed to fetch image")


@pytest.mark.asyncio()
@respx.mock
async def test_oversized_image_maps_to_500(public_resolver) -> None:
    respx.get(f"{API}/uploads/huge.png").mock(return_value=Response(200, content=b"x" * 2048))
    handler = ImageProxyHandler(
        fetcher=GuardedFetcher("production", resolver=public_resolver),
        validator=PathValidator(),
        upstream_base_url=API,
        policy=FetchPolicy(allowed_domains=frozenset({"api.example.com"}), max_response_bytes=1024),
    )

    result = await handler.handle(TOKEN, "uploads/huge.png")

    assert result == ProxyFailure(500, "Failed to fetch image")
