"""Authenticated image proxy.

Streams an image from the backend API to the browser on behalf of the
caller's session:

    raw ``path`` --PathValidator--> sanitized path
                 --compose--------> {upstream_base}/{sanitized path}
                 --GuardedFetcher-> bytes (Authorization: Bearer <token>)

Failures map to uniform, non-descriptive results: 400 "Invalid path" for
any rejected path, 403 "Forbidden" for any containment block. The specific
rule and the offending value are logged, never returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from prometheus_client import Counter

from libs.platform.security.exceptions import PathRejected, ProtectionBlocked, UpstreamError
from libs.platform.security.guarded_fetch import FetchPolicy, GuardedFetcher
from libs.platform.security.path_validator import PathValidator

logger = logging.getLogger(__name__)

SAFE_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp", "image/avif"})
FALLBACK_CONTENT_TYPE = "application/octet-stream"
CACHE_CONTROL = "public, max-age=86400"

image_proxy_requests_total = Counter(
    "image_proxy_requests_total", "Image proxy requests by outcome", ["outcome"]
)


def safe_content_type(upstream_value: str | None) -> str:
    """Re-assert a content type from the image allowlist.

    SVG and anything unrecognized become ``application/octet-stream`` so the
    browser never renders proxied bytes as an active document.
    """
    if not upstream_value:
        return FALLBACK_CONTENT_TYPE
    media_type = upstream_value.split(";", 1)[0].strip().lower()
    return media_type if media_type in SAFE_IMAGE_TYPES else FALLBACK_CONTENT_TYPE


@dataclass(frozen=True)
class ProxiedImage:
    """Successful proxy result."""

    body: bytes
    content_type: str
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProxyFailure:
    """Uniform failure result (message is safe to return to the caller)."""

    status_code: int
    message: str


class ImageProxyHandler:
    """Orchestrate path validation and the guarded fetch for one image.

    Args:
        fetcher: SSRF-guarded fetcher
        validator: Path validator
        upstream_base_url: Backend base URL (e.g. ``https://api.example.com``)
        policy: Restrictive fetch policy, built once at startup
    """

    def __init__(
        self,
        fetcher: GuardedFetcher,
        validator: PathValidator,
        upstream_base_url: str,
        policy: FetchPolicy,
    ) -> None:
        self.fetcher = fetcher
        self.validator = validator
        self.upstream_base_url = upstream_base_url.rstrip("/")
        self.policy = policy

    async def handle(self, token: str, raw_path: str | None) -> ProxiedImage | ProxyFailure:
        """Fetch ``raw_path`` from the backend with the caller's bearer token."""
        try:
            sanitized_path = self.validator.validate(raw_path).raise_for_reject()
        except PathRejected as e:
            image_proxy_requests_total.labels(outcome="invalid_path").inc()
            logger.warning(
                "Image proxy rejected path",
                extra={"reason": e.reason.value, "raw_path": repr(raw_path)[:80]},
            )
            return ProxyFailure(400, e.message)

        url = f"{self.upstream_base_url}/{sanitized_path}"
        try:
            fetched = await self.fetcher.fetch(
                url,
                self.policy,
                headers={"Authorization": f"Bearer {token}", "Accept": "image/*"},
            )
        except ProtectionBlocked as e:
            image_proxy_requests_total.labels(outcome="blocked").inc()
            logger.error(
                "Image proxy target blocked",
                extra={"reason": e.reason.value, "host": e.host, "path": sanitized_path},
            )
            return ProxyFailure(403, "Forbidden")
        except UpstreamError as e:
            if e.is_not_found:
                image_proxy_requests_total.labels(outcome="not_found").inc()
                return ProxyFailure(404, "Image not found")
            image_proxy_requests_total.labels(outcome="upstream_error").inc()
            logger.error(
                "Image proxy upstream failure",
                extra={"failure": e.failure.value, "status_code": e.status_code},
            )
            return ProxyFailure(500, "Failed to fetch image")
        except Exception as e:
            image_proxy_requests_total.labels(outcome="error").inc()
            logger.error(
                "Image proxy unexpected failure",
                extra={"error_type": type(e).__name__},
                exc_info=True,
            )
            return ProxyFailure(500, "Failed to fetch image")

        image_proxy_requests_total.labels(outcome="success").inc()
        return ProxiedImage(
            body=fetched.content,
            content_type=safe_content_type(fetched.content_type),
            headers={
                "Cache-Control": CACHE_CONTROL,
                "X-Content-Type-Options": "nosniff",
                "Content-Disposition": "inline",
            },
        )


__all__ = [
    "CACHE_CONTROL",
    "SAFE_IMAGE_TYPES",
    "ImageProxyHandler",
    "ProxiedImage",
    "ProxyFailure",
    "safe_content_type",
]
