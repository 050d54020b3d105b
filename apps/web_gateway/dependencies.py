"""Shared dependencies for the web gateway.

Uses functools.lru_cache for the singleton pattern: every engine is built
once from settings on first use and shared by all requests. Routes receive
them through ``Depends`` so tests can swap them with
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from fastapi import Request

from config.settings import Settings, get_settings
from libs.platform.security.csp_policy import PolicyBuilder
from libs.platform.security.guarded_fetch import FetchPolicy, GuardedFetcher
from libs.platform.security.hash_registry import HashRegistry
from libs.platform.security.image_proxy import ImageProxyHandler
from libs.platform.security.nonce import NonceGenerator
from libs.platform.security.path_validator import PathValidator
from libs.platform.security.violations import ViolationIngester

CSP_REPORT_PATH = "/csp-report"
CSP_REPORT_GROUP = "csp-endpoint"


@lru_cache
def get_hash_registry() -> HashRegistry:
    """Known inline hashes, loaded from the generated manifest."""
    return HashRegistry.from_manifest(get_settings().csp_hash_manifest_path)


@lru_cache
def get_nonce_generator() -> NonceGenerator:
    return NonceGenerator()


@lru_cache
def get_policy_builder() -> PolicyBuilder:
    """CSP policy builder shared by the middleware and the error handler."""
    settings = get_settings()
    return PolicyBuilder(
        get_hash_registry(),
        api_origins=[settings.upstream_origin, *settings.connect_origins],
        report_uri=CSP_REPORT_PATH,
        report_to_group=CSP_REPORT_GROUP,
        report_only=settings.csp_report_only,
    )


def build_fetch_policy(settings: Settings) -> FetchPolicy:
    """Restrictive image fetch policy, decided once from settings.

    Localhost access is only expressible in the development profile;
    production settings refuse ALLOW_LOCALHOST_FETCH at load time.
    """
    return FetchPolicy(
        allowed_domains=frozenset(settings.effective_fetch_domains),
        allow_localhost=settings.allow_localhost_fetch,
        allowed_localhost_ports=frozenset(settings.effective_localhost_ports),
        timeout_ms=settings.image_fetch_timeout_ms,
        max_response_bytes=settings.max_response_bytes,
        override_reason=(
            f"ALLOW_LOCALHOST_FETCH enabled for {settings.security_profile} profile"
            if settings.allow_localhost_fetch
            else None
        ),
    )


def reporting_endpoint(settings: Settings) -> str:
    """``Reporting-Endpoints`` URL: absolute under PUBLIC_ORIGIN, otherwise relative.

    Never derived from the request Host header, which the client controls.
    """
    if settings.public_origin:
        return settings.public_origin + CSP_REPORT_PATH
    return CSP_REPORT_PATH


@lru_cache
def get_fetch_policy() -> FetchPolicy:
    return build_fetch_policy(get_settings())


@lru_cache
def get_guarded_fetcher() -> GuardedFetcher:
    return GuardedFetcher(get_settings().security_profile)


@lru_cache
def get_path_validator() -> PathValidator:
    settings = get_settings()
    return PathValidator(allowed_extensions=settings.allowed_image_extensions or None)


@lru_cache
def get_image_proxy_handler() -> ImageProxyHandler:
    """Image proxy singleton (fetcher + validator + restrictive policy)."""
    settings = get_settings()
    return ImageProxyHandler(
        fetcher=get_guarded_fetcher(),
        validator=get_path_validator(),
        upstream_base_url=settings.upstream_api_base_url,
        policy=get_fetch_policy(),
    )


@lru_cache
def get_violation_ingester() -> ViolationIngester:
    return ViolationIngester(
        get_hash_registry(),
        expected_origins=get_settings().expected_third_party_origins,
    )


def get_bearer_token(request: Request) -> str | None:
    """Opaque session token from ``Authorization: Bearer`` or the session cookie."""
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    cookie = request.cookies.get(get_settings().session_cookie_name, "").strip()
    return cookie or None


def clear_dependency_caches() -> None:
    """Drop every cached singleton (settings included). Used by tests and reloads."""
    for factory in (
        get_image_proxy_handler,
        get_violation_ingester,
        get_path_validator,
        get_guarded_fetcher,
        get_fetch_policy,
        get_policy_builder,
        get_nonce_generator,
        get_hash_registry,
        get_settings,
    ):
        factory.cache_clear()
