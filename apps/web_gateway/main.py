"""FastAPI web gateway: CSP engine + SSRF-guarded image proxy.

Endpoints:
- POST/OPTIONS /csp-report: browser CSP violation reports
- GET /images/uploads?path=: authenticated image proxy
- GET /security/csp-check: CSP self-test page (ENABLE_DIAGNOSTIC_PAGES)
- GET /health, /metrics

Every response carries exactly one CSP header (enforcing or report-only)
whose nonce matches ``request.state.csp_nonce``, including error responses.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.exceptions import HTTPException as StarletteHTTPException

from apps.web_gateway.dependencies import (
    CSP_REPORT_GROUP,
    get_fetch_policy,
    get_hash_registry,
    get_image_proxy_handler,
    get_nonce_generator,
    get_policy_builder,
    get_violation_ingester,
    reporting_endpoint,
)
from apps.web_gateway.middleware.csp_middleware import (
    CSPMiddleware,
    apply_csp_headers,
    lockdown_response,
)
from apps.web_gateway.routes import csp_report, diagnostics, image_proxy
from config.settings import Settings, get_settings
from libs.common.logging import add_request_id_middleware, configure_logging
from libs.platform.security.exceptions import NonceGenerationError

logger = logging.getLogger(__name__)


def _log_startup_configuration(settings: Settings) -> None:
    """Log the security-relevant configuration once, without secrets."""
    policy = get_fetch_policy()
    report_only = settings.csp_report_only or settings.security_profile == "development"
    logger.info(
        "Web gateway security configuration",
        extra={
            "profile": settings.security_profile,
            "csp_report_only": report_only,
            "known_hashes": len(get_hash_registry()),
            "fetch_allowlist": sorted(policy.allowed_domains),
            "allow_localhost_fetch": policy.allow_localhost,
            "fetch_timeout_ms": policy.timeout_ms,
            "diagnostic_pages": settings.enable_diagnostic_pages,
        },
    )
    if settings.security_profile == "development":
        logger.warning(
            "Development security profile active - CSP is report-only and relaxed",
            extra={"profile": settings.security_profile},
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every singleton up front so configuration errors fail startup."""
    settings = get_settings()
    get_image_proxy_handler()
    get_violation_ingester()
    _log_startup_configuration(settings)
    logger.info("Web gateway started")
    yield
    logger.info("Web gateway shutting down")


def create_app() -> FastAPI:
    """Assemble the gateway from the cached settings and singletons.

    Raises:
        ConfigError: If settings, the hash manifest or the policy are invalid
    """
    settings = get_settings()
    configure_logging(service_name="web_gateway", log_level=settings.log_level)

    app = FastAPI(
        title="Web Gateway",
        description="CSP enforcement, violation reporting and SSRF-guarded image proxy",
        version="1.0.0",
        lifespan=lifespan,
    )

    policy_builder = get_policy_builder()
    endpoint = reporting_endpoint(settings)
    app.add_middleware(
        CSPMiddleware,
        profile=settings.security_profile,
        policy_builder=policy_builder,
        nonce_generator=get_nonce_generator(),
        reporting_endpoint=endpoint,
        report_group=CSP_REPORT_GROUP,
    )
    # Added last so it wraps everything, including CSP error responses
    add_request_id_middleware(app)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Add CSP headers to HTTPException responses (404, 401, 413, ...)."""
        nonce = getattr(request.state, "csp_nonce", None)
        if nonce is None:
            try:
                nonce = get_nonce_generator().generate()
            except NonceGenerationError:
                return lockdown_response()

        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )
        apply_csp_headers(
            response,
            policy_builder.build(settings.security_profile, nonce),
            endpoint,
            CSP_REPORT_GROUP,
        )
        logger.debug(
            "CSP header added to HTTPException response",
            extra={
                "status_code": exc.status_code,
                "path": request.url.path,
                "nonce": nonce[:8] + "...",
            },
        )
        return response

    app.include_router(csp_report.router, tags=["security"])
    app.include_router(image_proxy.router, tags=["images"])
    app.include_router(diagnostics.router, tags=["diagnostics"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "web_gateway",
            "profile": settings.security_profile,
        }

    app.mount("/metrics", make_asgi_app())
    return app


app = create_app()
