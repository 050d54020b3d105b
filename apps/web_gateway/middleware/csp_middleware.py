"""Content Security Policy (CSP) middleware for the web gateway.

Adds a nonce-based CSP header to every response. A fresh nonce is generated
per request and stored in ``request.state.csp_nonce`` so templates can put it
on inline ``<script>``/``<style>`` tags:

    <script nonce="{{ csp_nonce }}">...</script>

Exactly one of ``Content-Security-Policy`` and
``Content-Security-Policy-Report-Only`` is sent, never both. Responses also
get the baseline security headers and a ``Reporting-Endpoints`` entry for
the ``report-to`` group.
"""

import logging
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import Counter
from starlette.middleware.base import BaseHTTPMiddleware

from libs.platform.security.csp_policy import (
    ENFORCE_HEADER,
    CSPPolicy,
    PolicyBuilder,
    Profile,
)
from libs.platform.security.exceptions import NonceGenerationError
from libs.platform.security.nonce import NonceGenerator

logger = logging.getLogger(__name__)

# Sent when no nonce could be generated: nothing on the page may execute
LOCKDOWN_POLICY = "default-src 'none'; base-uri 'none'; form-action 'none'; frame-ancestors 'none'"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
}

csp_headers_issued_total = Counter(
    "csp_headers_issued_total", "CSP headers attached to responses", ["mode"]
)


def apply_csp_headers(
    response: Response,
    policy: CSPPolicy,
    reporting_endpoint: str | None = None,
    report_group: str = "csp-endpoint",
) -> None:
    """Attach ``policy`` plus security headers, removing the opposite CSP header."""
    if policy.other_header_name in response.headers:
        del response.headers[policy.other_header_name]
    already_applied = response.headers.get(policy.header_name) == policy.header_value
    response.headers[policy.header_name] = policy.header_value
    if reporting_endpoint:
        response.headers["Reporting-Endpoints"] = f'{report_group}="{reporting_endpoint}"'
    for name, value in SECURITY_HEADERS.items():
        if name not in response.headers:
            response.headers[name] = value
    if not already_applied:
        csp_headers_issued_total.labels(
            mode="report-only" if policy.report_only else "enforce"
        ).inc()


def lockdown_response() -> JSONResponse:
    """500 response for requests that could not get a nonce."""
    response = JSONResponse(status_code=500, content={"detail": "Internal server error"})
    response.headers[ENFORCE_HEADER] = LOCKDOWN_POLICY
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    csp_headers_issued_total.labels(mode="lockdown").inc()
    return response


class CSPMiddleware(BaseHTTPMiddleware):
    """Middleware adding Content Security Policy headers with nonces.

    - production: nonce + 'strict-dynamic' scripts, nonce + known-hash styles
    - development: relaxed, always report-only
    - a nonce failure aborts the request with 500 before any handler runs

    Args:
        app: FastAPI application
        profile: Deployment profile, fixed at startup
        policy_builder: Shared builder (also used by the HTTPException handler)
        nonce_generator: Per-request nonce source
        reporting_endpoint: ``Reporting-Endpoints`` URL, fixed at startup
        report_group: Reporting API group name
    """

    def __init__(
        self,
        app: FastAPI,
        profile: Profile,
        policy_builder: PolicyBuilder,
        nonce_generator: NonceGenerator,
        reporting_endpoint: str = "/csp-report",
        report_group: str = "csp-endpoint",
    ) -> None:
        super().__init__(app)
        self.profile = profile
        self.policy_builder = policy_builder
        self.nonce_generator = nonce_generator
        self.reporting_endpoint = reporting_endpoint
        self.report_group = report_group

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Generate the nonce, run the request, attach the policy."""
        try:
            nonce = self.nonce_generator.generate()
        except NonceGenerationError as e:
            logger.critical(
                "CSP nonce generation failed - aborting request",
                extra={"error": str(e), "path": request.url.path},
            )
            return lockdown_response()

        request.state.csp_nonce = nonce
        request.state.csp_profile = self.profile
        policy = self.policy_builder.build(self.profile, nonce)
        try:
            response = await call_next(request)
        except HTTPException:
            # Status preserved; the exception handler in main.py adds the header
            raise
        except Exception as e:
            response = JSONResponse(
                status_code=500,
                content={"detail": "Internal server error"},
            )
            apply_csp_headers(response, policy, self.reporting_endpoint, self.report_group)
            logger.error(
                "Unhandled exception in request - returning 500 with CSP header",
                extra={
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "nonce": nonce[:8] + "...",
                },
                exc_info=True,
            )
            return response

        apply_csp_headers(response, policy, self.reporting_endpoint, self.report_group)
        logger.debug(
            "CSP header added",
            extra={
                "nonce": nonce[:8] + "...",
                "report_only": policy.report_only,
                "path": request.url.path,
            },
        )
        return response
