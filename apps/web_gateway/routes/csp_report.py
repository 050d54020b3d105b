"""CSP violation reporting endpoint.

Receives violation reports from browsers in either wire format (legacy
``report-uri`` objects or Reporting API batches) and hands them to the
ViolationIngester, which normalizes, annotates and logs them.

Security:
- Public endpoint (browsers send reports without credentials)
- Payload size checked on Content-Length and again while streaming, before
  any parsing
- Responses never echo report content
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from apps.web_gateway.dependencies import get_violation_ingester
from config.settings import Settings, get_settings
from libs.platform.security.exceptions import ReportPayloadError
from libs.platform.security.violations import ReportOrigin, ViolationIngester

logger = logging.getLogger(__name__)
router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Max-Age": "86400",
}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def report_origin(request: Request) -> ReportOrigin:
    """Delivering request's metadata, clipped for the log sink."""
    user_agent = request.headers.get("user-agent")
    referer = request.headers.get("referer")
    return ReportOrigin(
        client_ip=_client_ip(request),
        user_agent=user_agent[:512] if user_agent else None,
        referer=referer[:2048] if referer else None,
    )


async def read_limited_body(request: Request, limit: int) -> bytes:
    """Read the request body, rejecting anything over ``limit`` bytes.

    Raises:
        HTTPException: 400 for a malformed Content-Length or broken stream,
            413 when the declared or streamed size exceeds ``limit``
    """
    try:
        content_length = int(request.headers.get("content-length", "0"))
    except (ValueError, TypeError) as err:
        logger.warning(
            "CSP report rejected: malformed Content-Length header",
            extra={
                "content_length_raw": request.headers.get("content-length"),
                "client_ip": _client_ip(request),
            },
        )
        raise HTTPException(status_code=400, detail="Malformed Content-Length header") from err

    if content_length > limit:
        logger.warning(
            "CSP report rejected: payload too large (Content-Length)",
            extra={"content_length": content_length, "client_ip": _client_ip(request)},
        )
        raise HTTPException(status_code=413, detail="Payload too large")

    body = bytearray()
    try:
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > limit:
                logger.warning(
                    "CSP report rejected: payload too large (streaming)",
                    extra={"accumulated_size": len(body), "client_ip": _client_ip(request)},
                )
                raise HTTPException(status_code=413, detail="Payload too large")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "CSP report rejected: body stream error",
            extra={"error_type": type(e).__name__, "client_ip": _client_ip(request)},
        )
        raise HTTPException(status_code=400, detail="Invalid request body") from e
    return bytes(body)


@router.post("/csp-report")
async def csp_report(
    request: Request,
    ingester: ViolationIngester = Depends(get_violation_ingester),
    settings: Settings = Depends(get_settings),
) -> dict[str, str | int]:
    """Handle CSP violation reports.

    Returns:
        ``{"status": "received", ...}`` with per-request counts for any
        parseable body, including one whose items were all discarded

    Raises:
        HTTPException: 400 if the body is not decodable JSON of a known shape
        HTTPException: 413 if the payload exceeds CSP_REPORT_MAX_BYTES
    """
    body = await read_limited_body(request, settings.csp_report_max_bytes)

    try:
        result = ingester.ingest(
            body, request.headers.get("content-type", ""), origin=report_origin(request)
        )
    except ReportPayloadError as err:
        logger.warning(
            "CSP report rejected: unparseable body",
            extra={"error": err.message, "client_ip": _client_ip(request)},
        )
        raise HTTPException(status_code=400, detail="Invalid report") from err

    return {
        "status": "received",
        "accepted": len(result.reports),
        "discarded": result.discarded,
        "ignored": result.ignored,
    }


@router.options("/csp-report")
async def csp_report_preflight() -> Response:
    """CORS preflight for cross-origin report delivery (this endpoint only)."""
    return Response(status_code=204, headers=CORS_HEADERS)
