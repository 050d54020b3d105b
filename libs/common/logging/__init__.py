"""Centralized structured logging library.

JSON logs with request ID correlation and credential redaction.

Usage:
    # At service startup
    from libs.common.logging import add_request_id_middleware, configure_logging
    configure_logging(service_name="web_gateway", log_level="INFO")
    add_request_id_middleware(app)

    # In modules
    logger = logging.getLogger(__name__)
    logger.warning("Outbound request blocked", extra={"reason": "private-ip"})
"""

from libs.common.logging.config import RequestIDFilter, configure_logging, get_logger
from libs.common.logging.context import (
    REQUEST_ID_HEADER,
    RequestContext,
    clear_request_id,
    generate_request_id,
    get_request_id,
    is_acceptable_request_id,
    set_request_id,
)
from libs.common.logging.formatter import JSONFormatter, redact
from libs.common.logging.middleware import ASGIRequestIDMiddleware, add_request_id_middleware

__all__ = [
    # Configuration
    "configure_logging",
    "get_logger",
    "RequestIDFilter",
    # Request ID management
    "REQUEST_ID_HEADER",
    "RequestContext",
    "clear_request_id",
    "generate_request_id",
    "get_request_id",
    "is_acceptable_request_id",
    "set_request_id",
    # Middleware
    "ASGIRequestIDMiddleware",
    "add_request_id_middleware",
    # Formatter
    "JSONFormatter",
    "redact",
]
