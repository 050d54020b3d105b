"""Centralized logging configuration.

Services call configure_logging() once at startup to get JSON output on
stdout with the current request ID stamped on every record.

Example:
    >>> from libs.common.logging.config import configure_logging
    >>> logger = configure_logging(service_name="web_gateway", log_level="INFO")
    >>> logger.info("Gateway started", extra={"profile": "production"})
"""

import logging
import sys

from libs.common.logging.context import get_request_id
from libs.common.logging.formatter import JSONFormatter


class RequestIDFilter(logging.Filter):
    """Inject the current request ID into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    include_context: bool = True,
) -> logging.Logger:
    """Configure structured JSON logging on the root logger.

    Args:
        service_name: Name of the service (e.g., "web_gateway")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_context: Whether to include ``extra`` fields in output

    Returns:
        Configured root logger

    Raises:
        ValueError: If log_level is invalid
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter(service_name=service_name, include_context=include_context))
    handler.addFilter(RequestIDFilter())
    root_logger.addHandler(handler)

    return root_logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger by name (typically ``__name__``)."""
    return logging.getLogger(name)
