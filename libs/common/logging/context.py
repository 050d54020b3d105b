"""Request ID generation and context propagation.

Each inbound request gets a request ID (taken from a trusted-looking
``X-Request-ID`` header or freshly generated) that is attached to every log
record emitted while handling it, so a CSP violation, a blocked outbound
fetch and the page response that caused them can be correlated.

Incoming IDs are attacker-controlled, so only short IDs made of
``[A-Za-z0-9._-]`` are accepted; anything else is replaced to keep log lines
free of injected content.

Example:
    >>> set_request_id("abc-123")
    >>> get_request_id()
    'abc-123'
"""

import contextvars
import re
import uuid
from types import TracebackType

_request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,64}")


def generate_request_id() -> str:
    """Generate a new request ID (UUID v4 string)."""
    return str(uuid.uuid4())


def is_acceptable_request_id(value: str | None) -> bool:
    """True if an externally supplied ID is safe to log verbatim."""
    return bool(value) and _REQUEST_ID_PATTERN.fullmatch(value or "") is not None


def get_request_id() -> str | None:
    """Get the request ID for the current context, if any."""
    return _request_id_var.get()


def set_request_id(request_id: str) -> None:
    """Set the request ID for the current context.

    Raises:
        ValueError: If request_id is empty
    """
    if not request_id:
        raise ValueError("Request ID cannot be empty")
    _request_id_var.set(request_id)


def clear_request_id() -> None:
    """Clear the request ID from the current context."""
    _request_id_var.set(None)


class RequestContext:
    """Context manager setting a request ID for a block and restoring the previous one.

    Example:
        >>> with RequestContext("job-42"):
        ...     print(get_request_id())
        job-42
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id or generate_request_id()
        self._token: contextvars.Token[str | None] | None = None

    def __enter__(self) -> str:
        self._token = _request_id_var.set(self.request_id)
        return self.request_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _request_id_var.reset(self._token)
            self._token = None
