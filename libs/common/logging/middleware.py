"""ASGI middleware for request ID propagation.

Extracts ``X-Request-ID`` from the incoming request (if it is well-formed),
generates one otherwise, exposes it to logging for the duration of the
request and echoes it on the response, including error responses produced
by exception handlers.

Example:
    >>> from fastapi import FastAPI
    >>> from libs.common.logging.middleware import add_request_id_middleware
    >>>
    >>> app = FastAPI()
    >>> add_request_id_middleware(app)
"""

from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from libs.common.logging.context import (
    REQUEST_ID_HEADER,
    clear_request_id,
    generate_request_id,
    is_acceptable_request_id,
    set_request_id,
)

_HEADER_KEY = REQUEST_ID_HEADER.lower().encode("latin-1")


class ASGIRequestIDMiddleware:
    """Low-level ASGI middleware managing the request ID.

    Works below BaseHTTPMiddleware so the header is added even to responses
    generated by exception handlers.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = dict(scope.get("headers", [])).get(_HEADER_KEY)
        candidate = incoming.decode("latin-1") if incoming else None
        request_id = candidate if is_acceptable_request_id(candidate) else generate_request_id()
        set_request_id(request_id)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = [
                    (key, value)
                    for key, value in message.get("headers", [])
                    if key.lower() != _HEADER_KEY
                ]
                headers.append((_HEADER_KEY, request_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            clear_request_id()


def add_request_id_middleware(app: FastAPI) -> None:
    """Install ASGIRequestIDMiddleware on a FastAPI application."""
    app.add_middleware(ASGIRequestIDMiddleware)
