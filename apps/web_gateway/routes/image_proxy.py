"""Authenticated image proxy route.

``GET /images/uploads?path=<relative path>`` fetches the image from the
backend API with the caller's session token and streams the bytes back.
All containment work (path validation, host allowlist, private address
blocking, redirect refusal, size cap) happens in ImageProxyHandler; this
route only extracts the token and maps the result onto a response.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from apps.web_gateway.dependencies import get_bearer_token, get_image_proxy_handler
from libs.platform.security.image_proxy import ImageProxyHandler, ProxyFailure

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/images/uploads")
async def proxy_upload_image(
    request: Request,
    path: str | None = Query(default=None, max_length=2048),
    handler: ImageProxyHandler = Depends(get_image_proxy_handler),
) -> Response:
    """Proxy one uploaded image.

    Raises:
        HTTPException: 401 without a session token; 400/403/404/500 with a
            generic message when the proxy refuses or the upstream fails
    """
    token = get_bearer_token(request)
    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await handler.handle(token, path)
    if isinstance(result, ProxyFailure):
        raise HTTPException(status_code=result.status_code, detail=result.message)

    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.content_type,
        headers=result.headers,
    )
