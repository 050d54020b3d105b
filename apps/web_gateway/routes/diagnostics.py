"""CSP self-test page.

Renders an inline script carrying the per-request nonce and the
registry-hashed inline snippets, so an operator can open the page in a
browser and confirm nothing is reported as a violation.
"""

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from apps.web_gateway.dependencies import get_hash_registry
from config.settings import Settings, get_settings
from libs.platform.security.hash_registry import HashRegistry

router = APIRouter()
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


@router.get("/security/csp-check", response_class=HTMLResponse)
async def csp_check_page(
    request: Request,
    settings: Settings = Depends(get_settings),
    registry: HashRegistry = Depends(get_hash_registry),
) -> HTMLResponse:
    """Nonce and hash demonstration page.

    Feature-flagged via ENABLE_DIAGNOSTIC_PAGES; 404 otherwise.
    """
    if not settings.enable_diagnostic_pages:
        raise HTTPException(status_code=404, detail="Not found")

    return templates.TemplateResponse(
        request,
        "csp_check.html",
        {
            "csp_nonce": request.state.csp_nonce,
            "profile": settings.security_profile,
            "style_entries": [e for e in registry.entries if e.directive == "style-src"],
            "script_entries": [e for e in registry.entries if e.directive == "script-src"],
        },
    )
