"""CSP policy builder.

Centralized Content-Security-Policy construction shared by the CSP
middleware (normal response path) and the HTTPException handler (error
response path), so both paths always emit the same policy for a nonce.

Profiles:
- production: nonce + 'strict-dynamic' for scripts, nonce + registered
  hashes for styles, enforcing header unless the report-only rollout switch
  is on.
- development: 'unsafe-inline'/'unsafe-eval' for hot reload, localhost
  websocket origins, always report-only.

The profile is an explicit argument, never read from ambient state.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Literal

from libs.platform.security.exceptions import ConfigError
from libs.platform.security.hash_registry import HashRegistry

Profile = Literal["development", "production"]
PROFILES: tuple[Profile, ...] = ("development", "production")

ENFORCE_HEADER = "Content-Security-Policy"
REPORT_ONLY_HEADER = "Content-Security-Policy-Report-Only"

SELF = "'self'"
NONE = "'none'"
UNSAFE_INLINE = "'unsafe-inline'"
UNSAFE_EVAL = "'unsafe-eval'"
STRICT_DYNAMIC = "'strict-dynamic'"

GOOGLE_FONTS_CSS = "https://fonts.googleapis.com"
GOOGLE_FONTS_FILES = "https://fonts.gstatic.com"

DEV_CONNECT_SOURCES = (
    "ws://localhost:*",
    "http://localhost:*",
    "ws://127.0.0.1:*",
    "http://127.0.0.1:*",
)


@dataclass(frozen=True)
class CSPPolicy:
    """A rendered policy for one response."""

    header_value: str
    report_only: bool
    nonce: str

    @property
    def header_name(self) -> str:
        return REPORT_ONLY_HEADER if self.report_only else ENFORCE_HEADER

    @property
    def other_header_name(self) -> str:
        """The header that must NOT be present alongside ``header_name``."""
        return ENFORCE_HEADER if self.report_only else REPORT_ONLY_HEADER


def _dedupe(sources: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for source in sources:
        if source:
            seen.setdefault(source, None)
    return tuple(seen)


def _is_wildcard(source: str) -> bool:
    return "*" in source


def nonce_source(nonce: str) -> str:
    return f"'nonce-{nonce}'"


class PolicyBuilder:
    """Compose CSP header values from a nonce, the hash registry and a profile.

    Args:
        registry: Known inline content hashes
        api_origins: Backend origins the browser may connect to / load images from
        image_origins: Extra image origins (e.g. a CDN)
        report_uri: Legacy violation report endpoint
        report_to_group: Reporting API group name (see ``Reporting-Endpoints``)
        report_only: Rollout switch sending the production policy as report-only

    Raises:
        ConfigError: If the production policy would break its invariants
            (wildcard alongside 'unsafe-inline', or 'unsafe-inline' in script-src)
    """

    def __init__(
        self,
        registry: HashRegistry,
        *,
        api_origins: Sequence[str] = (),
        image_origins: Sequence[str] = (),
        report_uri: str = "/csp-report",
        report_to_group: str = "csp-endpoint",
        report_only: bool = False,
    ) -> None:
        self.registry = registry
        self.api_origins = tuple(api_origins)
        self.image_origins = tuple(image_origins)
        self.report_uri = report_uri
        self.report_to_group = report_to_group
        self.report_only = report_only

        # Verify once with a placeholder nonce so a bad origin list fails at startup
        self._check_production_invariants(self.directives("production", "startup-check"))

    def directives(self, profile: Profile, nonce: str) -> dict[str, tuple[str, ...]]:
        """Return the ordered directive map for a profile and nonce."""
        if profile not in PROFILES:
            raise ConfigError(f"Unknown CSP profile: {profile!r}")

        is_dev = profile == "development"

        if is_dev:
            script_src = [SELF, UNSAFE_INLINE, UNSAFE_EVAL]
            style_src = [SELF, UNSAFE_INLINE, GOOGLE_FONTS_CSS]
        else:
            script_src = [SELF, nonce_source(nonce), STRICT_DYNAMIC]
            script_src.extend(self.registry.sources_for("script-src"))
            style_src = [SELF, nonce_source(nonce)]
            style_src.extend(self.registry.sources_for("style-src"))
            style_src.append(GOOGLE_FONTS_CSS)

        connect_src = [SELF, *self.api_origins]
        if is_dev:
            connect_src.extend(DEV_CONNECT_SOURCES)

        directives: dict[str, tuple[str, ...]] = {
            "default-src": (SELF,),
            "script-src": _dedupe(script_src),
            "style-src": _dedupe(style_src),
            "img-src": _dedupe([SELF, "data:", "blob:", *self.api_origins, *self.image_origins]),
            "font-src": (SELF, GOOGLE_FONTS_FILES),
            "connect-src": _dedupe(connect_src),
            "object-src": (NONE,),
            "base-uri": (SELF,),
            "form-action": (SELF,),
            "frame-ancestors": (NONE,),
            "frame-src": (NONE,),
            "worker-src": (SELF, "blob:"),
            "child-src": (SELF, "blob:"),
            "media-src": (SELF,),
            "manifest-src": (SELF,),
        }
        # Dev servers run on plain http://localhost
        if not is_dev:
            directives["upgrade-insecure-requests"] = ()
        if self.report_uri:
            directives["report-uri"] = (self.report_uri,)
        if self.report_to_group:
            directives["report-to"] = (self.report_to_group,)
        return directives

    def build(self, profile: Profile, nonce: str) -> CSPPolicy:
        """Render the policy for one response.

        Args:
            profile: "development" or "production"
            nonce: The nonce exposed to the rendering layer for this response

        Returns:
            CSPPolicy with the header value and its disposition
        """
        directives = self.directives(profile, nonce)
        if profile == "production":
            self._check_production_invariants(directives)

        header_value = "; ".join(
            f"{name} {' '.join(sources)}" if sources else name
            for name, sources in directives.items()
        )
        return CSPPolicy(
            header_value=header_value,
            report_only=profile == "development" or self.report_only,
            nonce=nonce,
        )

    @staticmethod
    def _check_production_invariants(directives: dict[str, tuple[str, ...]]) -> None:
        if UNSAFE_INLINE in directives.get("script-src", ()):
            raise ConfigError("Production script-src must not contain 'unsafe-inline'")
        for name, sources in directives.items():
            if UNSAFE_INLINE in sources and any(_is_wildcard(s) for s in sources):
                raise ConfigError(
                    f"Production {name} must not combine a wildcard source with 'unsafe-inline'"
                )


__all__ = [
    "ENFORCE_HEADER",
    "PROFILES",
    "REPORT_ONLY_HEADER",
    "CSPPolicy",
    "PolicyBuilder",
    "Profile",
    "nonce_source",
]
