"""
Application settings loaded from environment variables.

Uses Pydantic Settings for type-safe configuration with validation.
All settings can be overridden via environment variables or .env file.
List-valued settings are comma-separated strings in the environment, e.g.
``ALLOWED_FETCH_DOMAINS=api.example.com,cdn.example.com``.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal
from urllib.parse import urlsplit

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from libs.platform.security.exceptions import ConfigError

DEFAULT_HASH_MANIFEST = str(Path(__file__).resolve().parent / "csp_hashes.json")
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

CommaList = Annotated[list[str], NoDecode]
PortList = Annotated[list[int], NoDecode]


class Settings(BaseSettings):
    """
    Web gateway configuration.

    All settings are loaded from environment variables or .env file.
    The deployment profile is explicit (``SECURITY_PROFILE``) and never
    inferred from other variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extraneous env vars from broader platform configs
    )

    # Deployment profile
    security_profile: Literal["development", "production"] = Field(
        default="production",
        description="CSP/SSRF profile: 'production' enforces, 'development' relaxes for hot reload",
    )

    # Upstream backend API
    upstream_api_base_url: str = Field(
        ...,
        description="Backend API base URL that proxied images are fetched from",
    )

    # Outbound fetch containment
    allowed_fetch_domains: CommaList = Field(
        default_factory=list,
        description="Domains the guarded fetcher may contact (exact or subdomain match)",
    )
    allow_localhost_fetch: bool = Field(
        default=False,
        description="Allow outbound fetches to localhost (development profile only)",
    )
    allowed_localhost_ports: PortList = Field(
        default_factory=lambda: [3000, 4200],
        description="Loopback ports reachable when ALLOW_LOCALHOST_FETCH is on",
    )
    image_fetch_timeout_ms: int = Field(
        default=5000,
        ge=100,
        le=60000,
        description="Total time budget for one upstream image fetch",
    )
    max_response_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Maximum upstream image size in bytes",
    )
    allowed_image_extensions: CommaList = Field(
        default_factory=lambda: [".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"],
        description="Accepted image path extensions (empty disables the check)",
    )

    # CSP
    csp_report_only: bool = Field(
        default=False,
        description="Rollout switch: send the production policy as report-only",
    )
    csp_report_max_bytes: int = Field(
        default=10 * 1024,
        ge=256,
        le=1024 * 1024,
        description="Maximum accepted violation report body size",
    )
    csp_hash_manifest_path: str = Field(
        default=DEFAULT_HASH_MANIFEST,
        description="Generated CSP hash artifact (scripts/generate_csp_hashes.py)",
    )
    expected_third_party_origins: CommaList = Field(
        default_factory=lambda: ["https://fonts.googleapis.com", "https://fonts.gstatic.com"],
        description="Origins not flagged as unexpected in violation reports",
    )
    connect_origins: CommaList = Field(
        default_factory=list,
        description="Extra origins allowed in connect-src and img-src",
    )
    public_origin: str | None = Field(
        default=None,
        description="Public origin of this gateway (absolute Reporting-Endpoints URL)",
    )

    # Session
    session_cookie_name: str = Field(
        default="session_token",
        min_length=1,
        description="Cookie carrying the session bearer token for image requests",
    )

    # Diagnostics / logging
    enable_diagnostic_pages: bool = Field(
        default=False,
        description="Serve /security/csp-check (nonce and hash self-test page)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    @field_validator(
        "allowed_fetch_domains",
        "allowed_image_extensions",
        "expected_third_party_origins",
        "connect_origins",
        "allowed_localhost_ports",
        mode="before",
    )
    @classmethod
    def _split_comma_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("allowed_fetch_domains")
    @classmethod
    def _normalize_domains(cls, value: list[str]) -> list[str]:
        return [domain.lower().rstrip(".") for domain in value]

    @field_validator("allowed_image_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in value]

    @field_validator("allowed_localhost_ports")
    @classmethod
    def _check_ports(cls, value: list[int]) -> list[int]:
        if any(not 0 < port < 65536 for port in value):
            raise ValueError("ALLOWED_LOCALHOST_PORTS entries must be TCP ports (1-65535)")
        return value

    @field_validator("public_origin")
    @classmethod
    def _check_public_origin(cls, value: str | None) -> str | None:
        if not value:
            return None
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.hostname or parts.path.strip("/"):
            raise ValueError("PUBLIC_ORIGIN must be a bare http(s) origin")
        return f"{parts.scheme}://{parts.netloc}"

    @field_validator("upstream_api_base_url")
    @classmethod
    def _check_upstream_url(cls, value: str) -> str:
        parts = urlsplit(value)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError("UPSTREAM_API_BASE_URL must be an absolute http(s) URL")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _check_production_profile(self) -> "Settings":
        if self.security_profile != "production":
            return self
        if urlsplit(self.upstream_api_base_url).scheme != "https":
            raise ValueError("UPSTREAM_API_BASE_URL must use https in production")
        if self.allow_localhost_fetch:
            raise ValueError("ALLOW_LOCALHOST_FETCH is not permitted in production")
        if not self.allowed_fetch_domains:
            raise ValueError("ALLOWED_FETCH_DOMAINS must not be empty in production")
        host = self.upstream_host
        if host in LOCAL_HOSTS:
            raise ValueError("UPSTREAM_API_BASE_URL must not point at localhost in production")
        if not any(host == d or host.endswith("." + d) for d in self.allowed_fetch_domains):
            raise ValueError("ALLOWED_FETCH_DOMAINS must include the upstream API host")
        return self

    @property
    def upstream_host(self) -> str:
        return (urlsplit(self.upstream_api_base_url).hostname or "").lower().rstrip(".")

    @property
    def upstream_origin(self) -> str:
        parts = urlsplit(self.upstream_api_base_url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def effective_fetch_domains(self) -> list[str]:
        """Configured allowlist, or the upstream host when none is set (development)."""
        return self.allowed_fetch_domains or [self.upstream_host]

    @property
    def effective_localhost_ports(self) -> list[int]:
        """Configured loopback ports plus the upstream port when it is local."""
        ports = list(self.allowed_localhost_ports)
        if self.upstream_host in LOCAL_HOSTS:
            parts = urlsplit(self.upstream_api_base_url)
            port = parts.port or (443 if parts.scheme == "https" else 80)
            if port not in ports:
                ports.append(port)
        return ports


def load_settings() -> Settings:
    """
    Load settings, converting validation failures into ConfigError.

    Raises:
        ConfigError: If required variables are missing or values are invalid
    """
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.

    Returns:
        Settings instance with all configuration loaded.

    Raises:
        ConfigError: If the environment is invalid (fatal at startup)

    Example:
        >>> settings = get_settings()
        >>> print(settings.security_profile)
        'production'
    """
    return load_settings()
