"""Security boundary utilities for the web gateway.

- CSP: nonce generation, known-hash registry, policy builder
- Violation report ingestion (legacy + Reporting API formats)
- SSRF containment: path validation, guarded fetcher, image proxy
"""

from __future__ import annotations

from libs.platform.security.csp_policy import CSPPolicy, PolicyBuilder, Profile
from libs.platform.security.exceptions import (
    BlockReason,
    ConfigError,
    NonceGenerationError,
    PathRejected,
    PathRejectReason,
    ProtectionBlocked,
    ReportMalformed,
    ReportPayloadError,
    SecurityBoundaryError,
    UpstreamError,
    UpstreamFailure,
)
from libs.platform.security.guarded_fetch import FetchedResponse, FetchPolicy, GuardedFetcher
from libs.platform.security.hash_registry import HashRegistry, KnownHash, compute_digest
from libs.platform.security.image_proxy import ImageProxyHandler, ProxiedImage, ProxyFailure
from libs.platform.security.nonce import NonceGenerator
from libs.platform.security.path_validator import PathDecision, PathValidator
from libs.platform.security.violations import (
    IngestResult,
    ViolationIngester,
    ViolationReport,
    ViolationSignal,
)

__all__ = [
    "BlockReason",
    "CSPPolicy",
    "ConfigError",
    "FetchPolicy",
    "FetchedResponse",
    "GuardedFetcher",
    "HashRegistry",
    "ImageProxyHandler",
    "IngestResult",
    "KnownHash",
    "NonceGenerationError",
    "NonceGenerator",
    "PathDecision",
    "PathRejectReason",
    "PathRejected",
    "PathValidator",
    "PolicyBuilder",
    "Profile",
    "ProtectionBlocked",
    "ProxiedImage",
    "ProxyFailure",
    "ReportMalformed",
    "ReportPayloadError",
    "SecurityBoundaryError",
    "UpstreamError",
    "UpstreamFailure",
    "ViolationIngester",
    "ViolationReport",
    "ViolationSignal",
    "compute_digest",
]
