"""
Security Boundary Exception Hierarchy.

This module defines the typed failures raised by the CSP engine, the path
validator and the SSRF-guarded fetcher.

Exception hierarchy:
    SecurityBoundaryError (base)
    ├── ConfigError - Missing/invalid configuration (fatal at startup)
    ├── NonceGenerationError - Entropy source failed (request aborted)
    ├── PathRejected - Caller-supplied resource path failed validation
    ├── ProtectionBlocked - SSRF containment rule fired
    ├── UpstreamError - Network/timeout/non-2xx from a guarded fetch
    ├── ReportPayloadError - Violation report body is fully unparseable
    └── ReportMalformed - A single violation report item failed to decode

Every exception carries a machine-readable reason. Messages and reasons are
for logs only: route handlers translate them into generic responses so the
exact blocked host or rejected path is never echoed to the caller.
"""

from __future__ import annotations

from enum import Enum


class PathRejectReason(str, Enum):
    """Why a resource path was rejected by PathValidator."""

    EMPTY = "empty"
    TOO_LONG = "too-long"
    TRAVERSAL = "traversal"
    DOUBLE_SLASH = "double-slash"
    NULL_BYTE = "null-byte"
    SCHEME = "scheme"
    FORBIDDEN_CHARACTER = "forbidden-character"
    PATTERN_MISMATCH = "pattern-mismatch"
    OUTSIDE_BASE = "outside-base"
    EXTENSION_NOT_ALLOWED = "extension-not-allowed"


class BlockReason(str, Enum):
    """Which SSRF containment rule fired."""

    HOST_NOT_ALLOWLISTED = "host-not-allowlisted"
    PRIVATE_IP = "private-ip"
    REDIRECT_DENIED = "redirect-denied"
    SCHEME_NOT_ALLOWED = "scheme-not-allowed"
    INVALID_URL = "invalid-url"
    POLICY_OVERRIDE_DENIED = "policy-override-denied"


class UpstreamFailure(str, Enum):
    """Ordinary (non-containment) failure of an outbound fetch."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    DNS = "dns"
    STATUS = "status"
    RESPONSE_TOO_LARGE = "response-too-large"


class SecurityBoundaryError(Exception):
    """
    Base exception for all security boundary errors.

    Attributes:
        message: Human-readable, log-only description
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigError(SecurityBoundaryError):
    """
    Raised when environment configuration is missing or invalid.

    Fatal at startup; never raised per request. Examples: a production
    profile that enables localhost fetching, a hash manifest whose stored
    digest does not match its content, a policy that mixes a wildcard source
    with 'unsafe-inline'.
    """


class NonceGenerationError(SecurityBoundaryError):
    """
    Raised when the random source cannot produce a full-strength nonce.

    The request must be aborted; serving a page with a weak or reused nonce
    is never an acceptable fallback.
    """


class PathRejected(SecurityBoundaryError):
    """
    Raised when a caller-supplied resource path fails validation.

    Attributes:
        reason: Which validation rule fired
    """

    def __init__(self, reason: PathRejectReason, message: str = "Invalid path") -> None:
        super().__init__(message)
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.message} (reason: {self.reason.value})"


class ProtectionBlocked(SecurityBoundaryError):
    """
    Raised when an outbound request violates SSRF containment.

    Attributes:
        reason: Machine-readable rule identifier
        host: Target host that triggered the block (log-only)

    Example:
        >>> raise ProtectionBlocked(BlockReason.PRIVATE_IP, host="127.0.0.1")
    """

    def __init__(
        self,
        reason: BlockReason,
        message: str | None = None,
        host: str | None = None,
    ) -> None:
        super().__init__(message or f"Request blocked: {reason.value}")
        self.reason = reason
        self.host = host

    def __str__(self) -> str:
        if self.host:
            return f"{self.message} (reason: {self.reason.value}, host: {self.host})"
        return f"{self.message} (reason: {self.reason.value})"


class UpstreamError(SecurityBoundaryError):
    """
    Raised on ordinary network failure of a guarded fetch.

    Attributes:
        failure: Failure category (timeout, transport, dns, status, ...)
        status_code: Upstream HTTP status when failure is STATUS
    """

    def __init__(
        self,
        failure: UpstreamFailure,
        message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or f"Upstream request failed: {failure.value}")
        self.failure = failure
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        """True when the upstream answered with a client error (4xx)."""
        return (
            self.failure is UpstreamFailure.STATUS
            and self.status_code is not None
            and 400 <= self.status_code < 500
        )


class ReportPayloadError(SecurityBoundaryError):
    """Raised when a violation report body cannot be decoded at all."""


class ReportMalformed(SecurityBoundaryError):
    """
    A single violation report item that failed to decode.

    Decoders return this as a value instead of raising it, so one bad item
    in a batch never blocks the valid ones.

    Attributes:
        index: Position of the item in its batch
        source_format: "legacy" or "modern"
    """

    def __init__(self, message: str, index: int = 0, source_format: str = "legacy") -> None:
        super().__init__(message)
        self.index = index
        self.source_format = source_format


__all__ = [
    "BlockReason",
    "ConfigError",
    "NonceGenerationError",
    "PathRejectReason",
    "PathRejected",
    "ProtectionBlocked",
    "ReportMalformed",
    "ReportPayloadError",
    "SecurityBoundaryError",
    "UpstreamError",
    "UpstreamFailure",
]
