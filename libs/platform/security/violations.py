"""CSP violation report ingestion.

Browsers deliver violation reports in two wire shapes:

- legacy (``report-uri``): ``Content-Type: application/csp-report`` with a
  single object ``{"csp-report": {"document-uri": ..., ...}}``
- modern (``report-to`` / Reporting API): ``Content-Type:
  application/reports+json`` with an array of
  ``{"type": "csp-violation", "body": {"documentURL": ..., ...}}``

The body is first classified into a tagged union (LegacyEnvelope |
ModernBatch). Each variant has its own decoder that returns either a
normalized ViolationReport or a ReportMalformed value, so one bad item
never blocks the rest of a batch. Only a body that cannot be decoded at all
raises ReportPayloadError.

Records are annotated with advisory signals (inline injection, eval,
unexpected third-party origins) for the log sink. Annotations never change
how the endpoint responds.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal
from urllib.parse import urlsplit

from prometheus_client import Counter
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from libs.platform.security.exceptions import ReportMalformed, ReportPayloadError
from libs.platform.security.guarded_fetch import host_matches_allowlist
from libs.platform.security.hash_registry import HashRegistry

logger = logging.getLogger(__name__)

ReportFormat = Literal["legacy", "modern"]
Disposition = Literal["enforce", "report"]

LEGACY_CONTENT_TYPES = frozenset({"application/csp-report", "application/json"})
MODERN_CONTENT_TYPE = "application/reports+json"
DEFAULT_MAX_BATCH = 100
MAX_FIELD_LENGTH = 2048

csp_violation_reports_total = Counter(
    "csp_violation_reports_total", "CSP violation reports ingested", ["format", "disposition"]
)
csp_violation_reports_discarded_total = Counter(
    "csp_violation_reports_discarded_total", "Violation report items dropped", ["format"]
)
csp_violation_annotations_total = Counter(
    "csp_violation_annotations_total", "Advisory annotations on violation reports", ["annotation"]
)


class ViolationSignal(str, Enum):
    """Advisory annotations attached to a violation record."""

    INLINE_SCRIPT = "inline-script"
    INLINE_STYLE = "inline-style"
    EVAL = "eval"
    UNEXPECTED_EXTERNAL_ORIGIN = "unexpected-external-origin"
    JAVASCRIPT_URI = "javascript-uri"
    DATA_URI_SCRIPT = "data-uri-script"


@dataclass(frozen=True)
class ReportOrigin:
    """Request metadata recorded alongside each violation (log-only)."""

    client_ip: str | None = None
    user_agent: str | None = None
    referer: str | None = None


@dataclass(frozen=True)
class ViolationReport:
    """Normalized violation record, identical for both wire formats."""

    document_uri: str
    violated_directive: str
    effective_directive: str
    blocked_uri: str
    source_file: str | None
    line: int | None
    column: int | None
    disposition: Disposition
    source_format: ReportFormat
    sample: str | None = None
    annotations: tuple[ViolationSignal, ...] = ()
    suggested_hash: str | None = None
    matched_known_hash: str | None = None
    origin: ReportOrigin = field(default_factory=ReportOrigin)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingest call."""

    reports: tuple[ViolationReport, ...] = ()
    discarded: int = 0
    ignored: int = 0


@dataclass(frozen=True)
class LegacyEnvelope:
    """A single ``{"csp-report": {...}}`` object."""

    payload: Any
    kind: Literal["legacy"] = "legacy"


@dataclass(frozen=True)
class ModernBatch:
    """An array of Reporting API reports."""

    items: tuple[Any, ...] = field(default_factory=tuple)
    kind: Literal["modern"] = "modern"


WirePayload = LegacyEnvelope | ModernBatch


class LegacyReportBody(BaseModel):
    """Body of a legacy ``csp-report`` object (CSP Level 2 field names).

    Unknown keys are ignored: browsers add fields (``script-sample``,
    ``disposition``) across versions.
    """

    document_uri: str = Field(..., alias="document-uri", min_length=1)
    violated_directive: str | None = Field(None, alias="violated-directive")
    effective_directive: str | None = Field(None, alias="effective-directive")
    blocked_uri: str = Field("", alias="blocked-uri")
    source_file: str | None = Field(None, alias="source-file")
    line_number: int | None = Field(None, alias="line-number", ge=0)
    column_number: int | None = Field(None, alias="column-number", ge=0)
    disposition: Disposition = "enforce"
    script_sample: str | None = Field(None, alias="script-sample")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ModernReportBody(BaseModel):
    """Body of a Reporting API ``csp-violation`` report."""

    document_url: str = Field(..., alias="documentURL", min_length=1)
    violated_directive: str | None = Field(None, alias="violatedDirective")
    effective_directive: str | None = Field(None, alias="effectiveDirective")
    blocked_url: str = Field("", alias="blockedURL")
    source_file: str | None = Field(None, alias="sourceFile")
    line_number: int | None = Field(None, alias="lineNumber", ge=0)
    column_number: int | None = Field(None, alias="columnNumber", ge=0)
    disposition: Disposition = "enforce"
    sample: str | None = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _clip(value: str | None) -> str | None:
    if value is None:
        return None
    return value[:MAX_FIELD_LENGTH]


def _directives(violated: str | None, effective: str | None) -> tuple[str, str] | None:
    violated = (violated or "").strip()
    effective = (effective or "").strip()
    if not violated and not effective:
        return None
    return violated or effective, effective or violated.split(" ", 1)[0]


def parse_payload(raw_body: bytes, content_type: str) -> WirePayload:
    """Classify a raw body into the tagged union.

    Raises:
        ReportPayloadError: Body is not UTF-8 JSON, nests deeper than the
            decoder can follow, or has a top-level shape neither format can
            carry
    """
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (ValueError, RecursionError) as e:
        # ValueError covers UnicodeDecodeError and JSONDecodeError
        raise ReportPayloadError("Violation report body is not valid JSON") from e

    media_type = (content_type or "").split(";", 1)[0].strip().lower()

    if isinstance(data, list):
        return ModernBatch(items=tuple(data))
    if isinstance(data, dict):
        if media_type == MODERN_CONTENT_TYPE and "csp-report" not in data:
            # Some agents send a single report object rather than an array
            return ModernBatch(items=(data,))
        return LegacyEnvelope(payload=data)
    raise ReportPayloadError(f"Unsupported violation report shape: {type(data).__name__}")


def decode_legacy(payload: Any, index: int = 0) -> ViolationReport | ReportMalformed:
    """Decode a legacy envelope into a ViolationReport."""
    if not isinstance(payload, dict) or not isinstance(payload.get("csp-report"), dict):
        return ReportMalformed("Missing 'csp-report' object", index, "legacy")
    try:
        body = LegacyReportBody.model_validate(payload["csp-report"])
    except ValidationError as e:
        return ReportMalformed(f"Invalid legacy report ({e.error_count()} errors)", index, "legacy")

    directives = _directives(body.violated_directive, body.effective_directive)
    if directives is None:
        return ReportMalformed("Legacy report has no directive", index, "legacy")

    return ViolationReport(
        document_uri=_clip(body.document_uri) or "",
        violated_directive=_clip(directives[0]) or "",
        effective_directive=_clip(directives[1]) or "",
        blocked_uri=_clip(body.blocked_uri) or "",
        source_file=_clip(body.source_file),
        line=body.line_number,
        column=body.column_number,
        disposition=body.disposition,
        source_format="legacy",
        sample=_clip(body.script_sample),
    )


def decode_modern(item: Any, index: int = 0) -> ViolationReport | ReportMalformed | None:
    """Decode one Reporting API item.

    Returns:
        ViolationReport, ReportMalformed, or None for non-CSP report types
        (deprecation, intervention, ...) which are ignored
    """
    if not isinstance(item, dict):
        return ReportMalformed("Report item is not an object", index, "modern")
    if item.get("type") != "csp-violation":
        return None
    if not isinstance(item.get("body"), dict):
        return ReportMalformed("Report item has no body", index, "modern")
    try:
        body = ModernReportBody.model_validate(item["body"])
    except ValidationError as e:
        return ReportMalformed(f"Invalid modern report ({e.error_count()} errors)", index, "modern")

    directives = _directives(body.violated_directive, body.effective_directive)
    if directives is None:
        return ReportMalformed("Modern report has no directive", index, "modern")

    return ViolationReport(
        document_uri=_clip(body.document_url) or "",
        violated_directive=_clip(directives[0]) or "",
        effective_directive=_clip(directives[1]) or "",
        blocked_uri=_clip(body.blocked_url) or "",
        source_file=_clip(body.source_file),
        line=body.line_number,
        column=body.column_number,
        disposition=body.disposition,
        source_format="modern",
        sample=_clip(body.sample),
    )


def log_violation(report: ViolationReport) -> None:
    """Default sink: one structured log record per violation."""
    logger.warning(
        "CSP violation reported",
        extra={
            "document_uri": report.document_uri,
            "violated_directive": report.violated_directive,
            "effective_directive": report.effective_directive,
            "blocked_uri": report.blocked_uri,
            "source_file": report.source_file,
            "line_number": report.line,
            "column_number": report.column,
            "disposition": report.disposition,
            "source_format": report.source_format,
            "annotations": [signal.value for signal in report.annotations],
            "suggested_hash": report.suggested_hash,
            "matched_known_hash": report.matched_known_hash,
            "client_ip": report.origin.client_ip,
            "user_agent": report.origin.user_agent,
            "referer": report.origin.referer,
        },
    )


class ViolationIngester:
    """Parse, normalize, annotate and forward violation reports.

    Args:
        registry: Hash registry used to cross-reference inline samples
        expected_origins: Third-party origins or hosts that are expected to
            appear as ``blocked-uri`` (not flagged as unexpected)
        sink: Receives each normalized record (default: structured log)
        max_batch: Items beyond this count in one body are discarded
    """

    def __init__(
        self,
        registry: HashRegistry,
        expected_origins: Iterable[str] = (),
        sink: Callable[[ViolationReport], None] | None = None,
        max_batch: int = DEFAULT_MAX_BATCH,
    ) -> None:
        self.registry = registry
        self.expected_hosts = frozenset(self._to_host(origin) for origin in expected_origins)
        self.sink = sink or log_violation
        self.max_batch = max_batch

    @staticmethod
    def _to_host(origin: str) -> str:
        origin = origin.strip().lower()
        if "://" in origin:
            return (urlsplit(origin).hostname or "").rstrip(".")
        return origin.rstrip(".")

    def ingest(
        self,
        raw_body: bytes,
        content_type: str,
        origin: ReportOrigin | None = None,
    ) -> IngestResult:
        """Ingest one request body.

        Args:
            raw_body: Request body, already size-limited by the caller
            content_type: Request ``Content-Type`` header
            origin: Delivering request's metadata, attached to every record

        Raises:
            ReportPayloadError: Only when the body is entirely unparseable
        """
        payload = parse_payload(raw_body, content_type)

        decoded: list[ViolationReport | ReportMalformed | None]
        overflow = 0
        if isinstance(payload, LegacyEnvelope):
            decoded = [decode_legacy(payload.payload)]
        else:
            items = payload.items[: self.max_batch]
            overflow = len(payload.items) - len(items)
            decoded = [decode_modern(item, index) for index, item in enumerate(items)]

        reports: list[ViolationReport] = []
        discarded = overflow
        ignored = 0
        for result in decoded:
            if result is None:
                ignored += 1
                continue
            if isinstance(result, ReportMalformed):
                discarded += 1
                logger.info(
                    "CSP violation report item discarded",
                    extra={
                        "index": result.index,
                        "source_format": result.source_format,
                        "error": result.message,
                    },
                )
                continue

            report = self.annotate(result)
            if origin is not None:
                report = replace(report, origin=origin)
            reports.append(report)
            csp_violation_reports_total.labels(
                format=report.source_format, disposition=report.disposition
            ).inc()
            for signal in report.annotations:
                csp_violation_annotations_total.labels(annotation=signal.value).inc()
            self._forward(report)

        if discarded:
            csp_violation_reports_discarded_total.labels(format=payload.kind).inc(discarded)
        return IngestResult(reports=tuple(reports), discarded=discarded, ignored=ignored)

    def annotate(self, report: ViolationReport) -> ViolationReport:
        """Attach advisory signals and hash cross-references."""
        directive = report.effective_directive or report.violated_directive
        blocked = report.blocked_uri.strip()
        blocked_lower = blocked.lower()
        is_script = directive.startswith("script-src")
        is_style = directive.startswith("style-src")

        signals: list[ViolationSignal] = []
        if blocked_lower == "inline":
            if is_script:
                signals.append(ViolationSignal.INLINE_SCRIPT)
            elif is_style:
                signals.append(ViolationSignal.INLINE_STYLE)
        if blocked_lower == "eval":
            signals.append(ViolationSignal.EVAL)
        if blocked_lower.startswith("javascript:"):
            signals.append(ViolationSignal.JAVASCRIPT_URI)
        if blocked_lower.startswith("data:") and is_script:
            signals.append(ViolationSignal.DATA_URI_SCRIPT)
        if blocked_lower.startswith(("http://", "https://")) and not self._is_expected(
            blocked, report.document_uri
        ):
            signals.append(ViolationSignal.UNEXPECTED_EXTERNAL_ORIGIN)

        suggested_hash = None
        matched = None
        if blocked_lower == "inline" and (is_script or is_style) and report.sample:
            digest = self.registry.compute_digest(report.sample)
            suggested_hash = f"sha256-{digest}"
            known = self.registry.lookup_digest(digest)
            matched = known.name if known else None

        return replace(
            report,
            annotations=tuple(signals),
            suggested_hash=suggested_hash,
            matched_known_hash=matched,
        )

    def _is_expected(self, blocked_uri: str, document_uri: str) -> bool:
        try:
            host = (urlsplit(blocked_uri).hostname or "").rstrip(".")
            document_host = (urlsplit(document_uri).hostname or "").rstrip(".")
        except ValueError:
            return False
        if not host:
            return False
        if host == document_host:
            return True
        return host_matches_allowlist(host, self.expected_hosts)

    def _forward(self, report: ViolationReport) -> None:
        try:
            self.sink(report)
        except Exception:
            logger.exception("CSP violation sink failed")


__all__ = [
    "IngestResult",
    "LegacyEnvelope",
    "LegacyReportBody",
    "ModernBatch",
    "ModernReportBody",
    "ReportOrigin",
    "ViolationIngester",
    "ViolationReport",
    "ViolationSignal",
    "WirePayload",
    "decode_legacy",
    "decode_modern",
    "log_violation",
    "parse_payload",
]
