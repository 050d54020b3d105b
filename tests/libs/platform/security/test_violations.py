"""Tests for CSP violation report ingestion."""

import json
import logging

import pytest

from libs.platform.security.exceptions import ReportMalformed, ReportPayloadError
from libs.platform.security.hash_registry import HashRegistry
from libs.platform.security.violations import (
    LegacyEnvelope,
    ModernBatch,
    ReportOrigin,
    ViolationIngester,
    ViolationReport,
    ViolationSignal,
    decode_legacy,
    decode_modern,
    parse_payload,
)

LEGACY = "application/csp-report"
MODERN = "application/reports+json"

BOOT_SCRIPT_DIGEST = "be+1YRFKqzoj/SI2njkTXFeJwsZFdkmfecDp8tX2B1U="


def _legacy(**overrides) -> bytes:
    report = {
        "document-uri": "https://app.example.com/dashboard",
        "violated-directive": "script-src 'self'",
        "effective-directive": "script-src",
        "blocked-uri": "https://evil.com/x.js",
        "source-file": "https://app.example.com/dashboard",
        "line-number": 12,
        "column-number": 4,
    }
    report.update(overrides)
    return json.dumps({"csp-report": report}).encode()


def _modern_item(**overrides) -> dict:
    body = {
        "documentURL": "https://app.example.com/dashboard",
        "effectiveDirective": "img-src",
        "blockedURL": "https://tracker.example.net/pixel.gif",
        "disposition": "report",
    }
    body.update(overrides)
    return {"type": "csp-violation", "age": 10, "url": body["documentURL"], "body": body}


class CollectingSink:
    def __init__(self) -> None:
        self.reports: list[ViolationReport] = []

    def __call__(self, report: ViolationReport) -> None:
        self.reports.append(report)


@pytest.fixture()
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture()
def ingester(registry: HashRegistry, sink: CollectingSink) -> ViolationIngester:
    return ViolationIngester(
        registry,
        expected_origins=["https://fonts.googleapis.com", "fonts.gstatic.com"],
        sink=sink,
    )


class TestParsePayload:
    def test_legacy_object(self) -> None:
        assert isinstance(parse_payload(_legacy(), LEGACY), LegacyEnvelope)

    def test_modern_array(self) -> None:
        payload = parse_payload(json.dumps([_modern_item()]).encode(), MODERN)

        assert isinstance(payload, ModernBatch)
        assert len(payload.items) == 1

    def test_single_modern_object_under_reports_json(self) -> None:
        payload = parse_payload(json.dumps(_modern_item()).encode(), f"{MODERN}; charset=utf-8")

        assert isinstance(payload, ModernBatch)

    @pytest.mark.parametrize("body", [b"{not json", b"\xff\xfe", b"42", b'"text"', b"null"])
    def test_unparseable_bodies(self, body: bytes) -> None:
        with pytest.raises(ReportPayloadError):
            parse_payload(body, LEGACY)

    def test_deeply_nested_json_is_unparseable(self) -> None:
        body = b"[" * 100_000 + b"]" * 100_000

        with pytest.raises(ReportPayloadError):
            parse_payload(body, MODERN)


class TestDecoders:
    def test_legacy_fields_normalized(self) -> None:
        report = decode_legacy(json.loads(_legacy()))

        assert isinstance(report, ViolationReport)
        assert report.document_uri == "https://app.example.com/dashboard"
        assert report.violated_directive == "script-src 'self'"
        assert report.effective_directive == "script-src"
        assert report.blocked_uri == "https://evil.com/x.js"
        assert report.line == 12
        assert report.column == 4
        assert report.disposition == "enforce"
        assert report.source_format == "legacy"

    def test_legacy_effective_directive_derived(self) -> None:
        payload = json.loads(_legacy(**{"effective-directive": None}))

        report = decode_legacy(payload)

        assert isinstance(report, ViolationReport)
        assert report.effective_directive == "script-src"

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"csp-report": "nope"},
            {"csp-report": {"violated-directive": "script-src"}},
            {"csp-report": {"document-uri": "https://a.example.com"}},
            {
                "csp-report": {
                    "document-uri": "https://a.example.com",
                    "violated-directive": "script-src",
                    "line-number": -1,
                }
            },
        ],
    )
    def test_legacy_malformed(self, payload: dict) -> None:
        result = decode_legacy(payload)

        assert isinstance(result, ReportMalformed)
        assert result.source_format == "legacy"

    def test_modern_fields_normalized(self) -> None:
        report = decode_modern(_modern_item(lineNumber=3), index=2)

        assert isinstance(report, ViolationReport)
        assert report.document_uri == "https://app.example.com/dashboard"
        assert report.effective_directive == "img-src"
        assert report.violated_directive == "img-src"
        assert report.blocked_uri == "https://tracker.example.net/pixel.gif"
        assert report.disposition == "report"
        assert report.line == 3
        assert report.source_format == "modern"

    def test_modern_non_csp_type_ignored(self) -> None:
        assert decode_modern({"type": "deprecation", "body": {"id": "x"}}) is None

    @pytest.mark.parametrize(
        "item",
        ["string", {"type": "csp-violation"}, {"type": "csp-violation", "body": {}}],
    )
    def test_modern_malformed(self, item) -> None:
        result = decode_modern(item, index=5)

        assert isinstance(result, ReportMalformed)
        assert result.index == 5


class TestIngest:
    def test_legacy_report_forwarded(
        self, ingester: ViolationIngester, sink: CollectingSink
    ) -> None:
        result = ingester.ingest(_legacy(), LEGACY)

        assert len(result.reports) == 1
        assert result.discarded == 0
        assert sink.reports == list(result.reports)

    def test_batch_with_one_bad_item(
        self, ingester: ViolationIngester, sink: CollectingSink
    ) -> None:
        body = json.dumps([_modern_item(), {"type": "csp-violation", "body": "x"}, _modern_item()])

        result = ingester.ingest(body.encode(), MODERN)

        assert len(result.reports) == 2
        assert result.discarded == 1
        assert len(sink.reports) == 2

    def test_non_csp_items_counted_as_ignored(self, ingester: ViolationIngester) -> None:
        body = json.dumps([_modern_item(), {"type": "deprecation", "body": {}}])

        result = ingester.ingest(body.encode(), MODERN)

        assert len(result.reports) == 1
        assert result.ignored == 1
        assert result.discarded == 0

    def test_batch_overflow_discarded(self, registry: HashRegistry, sink: CollectingSink) -> None:
        ingester = ViolationIngester(registry, sink=sink, max_batch=2)
        body = json.dumps([_modern_item() for _ in range(5)])

        result = ingester.ingest(body.encode(), MODERN)

        assert len(result.reports) == 2
        assert result.discarded == 3

    def test_empty_batch(self, ingester: ViolationIngester) -> None:
        result = ingester.ingest(b"[]", MODERN)

        assert result.reports == ()
        assert result.discarded == 0

    def test_unparseable_body_raises(self, ingester: ViolationIngester) -> None:
        with pytest.raises(ReportPayloadError):
            ingester.ingest(b"<html>", LEGACY)

    def test_deeply_nested_body_raises_payload_error(self, ingester: ViolationIngester) -> None:
        with pytest.raises(ReportPayloadError):
            ingester.ingest(b"[" * 5000 + b"]" * 5000, MODERN)

    def test_request_origin_attached_to_every_record(
        self, ingester: ViolationIngester, sink: CollectingSink
    ) -> None:
        origin = ReportOrigin(
            client_ip="203.0.113.7",
            user_agent="Mozilla/5.0",
            referer="https://app.example.com/dashboard",
        )
        body = json.dumps([_modern_item(), _modern_item()]).encode()

        result = ingester.ingest(body, MODERN, origin=origin)

        assert [report.origin for report in result.reports] == [origin, origin]
        assert sink.reports[0].origin.client_ip == "203.0.113.7"

    def test_origin_defaults_to_empty(self, ingester: ViolationIngester) -> None:
        report = ingester.ingest(_legacy(), LEGACY).reports[0]

        assert report.origin == ReportOrigin()

    def test_log_sink_includes_request_metadata(
        self, registry: HashRegistry, caplog: pytest.LogCaptureFixture
    ) -> None:
        ingester = ViolationIngester(registry)
        origin = ReportOrigin(client_ip="198.51.100.2", user_agent="TestAgent/1.0")

        with caplog.at_level(logging.WARNING, logger="libs.platform.security.violations"):
            ingester.ingest(_legacy(), LEGACY, origin=origin)

        record = next(r for r in caplog.records if r.getMessage() == "CSP violation reported")
        assert record.client_ip == "198.51.100.2"
        assert record.user_agent == "TestAgent/1.0"
        assert record.referer is None

    def test_sink_failure_does_not_propagate(self, registry: HashRegistry) -> None:
        def broken_sink(report: ViolationReport) -> None:
            raise RuntimeError("log shipper down")

        ingester = ViolationIngester(registry, sink=broken_sink)

        result = ingester.ingest(_legacy(), LEGACY)

        assert len(result.reports) == 1


class TestAnnotations:
    def _annotate(self, ingester: ViolationIngester, **fields) -> ViolationReport:
        result = ingester.ingest(_legacy(**fields), LEGACY)
        return result.reports[0]

    def test_inline_script_with_known_sample(self, ingester: ViolationIngester) -> None:
        report = self._annotate(
            ingester, **{"blocked-uri": "inline", "script-sample": "window.cspHashCheck = true;"}
        )

        assert report.annotations == (ViolationSignal.INLINE_SCRIPT,)
        assert report.suggested_hash == f"sha256-{BOOT_SCRIPT_DIGEST}"
        assert report.matched_known_hash == "boot-script"

    def test_inline_script_with_unknown_sample(self, ingester: ViolationIngester) -> None:
        report = self._annotate(
            ingester, **{"blocked-uri": "inline", "script-sample": "alert(document.cookie)"}
        )

        assert report.suggested_hash is not None
        assert report.suggested_hash.startswith("sha256-")
        assert report.matched_known_hash is None

    def test_inline_style(self, ingester: ViolationIngester) -> None:
        report = self._annotate(
            ingester,
            **{
                "blocked-uri": "inline",
                "violated-directive": "style-src 'self'",
                "effective-directive": "style-src-attr",
                "script-sample": "display: none;",
            },
        )

        assert report.annotations == (ViolationSignal.INLINE_STYLE,)
        assert report.matched_known_hash == "hidden"

    def test_inline_without_sample_has_no_hash(self, ingester: ViolationIngester) -> None:
        report = self._annotate(ingester, **{"blocked-uri": "inline"})

        assert report.annotations == (ViolationSignal.INLINE_SCRIPT,)
        assert report.suggested_hash is None

    @pytest.mark.parametrize(
        ("blocked", "signal"),
        [
            ("eval", ViolationSignal.EVAL),
            ("javascript:alert(1)", ViolationSignal.JAVASCRIPT_URI),
            ("data:text/javascript,alert(1)", ViolationSignal.DATA_URI_SCRIPT),
            ("https://evil.com/x.js", ViolationSignal.UNEXPECTED_EXTERNAL_ORIGIN),
        ],
    )
    def test_signals(
        self, ingester: ViolationIngester, blocked: str, signal: ViolationSignal
    ) -> None:
        report = self._annotate(ingester, **{"blocked-uri": blocked})

        assert signal in report.annotations

    @pytest.mark.parametrize(
        "blocked",
        [
            "https://fonts.googleapis.com/css2?family=Inter",
            "https://fonts.gstatic.com/s/inter.woff2",
            "https://app.example.com/static/app.js",
        ],
    )
    def test_expected_origins_not_flagged(self, ingester: ViolationIngester, blocked: str) -> None:
        report = self._annotate(ingester, **{"blocked-uri": blocked})

        assert ViolationSignal.UNEXPECTED_EXTERNAL_ORIGIN not in report.annotations

    def test_annotations_do_not_change_ingest_outcome(self, ingester: ViolationIngester) -> None:
        benign = ingester.ingest(_legacy(**{"blocked-uri": "self"}), LEGACY)
        hostile = ingester.ingest(_legacy(**{"blocked-uri": "eval"}), LEGACY)

        assert (len(benign.reports), benign.discarded) == (len(hostile.reports), hostile.discarded)
