"""Tests for violation report parsing in both browser formats."""

from __future__ import annotations

from csp_manager.models.violation import ViolationReport, parse_report_payload


_CSP_REPORT = {
    "csp-report": {
        "document-uri": "https://example.com/page",
        "referrer": "",
        "blocked-uri": "https://evil.example/x.js",
        "violated-directive": "script-src 'self'",
        "effective-directive": "script-src",
        "original-policy": "script-src 'self'; report-uri /csp/v1/report/",
        "disposition": "enforce",
        "line-number": 12,
        "column-number": 4,
        "status-code": 200,
    }
}

_REPORTING_API = [
    {
        "type": "csp-violation",
        "url": "https://example.com/page",
        "age": 10,
        "body": {
            "documentURL": "https://example.com/page",
            "blockedURL": "inline",
            "effectiveDirective": "script-src-elem",
            "originalPolicy": "script-src 'self'; report-to csp-endpoint",
            "disposition": "report",
            "lineNumber": 3,
            "statusCode": 200,
        },
    },
    {"type": "deprecation", "body": {"id": "x"}},
]


class TestCspReportFormat:
    def test_wrapped(self):
        reports = parse_report_payload(_CSP_REPORT, "application/csp-report")
        assert len(reports) == 1
        r = reports[0]
        assert r.document_uri == "https://example.com/page"
        assert r.blocked_uri == "https://evil.example/x.js"
        assert r.violated_directive == "script-src 'self'"
        assert r.line_number == "12"
        assert r.status_code == "200"

    def test_bare_object(self):
        reports = parse_report_payload(_CSP_REPORT["csp-report"], "application/json")
        assert reports[0].effective_directive == "script-src"

    def test_missing_fields_default_empty(self):
        r = ViolationReport.from_csp_report({"csp-report": {}})
        assert r.document_uri == ""
        assert r.source_file == ""
        assert r.line_number == ""

    def test_unknown_fields_ignored(self):
        r = ViolationReport.from_csp_report({"csp-report": {"script-sample": "alert(1)"}})
        assert r is not None

    def test_non_dict_wrapper(self):
        assert ViolationReport.from_csp_report({"csp-report": "nope"}) is None

    def test_null_and_nested_values_blank(self):
        r = ViolationReport.from_csp_report({"csp-report": {"referrer": None, "blocked-uri": {"a": 1}}})
        assert r.referrer == ""
        assert r.blocked_uri == ""


class TestReportingApiFormat:
    def test_csp_entries_only(self):
        reports = parse_report_payload(_REPORTING_API, "application/reports+json")
        assert len(reports) == 1
        r = reports[0]
        assert r.blocked_uri == "inline"
        assert r.effective_directive == "script-src-elem"
        assert r.violated_directive == "script-src-elem"
        assert r.disposition == "report"
        assert r.line_number == "3"

    def test_document_falls_back_to_entry_url(self):
        entry = {"type": "csp-violation", "url": "https://example.com/a", "body": {}}
        assert ViolationReport.from_reporting_api(entry).document_uri == "https://example.com/a"

    def test_list_without_content_type(self):
        assert len(parse_report_payload(_REPORTING_API, "application/json")) == 1

    def test_body_not_mapping(self):
        assert ViolationReport.from_reporting_api({"type": "csp-violation", "body": []}) is None


class TestSanitization:
    def test_control_chars_stripped(self):
        r = ViolationReport.from_csp_report({"csp-report": {"blocked-uri": "https://a\x1b[31m.example\n"}})
        assert r.blocked_uri == "https://a[31m.example"

    def test_long_values_capped(self):
        r = ViolationReport.from_csp_report({"csp-report": {"blocked-uri": "x" * 1000}})
        assert len(r.blocked_uri) == 255

    def test_original_policy_allows_longer(self):
        r = ViolationReport.from_csp_report({"csp-report": {"original-policy": "x" * 1000}})
        assert len(r.original_policy) == 1000
