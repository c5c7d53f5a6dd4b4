"""Tests for policy composition into header values."""

from __future__ import annotations

import json

from csp_manager.models.policy import CspLevel, Directive
from csp_manager.policy.composer import (
    HEADER_ENFORCE,
    HEADER_REPORT_ONLY,
    header_values,
    policy_string,
    render_meta_tag,
    report_to_header,
)
from tests.helpers.policies import make_policy


class TestHeaderName:
    def test_report_only(self):
        values = header_values(make_policy([("default-src", "'self'")], report_only=True))
        assert values.header == HEADER_REPORT_ONLY

    def test_enforce(self):
        values = header_values(make_policy([("default-src", "'self'")], report_only=False))
        assert values.header == HEADER_ENFORCE

    def test_header_from_target_not_merge_from(self):
        page = make_policy([("script-src", "'self'")], report_only=False)
        base = make_policy([("default-src", "'self'")], report_only=True)
        assert header_values(page, merge_from=base).header == HEADER_ENFORCE


class TestPolicyString:
    def test_single_directive(self):
        values = header_values(make_policy([("default-src", "'self'")]))
        assert values.policy_string == "default-src 'self';"

    def test_directive_order(self):
        policy = make_policy([("default-src", "'self'"), ("img-src", "*"), ("upgrade-insecure-requests", "")])
        assert header_values(policy).policy_string == (
            "default-src 'self';img-src *;upgrade-insecure-requests;"
        )

    def test_pretty(self):
        policy = make_policy([("default-src", "'self'"), ("img-src", "*")])
        assert header_values(policy, pretty=True).policy_string == "default-src 'self';\nimg-src *;"

    def test_idempotent(self):
        policy = make_policy([("default-src", "'self'"), ("img-src", "*")], send_violation_reports=True)
        assert header_values(policy) == header_values(policy)

    def test_merge(self):
        page = make_policy([("script-src", "'self'")])
        base = make_policy([("script-src", "https://cdn.example.com"), ("img-src", "data:")])
        assert header_values(page, merge_from=base).policy_string == (
            "script-src 'self' https://cdn.example.com;img-src data:;"
        )

    def test_disabled_directives_excluded(self):
        policy = make_policy([
            ("default-src", "'self'"),
            Directive(key="img-src", value="*", enabled=False),
        ])
        assert header_values(policy).policy_string == "default-src 'self';"

    def test_all_directives_preview(self):
        policy = make_policy([
            ("default-src", "'self'"),
            Directive(key="img-src", value="*", enabled=False),
        ])
        assert header_values(policy, enabled=None).policy_string == "default-src 'self';img-src *;"

    def test_disabled_merge_from_directives_excluded(self):
        page = make_policy([("default-src", "'self'")])
        base = make_policy([Directive(key="img-src", value="*", enabled=False)])
        assert policy_string(page, merge_from=base) == "default-src 'self';"

    def test_nonce(self):
        policy = make_policy([Directive(key="script-src", value="'self'", use_nonce=True)])
        values = header_values(policy, nonce="abc123")
        assert values.policy_string == "script-src 'self' 'nonce-abc123';"


class TestEmptyPolicy:
    def test_no_directives_returns_none(self):
        assert header_values(make_policy([])) is None

    def test_all_disabled_returns_none(self):
        policy = make_policy([Directive(key="img-src", value="*", enabled=False)])
        assert header_values(policy) is None

    def test_empty_with_reporting_still_none(self):
        assert header_values(make_policy([], send_violation_reports=True)) is None

    def test_empty_target_with_merge_from(self):
        base = make_policy([("default-src", "'self'")])
        values = header_values(make_policy([]), merge_from=base)
        assert values.policy_string == "default-src 'self';"


class TestReportingInPolicyString:
    def test_level_1(self):
        policy = make_policy([("default-src", "'self'")], send_violation_reports=True)
        values = header_values(policy)
        assert values.policy_string == (
            "default-src 'self';report-uri /csp/v1/report/; report-to csp-endpoint"
        )
        assert values.reporting["group"] == "csp-endpoint"

    def test_level_3(self):
        policy = make_policy(
            [("default-src", "'self'")],
            send_violation_reports=True,
            minimum_csp_level=CspLevel.LEVEL_3,
        )
        assert header_values(policy).policy_string == "default-src 'self';report-to csp-endpoint"

    def test_pretty_reporting(self):
        policy = make_policy([("default-src", "'self'")], send_violation_reports=True)
        assert header_values(policy, pretty=True).policy_string == (
            "default-src 'self';\nreport-uri /csp/v1/report/;\nreport-to csp-endpoint"
        )

    def test_no_reporting_when_disabled(self):
        values = header_values(make_policy([("default-src", "'self'")]))
        assert "report-" not in values.policy_string
        assert values.reporting == {}

    def test_reporting_from_target_only(self):
        page = make_policy([("script-src", "'self'")])
        base = make_policy([("default-src", "'self'")], send_violation_reports=True)
        values = header_values(page, merge_from=base)
        assert "report-to" not in values.policy_string

    def test_include_reporting_false(self):
        policy = make_policy([("default-src", "'self'")], send_violation_reports=True)
        values = header_values(policy, include_reporting=False)
        assert values.policy_string == "default-src 'self';"
        assert values.reporting == {}


class TestDeliveryForms:
    def test_as_dict(self):
        values = header_values(make_policy([("default-src", "'self'")], report_only=False))
        assert values.as_dict() == {
            "header": HEADER_ENFORCE,
            "policy_string": "default-src 'self';",
            "reporting": {},
        }

    def test_meta_tag(self):
        values = header_values(make_policy([("default-src", "'self'")], report_only=False))
        assert render_meta_tag(values) == (
            '<meta http-equiv="Content-Security-Policy" content="default-src &#x27;self&#x27;;">'
        )

    def test_report_to_header_compact_json(self):
        policy = make_policy([("default-src", "'self'")], send_violation_reports=True)
        raw = report_to_header(header_values(policy, max_age=60).reporting)
        assert " " not in raw
        assert json.loads(raw) == {
            "group": "csp-endpoint",
            "max-age": 60,
            "endpoints": [{"url": "/csp/v1/report/"}],
        }
