"""Tests for merging a page policy with a merge-from policy."""

from __future__ import annotations

from csp_manager.models.policy import Directive
from csp_manager.policy.merger import merge_directives


def _d(key, value="", **kw):
    return Directive(key=key, value=value, **kw)


class TestMergeDirectives:
    def test_no_merge_from(self):
        lines = merge_directives([_d("default-src", "'self'"), _d("img-src", "*")])
        assert lines == [("default-src", "'self'"), ("img-src", "*")]

    def test_matching_key_concatenates_target_first(self):
        lines = merge_directives(
            [_d("script-src", "'self'")],
            [_d("script-src", "https://cdn.example.com")],
        )
        assert lines == [("script-src", "'self' https://cdn.example.com")]

    def test_unmatched_merge_from_appended_with_own_value(self):
        """Each unmatched merge-from line carries its own value, never the last matched one."""
        lines = merge_directives(
            [_d("default-src", "'self'")],
            [_d("default-src", "'none'"), _d("img-src", "data:"), _d("font-src", "https://fonts.example.com")],
        )
        assert lines == [
            ("default-src", "'self' 'none'"),
            ("img-src", "data:"),
            ("font-src", "https://fonts.example.com"),
        ]

    def test_empty_merge_value_appends_nothing(self):
        lines = merge_directives(
            [_d("upgrade-insecure-requests")],
            [_d("upgrade-insecure-requests")],
        )
        assert lines == [("upgrade-insecure-requests", "")]

    def test_blank_merge_value_appends_nothing(self):
        lines = merge_directives([_d("script-src", "'self'")], [_d("script-src", "   ")])
        assert lines == [("script-src", "'self'")]

    def test_empty_target_value_takes_merge_value(self):
        lines = merge_directives([_d("script-src")], [_d("script-src", "'self'")])
        assert lines == [("script-src", "'self'")]

    def test_target_order_preserved(self):
        lines = merge_directives(
            [_d("img-src", "*"), _d("default-src", "'none'")],
            [_d("default-src", "'self'"), _d("img-src", "data:")],
        )
        assert [k for k, _ in lines] == ["img-src", "default-src"]
        assert lines[0] == ("img-src", "* data:")
        assert lines[1] == ("default-src", "'none' 'self'")

    def test_duplicate_merge_keys_first_wins(self):
        lines = merge_directives(
            [_d("script-src", "'self'")],
            [_d("script-src", "a.example"), _d("script-src", "b.example")],
        )
        assert lines == [("script-src", "'self' a.example")]

    def test_nonce_rendered_on_target(self):
        lines = merge_directives(
            [_d("script-src", "'self'", use_nonce=True)],
            [_d("script-src", "https://cdn.example.com")],
            nonce="n0nce",
        )
        assert lines == [("script-src", "'self' 'nonce-n0nce' https://cdn.example.com")]

    def test_inputs_not_mutated(self):
        target = [_d("script-src", "'self'")]
        merge = [_d("script-src", "https:")]
        merge_directives(target, merge)
        assert target[0].value == "'self'"
        assert merge[0].value == "https:"
