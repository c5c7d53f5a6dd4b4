"""Compose a policy (optionally merged with a base policy) into header values."""

from __future__ import annotations

import html
import json
from dataclasses import dataclass, field
from typing import Any

from csp_manager.models.policy import Policy
from csp_manager.policy.directives import filter_directives, render_line
from csp_manager.policy.merger import merge_directives
from csp_manager.policy.reporting import build_reporting

HEADER_ENFORCE = "Content-Security-Policy"
HEADER_REPORT_ONLY = "Content-Security-Policy-Report-Only"


@dataclass(frozen=True)
class HeaderValues:
    """Composed output: header name, header value and reporting descriptor."""

    header: str
    policy_string: str
    reporting: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "policy_string": self.policy_string,
            "reporting": self.reporting,
        }


def header_name(policy: Policy) -> str:
    return HEADER_REPORT_ONLY if policy.report_only else HEADER_ENFORCE


def policy_string(
    policy: Policy,
    *,
    merge_from: Policy | None = None,
    enabled: bool | None = True,
    pretty: bool = False,
    nonce: str | None = None,
) -> str:
    """Render the directive lines of *policy*, merged with *merge_from* if given."""
    directives = filter_directives(policy.directives, enabled)
    merge_directives_from = None
    if merge_from is not None:
        merge_directives_from = filter_directives(merge_from.directives, enabled)
    lines = merge_directives(directives, merge_directives_from, nonce=nonce)
    return "".join(render_line(key, value, pretty) for key, value in lines)


def header_values(
    policy: Policy,
    *,
    merge_from: Policy | None = None,
    enabled: bool | None = True,
    pretty: bool = False,
    nonce: str | None = None,
    include_reporting: bool = True,
    max_age: int | None = None,
) -> HeaderValues | None:
    """Compose the header for *policy*.

    Returns None when there are no directives to send; an empty CSP header
    must never be emitted. Header name, reporting level and report URI come
    from *policy* (the target), never from *merge_from*.
    """
    body = policy_string(
        policy, merge_from=merge_from, enabled=enabled, pretty=pretty, nonce=nonce
    ).strip()
    if not body:
        return None

    reporting: dict[str, Any] = {}
    if include_reporting:
        built = build_reporting(policy, pretty=pretty, max_age=max_age)
        if built.fragment:
            body += ("\n" if pretty else "") + built.fragment
            reporting = built.descriptor

    return HeaderValues(header=header_name(policy), policy_string=body.strip(), reporting=reporting)


def render_meta_tag(values: HeaderValues) -> str:
    """Render the ``<meta http-equiv>`` delivery form. Reporting is not supported via meta tag."""
    return '<meta http-equiv="{}" content="{}">'.format(
        html.escape(values.header, quote=True),
        html.escape(values.policy_string, quote=True),
    )


def report_to_header(reporting: dict[str, Any]) -> str:
    """Serialize a reporting descriptor as a compact ``Report-To`` header value."""
    return json.dumps(reporting, separators=(",", ":"))
