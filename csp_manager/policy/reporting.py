"""Violation reporting fragment and ``Report-To`` descriptor.

Reporting changed between CSP Level 2 and 3:

- levels 1 and 2 send ``report-uri`` *and* ``report-to``, since user agents
  that understand ``report-to`` ignore ``report-uri``;
- level 3 sends ``report-to`` only.

See https://w3c.github.io/webappsec-csp/#directives-reporting and
https://wicg.github.io/reporting/#examples
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from csp_manager.config.loader import get_settings
from csp_manager.models.policy import Policy

REPORT_GROUP = "csp-endpoint"


@dataclass(frozen=True)
class Reporting:
    """Reporting output for one policy: the policy-string fragment and the descriptor."""

    fragment: str = ""
    descriptor: dict[str, Any] = field(default_factory=dict)


def reporting_url(policy: Policy, default_path: str | None = None) -> str:
    """Alternate report URI when set, else the internal report endpoint."""
    if policy.alternate_report_uri and policy.alternate_report_uri.strip():
        return policy.alternate_report_uri.strip()
    if default_path is None:
        default_path = get_settings().report_path
    return default_path


def build_reporting(
    policy: Policy,
    *,
    pretty: bool = False,
    max_age: int | None = None,
    default_path: str | None = None,
) -> Reporting:
    """Build the reporting fragment and descriptor for *policy*.

    Returns an empty :class:`Reporting` when the policy does not send
    violation reports.
    """
    if not policy.send_violation_reports:
        return Reporting()

    url = reporting_url(policy, default_path)
    if not url:
        return Reporting()

    # max-age is a non-negative number of seconds
    # https://wicg.github.io/reporting/#max-age-member
    if max_age is None:
        max_age = get_settings().report_max_age
    descriptor = {
        "group": REPORT_GROUP,
        "max-age": abs(int(max_age)),
        "endpoints": [{"url": url}],
    }

    parts = []
    if policy.minimum_csp_level < 3:
        parts.append(f"report-uri {url}")
    parts.append(f"report-to {REPORT_GROUP}")
    fragment = (";\n" if pretty else "; ").join(parts)
    return Reporting(fragment=fragment, descriptor=descriptor)
