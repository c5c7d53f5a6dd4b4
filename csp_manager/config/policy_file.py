"""YAML policy files for offline rendering and import.

A policy file looks like::

    title: Site default
    report_only: false
    minimum_csp_level: 2
    directives:
      - key: default-src
        value: "'self'"
      - key: script-src
        value: "'self'"
        use_nonce: true

``directives`` may also be a single CSP string, e.g.
``"default-src 'self'; img-src *"``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml

from csp_manager.models.policy import Directive, DirectiveCreate, Policy
from csp_manager.policy.directives import parse_csp

logger = structlog.get_logger()

_POLICY_KEYS = frozenset({
    "title", "enabled", "is_live", "is_base_policy", "report_only",
    "send_violation_reports", "alternate_report_uri", "delivery_method",
    "minimum_csp_level",
})


class PolicyFileError(ValueError):
    """The file is not a usable policy definition."""


def _parse_directives(raw: Any) -> tuple[Directive, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        entries = [{"key": d.key, "value": d.value} for d in parse_csp(raw)]
    elif isinstance(raw, list):
        entries = raw
    else:
        raise PolicyFileError("'directives' must be a list or a CSP string")

    directives = []
    seen: set[str] = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise PolicyFileError(f"Directive entries must be mappings, got {type(entry).__name__}")
        checked = DirectiveCreate(**entry)
        if checked.key in seen:
            raise PolicyFileError(f"Duplicate directive '{checked.key}'")
        seen.add(checked.key)
        directives.append(Directive(**checked.model_dump()))
    return tuple(directives)


def policy_from_dict(data: dict[str, Any]) -> Policy:
    """Build a :class:`Policy` from a decoded policy file."""
    unknown = set(data) - _POLICY_KEYS - {"directives"}
    if unknown:
        raise PolicyFileError(f"Unknown policy keys: {', '.join(sorted(unknown))}")
    fields = {k: v for k, v in data.items() if k in _POLICY_KEYS}
    return Policy(directives=_parse_directives(data.get("directives")), **fields)


def load_policy_file(path: str | Path) -> Policy:
    """Read a YAML policy file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise PolicyFileError(f"{path}: expected a mapping at the top level")
    policy = policy_from_dict(data)
    logger.debug("policy_file_loaded", path=str(path), directives=len(policy.directives))
    return policy


def dump_policy(policy: Policy) -> str:
    """Serialize *policy* to the policy file format."""
    data: dict[str, Any] = {
        "title": policy.title,
        "enabled": policy.enabled,
        "report_only": policy.report_only,
        "send_violation_reports": policy.send_violation_reports,
        "delivery_method": policy.delivery_method.value,
        "minimum_csp_level": int(policy.minimum_csp_level),
    }
    if policy.alternate_report_uri:
        data["alternate_report_uri"] = policy.alternate_report_uri
    directives = []
    for d in policy.directives:
        entry: dict[str, Any] = {"key": d.key, "value": d.value}
        if not d.enabled:
            entry["enabled"] = False
        if d.use_nonce:
            entry["use_nonce"] = True
        directives.append(entry)
    data["directives"] = directives
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
