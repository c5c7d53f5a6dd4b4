"""Structured CSP violation report input.

Browsers deliver violations in two shapes:

- CSP Level 2 ``report-uri``: ``{"csp-report": {"document-uri": ..., ...}}``
  sent as ``application/csp-report``.
- Reporting API ``report-to``: a JSON list of ``{"type": "csp-violation",
  "body": {"documentURL": ..., ...}}`` sent as ``application/reports+json``.

Both are normalised into :class:`ViolationReport`; every field is optional
and defaults to an empty string.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from csp_manager.utils.sanitize import strip_control_chars

# Cap stored field length; original-policy can legitimately be long.
_MAX_FIELD_LENGTH = 255
_MAX_POLICY_LENGTH = 8192

# Reporting API (camelCase) body keys -> CSP Level 2 report keys
_REPORTING_API_KEYS = {
    "documentURL": "document-uri",
    "referrer": "referrer",
    "blockedURL": "blocked-uri",
    "effectiveDirective": "effective-directive",
    "originalPolicy": "original-policy",
    "sourceFile": "source-file",
    "lineNumber": "line-number",
    "columnNumber": "column-number",
    "disposition": "disposition",
    "statusCode": "status-code",
}


class ViolationReport(BaseModel):
    """A single CSP violation as accepted at the report endpoint."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    document_uri: str = Field("", alias="document-uri")
    referrer: str = ""
    blocked_uri: str = Field("", alias="blocked-uri")
    violated_directive: str = Field("", alias="violated-directive")
    effective_directive: str = Field("", alias="effective-directive")
    original_policy: str = Field("", alias="original-policy")
    source_file: str = Field("", alias="source-file")
    line_number: str = Field("", alias="line-number")
    column_number: str = Field("", alias="column-number")
    disposition: str = ""
    status_code: str = Field("", alias="status-code")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any, info: ValidationInfo) -> str:
        if v is None or isinstance(v, (dict, list)):
            return ""
        if isinstance(v, bool):
            v = str(v).lower()
        text = strip_control_chars(str(v))
        limit = _MAX_POLICY_LENGTH if info.field_name == "original_policy" else _MAX_FIELD_LENGTH
        return text[:limit]

    @classmethod
    def from_csp_report(cls, payload: Any) -> ViolationReport | None:
        """Build from a ``report-uri`` body, with or without the ``csp-report`` wrapper."""
        if not isinstance(payload, dict):
            return None
        data = payload.get("csp-report", payload)
        if not isinstance(data, dict):
            return None
        return cls.model_validate(data)

    @classmethod
    def from_reporting_api(cls, entry: Any) -> ViolationReport | None:
        """Build from one Reporting API entry; non-CSP entries are ignored."""
        if not isinstance(entry, dict) or entry.get("type") != "csp-violation":
            return None
        body = entry.get("body")
        if not isinstance(body, dict):
            return None
        data = {legacy: body[key] for key, legacy in _REPORTING_API_KEYS.items() if key in body}
        # report-to bodies only carry the effective directive
        data.setdefault("violated-directive", data.get("effective-directive", ""))
        if not data.get("document-uri") and isinstance(entry.get("url"), str):
            data["document-uri"] = entry["url"]
        return cls.model_validate(data)


def parse_report_payload(payload: Any, content_type: str) -> list[ViolationReport]:
    """Normalise a decoded request body into zero or more reports."""
    if "reports+json" in content_type or isinstance(payload, list):
        entries = payload if isinstance(payload, list) else [payload]
        reports = [ViolationReport.from_reporting_api(e) for e in entries]
    else:
        reports = [ViolationReport.from_csp_report(payload)]
    return [r for r in reports if r is not None]
