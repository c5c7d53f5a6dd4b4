"""Pydantic models for CSP policies, directives and page links."""

from __future__ import annotations

import re
from enum import Enum, IntEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Directive names are lower-case tokens such as "script-src" or "upgrade-insecure-requests".
_DIRECTIVE_KEY_RE = re.compile(r"^[a-z][a-z0-9-]*$")

# Characters that would end a directive or split the header value.
_FORBIDDEN_VALUE_CHARS = frozenset(";,\r\n")


class DeliveryMethod(str, Enum):
    """How a composed policy reaches the browser."""

    HEADER = "Header"
    META_TAG = "MetaTag"


class CspLevel(IntEnum):
    """Minimum CSP level a policy targets; changes how reporting is emitted."""

    LEVEL_1 = 1
    LEVEL_2 = 2
    LEVEL_3 = 3


def _validate_key(value: str) -> str:
    key = value.strip().lower()
    if not _DIRECTIVE_KEY_RE.match(key):
        raise ValueError(f"Invalid directive name: {value[:50]!r}")
    return key


def _validate_value(value: str) -> str:
    if any(ch in _FORBIDDEN_VALUE_CHARS for ch in value):
        raise ValueError("Directive value must not contain ';', ',' or line breaks")
    return " ".join(value.split())


class Directive(BaseModel):
    """A single CSP directive as read from the store."""

    model_config = ConfigDict(frozen=True)

    id: UUID | None = None
    key: str
    value: str = ""
    enabled: bool = True
    use_nonce: bool = False


class Policy(BaseModel):
    """A CSP policy with its ordered directives.

    The composition engine only ever reads these; they are frozen so a
    snapshot can be shared between concurrent requests.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID | None = None
    title: str = ""
    enabled: bool = False
    is_live: bool = False
    is_base_policy: bool = False
    report_only: bool = True
    send_violation_reports: bool = False
    alternate_report_uri: str | None = None
    delivery_method: DeliveryMethod = DeliveryMethod.HEADER
    minimum_csp_level: CspLevel = CspLevel.LEVEL_1
    directives: tuple[Directive, ...] = ()


class PageLink(BaseModel):
    """Associates a URL path prefix with a page-specific policy."""

    model_config = ConfigDict(frozen=True)

    path: str
    policy_id: UUID


# --- Admin API request bodies ---


class DirectiveCreate(BaseModel):
    """Request body for creating a directive."""

    key: str
    value: str = ""
    enabled: bool = True
    use_nonce: bool = False

    @field_validator("key")
    @classmethod
    def _check_key(cls, v: str) -> str:
        return _validate_key(v)

    @field_validator("value")
    @classmethod
    def _check_value(cls, v: str) -> str:
        return _validate_value(v)


class DirectiveUpdate(BaseModel):
    """Request body for updating a directive."""

    key: str | None = None
    value: str | None = None
    enabled: bool | None = None
    use_nonce: bool | None = None

    @field_validator("key")
    @classmethod
    def _check_key(cls, v: str | None) -> str | None:
        return None if v is None else _validate_key(v)

    @field_validator("value")
    @classmethod
    def _check_value(cls, v: str | None) -> str | None:
        return None if v is None else _validate_value(v)


class PolicyCreate(BaseModel):
    """Request body for creating a policy."""

    title: str = Field(min_length=1, max_length=255)
    enabled: bool = False
    is_live: bool = False
    is_base_policy: bool = False
    report_only: bool = True
    send_violation_reports: bool = False
    alternate_report_uri: str | None = Field(None, max_length=255)
    delivery_method: DeliveryMethod = DeliveryMethod.HEADER
    minimum_csp_level: CspLevel = CspLevel.LEVEL_1


class PolicyUpdate(BaseModel):
    """Request body for updating a policy."""

    title: str | None = Field(None, min_length=1, max_length=255)
    enabled: bool | None = None
    is_live: bool | None = None
    is_base_policy: bool | None = None
    report_only: bool | None = None
    send_violation_reports: bool | None = None
    alternate_report_uri: str | None = Field(None, max_length=255)
    delivery_method: DeliveryMethod | None = None
    minimum_csp_level: CspLevel | None = None


class DirectiveAttach(BaseModel):
    """Request body for linking a directive to a policy."""

    directive_id: UUID
    position: int | None = Field(None, ge=0)


class PageLinkUpdate(BaseModel):
    """Request body for linking a path prefix to a policy."""

    path: str = Field(min_length=1, max_length=255, pattern=r"^/")
    policy_id: UUID
