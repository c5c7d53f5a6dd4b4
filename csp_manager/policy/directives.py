"""Pure-function helpers for rendering and parsing CSP directives."""

from __future__ import annotations

from collections.abc import Iterable

from csp_manager.models.policy import Directive


def filter_directives(directives: Iterable[Directive], enabled: bool | None = True) -> list[Directive]:
    """Return directives matching the enabled filter, preserving order.

    ``enabled=None`` keeps every directive (the administrative "all
    directives" view).
    """
    if enabled is None:
        return list(directives)
    return [d for d in directives if d.enabled is bool(enabled)]


def render_value(directive: Directive, nonce: str | None = None) -> str:
    """Render a directive's source list, appending the request nonce if asked to."""
    value = " ".join(directive.value.split())
    if directive.use_nonce and nonce:
        token = f"'nonce-{nonce}'"
        value = f"{value} {token}" if value else token
    return value


def render_line(key: str, value: str = "", pretty: bool = False) -> str:
    """Form a single policy line: ``key value;`` or ``key;`` for valueless directives."""
    line = f"{key} {value};" if value else f"{key};"
    return line + ("\n" if pretty else "")


def parse_csp(csp_string: str) -> list[Directive]:
    """Parse a CSP string into an ordered list of directives.

    Example:
        >>> [(d.key, d.value) for d in parse_csp("default-src 'self'; script-src 'self' https:")]
        [('default-src', "'self'"), ('script-src', "'self' https:")]

    Repeated directive names keep the first occurrence, as user agents do.
    """
    result: list[Directive] = []
    seen: set[str] = set()
    if not csp_string or not csp_string.strip():
        return result
    for part in csp_string.split(";"):
        tokens = part.split()
        if not tokens:
            continue
        key = tokens[0].lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(Directive(key=key, value=" ".join(tokens[1:])))
    return result
