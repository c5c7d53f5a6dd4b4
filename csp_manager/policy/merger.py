"""Merge a page policy's directives with those of a second ("merge-from") policy.

Per CSP, adding a policy can only further restrict what a page may do, so
merging never replaces a value: the merge-from directive's value is
appended to the matching target directive, and merge-from directives the
target lacks are added as new lines.
"""

from __future__ import annotations

from collections.abc import Sequence

from csp_manager.models.policy import Directive
from csp_manager.policy.directives import render_value


def merge_directives(
    directives: Sequence[Directive],
    merge_from: Sequence[Directive] | None = None,
    nonce: str | None = None,
) -> list[tuple[str, str]]:
    """Return ordered ``(key, effective value)`` pairs.

    Both inputs are expected to be filtered already. Target order comes
    first, followed by merge-from directives whose key the target lacks,
    each rendered with its own value.
    """
    merge_index: dict[str, Directive] = {}
    for m in merge_from or ():
        merge_index.setdefault(m.key, m)

    lines: list[tuple[str, str]] = []
    keys: set[str] = set()
    for directive in directives:
        value = render_value(directive, nonce)
        merge_directive = merge_index.get(directive.key)
        if merge_directive is not None and merge_directive.value.strip():
            merge_value = render_value(merge_directive, nonce)
            value = f"{value} {merge_value}" if value else merge_value
        lines.append((directive.key, value))
        keys.add(directive.key)

    if merge_from:
        for m in merge_from:
            if m.key in keys:
                continue
            keys.add(m.key)
            lines.append((m.key, render_value(m, nonce)))
    return lines
