"""Select the base and page policies that apply to a request."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from uuid import UUID

from csp_manager.models.policy import DeliveryMethod, PageLink, Policy


def sort_policies(policies: Iterable[Policy]) -> list[Policy]:
    """Default ordering: base policy first, then enabled, then by title."""
    return sorted(policies, key=lambda p: (not p.is_base_policy, not p.enabled, p.title))


def _applies(policy: Policy, is_live: bool, delivery_method: DeliveryMethod) -> bool:
    if not policy.enabled or policy.delivery_method != delivery_method:
        return False
    return policy.is_live or not is_live


def select_base_policy(
    policies: Iterable[Policy],
    *,
    is_live: bool = False,
    delivery_method: DeliveryMethod = DeliveryMethod.HEADER,
) -> Policy | None:
    """Return the enabled base policy for the stage and delivery method, if any."""
    for policy in sort_policies(policies):
        if policy.is_base_policy and _applies(policy, is_live, delivery_method):
            return policy
    return None


def select_page_policy(
    policies: Iterable[Policy],
    policy_id: UUID | None,
    *,
    is_live: bool = False,
    delivery_method: DeliveryMethod = DeliveryMethod.HEADER,
) -> Policy | None:
    """Return the linked page policy if it is enabled, not a base policy, and matches."""
    if policy_id is None:
        return None
    for policy in policies:
        if policy.id == policy_id:
            if policy.is_base_policy or not _applies(policy, is_live, delivery_method):
                return None
            return policy
    return None


def resolve_page_link(links: Sequence[PageLink], path: str) -> UUID | None:
    """Return the policy linked to the longest path prefix matching *path*.

    A link matches its exact path, or any path below it when it ends with
    ``/`` or the next character of *path* is ``/``.
    """
    best: PageLink | None = None
    for link in links:
        prefix = link.path
        if path == prefix or (
            path.startswith(prefix) and (prefix.endswith("/") or path[len(prefix)] == "/")
        ):
            if best is None or len(prefix) > len(best.path):
                best = link
    return best.policy_id if best else None


def select_policies(
    policies: Sequence[Policy],
    page_policy_id: UUID | None = None,
    *,
    is_live: bool = False,
    delivery_method: DeliveryMethod = DeliveryMethod.HEADER,
) -> tuple[Policy | None, Policy | None]:
    """Return ``(target, merge_from)`` for the composer.

    A page policy is the target and the base policy is merged into it;
    without a page policy the base policy stands alone.
    """
    base = select_base_policy(policies, is_live=is_live, delivery_method=delivery_method)
    page = select_page_policy(
        policies, page_policy_id, is_live=is_live, delivery_method=delivery_method
    )
    if page is not None:
        return page, base
    return base, None
