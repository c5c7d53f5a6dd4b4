"""Policy snapshot cache for request-time composition."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import structlog

from csp_manager.models.policy import DeliveryMethod, PageLink, Policy
from csp_manager.policy.composer import HeaderValues, header_values
from csp_manager.policy.selection import resolve_page_link, select_policies
from csp_manager.store import postgres as pg_store

logger = structlog.get_logger()


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable view of all policies and page links at one point in time."""

    policies: tuple[Policy, ...] = ()
    links: tuple[PageLink, ...] = ()
    loaded_at: float = field(default_factory=time.monotonic)


class PolicyCacheService:
    """Loads policies from PostgreSQL and serves them from memory.

    The snapshot is replaced as a whole, so a request composing a header
    always sees one consistent set of policies and directives.
    """

    def __init__(self, cache_ttl: int = 60) -> None:
        self._snapshot = PolicySnapshot(loaded_at=0.0)
        self._cache_ttl = cache_ttl
        self._poll_task: asyncio.Task | None = None

    @property
    def snapshot(self) -> PolicySnapshot:
        return self._snapshot

    async def load_all(self) -> None:
        """Read all policies and page links and swap in a new snapshot."""
        policies, links = await pg_store.load_snapshot()
        self._snapshot = PolicySnapshot(policies=tuple(policies), links=tuple(links))
        logger.info("policy_cache_loaded", policies=len(policies), page_links=len(links))

    def replace(self, policies: list[Policy], links: list[PageLink] | None = None) -> None:
        """Install a snapshot directly (policy files, tests)."""
        self._snapshot = PolicySnapshot(policies=tuple(policies), links=tuple(links or ()))

    def select(
        self,
        path: str,
        *,
        is_live: bool,
        delivery_method: DeliveryMethod,
    ) -> tuple[Policy | None, Policy | None]:
        """Return ``(target, merge_from)`` for a request path."""
        snapshot = self._snapshot
        page_policy_id = resolve_page_link(snapshot.links, path)
        return select_policies(
            snapshot.policies,
            page_policy_id,
            is_live=is_live,
            delivery_method=delivery_method,
        )

    def compose(
        self,
        path: str,
        *,
        is_live: bool,
        delivery_method: DeliveryMethod,
        nonce: str | None = None,
    ) -> HeaderValues | None:
        """Compose the header for *path*, or None when no policy applies."""
        target, merge_from = self.select(path, is_live=is_live, delivery_method=delivery_method)
        if target is None:
            return None
        return header_values(
            target,
            merge_from=merge_from,
            nonce=nonce,
            include_reporting=delivery_method == DeliveryMethod.HEADER,
        )

    def is_stale(self) -> bool:
        """Check if the snapshot is older than TTL."""
        return (time.monotonic() - self._snapshot.loaded_at) > self._cache_ttl

    async def refresh(self) -> None:
        """Reload after an admin write; failures keep the previous snapshot."""
        try:
            await self.load_all()
        except Exception as exc:
            logger.error("policy_cache_refresh_failed", error=str(exc))

    async def start_polling(self) -> None:
        """Start background task to refresh the snapshot."""
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cache_ttl)
            try:
                await self.load_all()
            except Exception as exc:
                logger.error("policy_cache_poll_error", error=str(exc))

    async def stop_polling(self) -> None:
        """Stop the background polling task."""
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None


# Module-level singleton
_service: PolicyCacheService | None = None


def get_policy_cache() -> PolicyCacheService:
    """Get or create the singleton policy cache."""
    global _service
    if _service is None:
        from csp_manager.config.loader import get_settings

        _service = PolicyCacheService(cache_ttl=get_settings().policy_cache_ttl_seconds)
    return _service


def reset_policy_cache() -> None:
    """Drop the singleton (for testing)."""
    global _service
    _service = None
