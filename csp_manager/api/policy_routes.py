"""Admin CRUD endpoints for policies, directives and page links."""

from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from csp_manager.api.auth import require_api_key
from csp_manager.config.policy_cache import get_policy_cache
from csp_manager.models.policy import (
    DirectiveAttach,
    DirectiveCreate,
    DirectiveUpdate,
    PageLinkUpdate,
    PolicyCreate,
    PolicyUpdate,
)
from csp_manager.policy.composer import header_values, report_to_header
from csp_manager.store import postgres as pg_store
from csp_manager.store.postgres import StoreUnavailable

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["policies"], dependencies=[Depends(require_api_key)])


# --- Policy endpoints ---

@router.post("/policies/", status_code=201)
async def create_policy(body: PolicyCreate):
    """Create a new policy."""
    try:
        result = await pg_store.create_policy(**body.model_dump())
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if result is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    await get_policy_cache().refresh()
    return result


@router.get("/policies/")
async def list_policies():
    """List policies: base policy first, then enabled, then by title."""
    try:
        return await pg_store.list_policies()
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")


@router.get("/policies/{policy_id}")
async def get_policy(policy_id: UUID):
    """Get a policy with its directives."""
    try:
        result = await pg_store.get_policy(policy_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if result is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return result


@router.put("/policies/{policy_id}")
async def update_policy(policy_id: UUID, body: PolicyUpdate):
    """Update a policy."""
    fields = body.model_dump(exclude_none=True)
    try:
        result = await pg_store.update_policy(policy_id, **fields)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if result is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    await get_policy_cache().refresh()
    return result


@router.delete("/policies/{policy_id}", status_code=204)
async def delete_policy(policy_id: UUID):
    """Delete a policy."""
    try:
        deleted = await pg_store.delete_policy(policy_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not deleted:
        raise HTTPException(status_code=404, detail="Policy not found")
    await get_policy_cache().refresh()


@router.post("/policies/{policy_id}/base")
async def make_base_policy(policy_id: UUID):
    """Make this the site-wide base policy, clearing the flag on all others."""
    try:
        updated = await pg_store.set_base_policy(policy_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not updated:
        raise HTTPException(status_code=404, detail="Policy not found")
    await get_policy_cache().refresh()
    return {"id": policy_id, "is_base_policy": True}


@router.get("/policies/{policy_id}/preview")
async def preview_policy(
    policy_id: UUID,
    merge_from: UUID | None = Query(None, description="Policy to merge directives from"),
    pretty: bool = Query(True),
):
    """Render the policy as it would be sent: enabled directives and all directives."""
    try:
        record = await pg_store.get_policy(policy_id)
        merge_record = await pg_store.get_policy(merge_from) if merge_from else None
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if record is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    if merge_from and merge_record is None:
        raise HTTPException(status_code=404, detail="Merge-from policy not found")

    policy = pg_store.to_policy(record)
    merge_policy = pg_store.to_policy(merge_record) if merge_record else None

    def _render(enabled: bool | None) -> dict | None:
        values = header_values(policy, merge_from=merge_policy, enabled=enabled, pretty=pretty)
        if values is None:
            return None
        rendered = values.as_dict()
        rendered["report_to"] = report_to_header(values.reporting) if values.reporting else None
        return rendered

    return {"enabled_directives": _render(True), "all_directives": _render(None)}


# --- Directive endpoints ---

@router.post("/directives/", status_code=201)
async def create_directive(body: DirectiveCreate):
    """Create a new directive."""
    try:
        result = await pg_store.create_directive(**body.model_dump())
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if result is None:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return result


@router.get("/directives/")
async def list_directives():
    try:
        return await pg_store.list_directives()
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")


@router.get("/directives/{directive_id}")
async def get_directive(directive_id: UUID):
    try:
        result = await pg_store.get_directive(directive_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if result is None:
        raise HTTPException(status_code=404, detail="Directive not found")
    return result


@router.put("/directives/{directive_id}")
async def update_directive(directive_id: UUID, body: DirectiveUpdate):
    """Update a directive; every policy using it picks up the change."""
    fields = body.model_dump(exclude_none=True)
    try:
        result = await pg_store.update_directive(directive_id, **fields)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if result is None:
        raise HTTPException(status_code=404, detail="Directive not found")
    await get_policy_cache().refresh()
    return result


@router.delete("/directives/{directive_id}", status_code=204)
async def delete_directive(directive_id: UUID):
    try:
        deleted = await pg_store.delete_directive(directive_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not deleted:
        raise HTTPException(status_code=404, detail="Directive not found")
    await get_policy_cache().refresh()


@router.post("/policies/{policy_id}/directives", status_code=204)
async def attach_directive(policy_id: UUID, body: DirectiveAttach):
    """Link a directive to a policy (appended unless a position is given)."""
    try:
        attached = await pg_store.attach_directive(policy_id, body.directive_id, body.position)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    if not attached:
        raise HTTPException(status_code=404, detail="Policy or directive not found")
    await get_policy_cache().refresh()


@router.delete("/policies/{policy_id}/directives/{directive_id}", status_code=204)
async def detach_directive(policy_id: UUID, directive_id: UUID):
    try:
        detached = await pg_store.detach_directive(policy_id, directive_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not detached:
        raise HTTPException(status_code=404, detail="Directive not linked to policy")
    await get_policy_cache().refresh()


# --- Page link endpoints ---

@router.get("/page-links/")
async def list_page_links():
    try:
        return await pg_store.list_page_links()
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")


@router.put("/page-links/")
async def upsert_page_link(body: PageLinkUpdate):
    """Use a page policy for every path under ``body.path``."""
    try:
        policy = await pg_store.get_policy(body.policy_id)
        if policy is None:
            raise HTTPException(status_code=404, detail="Policy not found")
        if policy["is_base_policy"]:
            raise HTTPException(status_code=422, detail="Base policies cannot be linked to pages")
        result = await pg_store.upsert_page_link(body.path, body.policy_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    await get_policy_cache().refresh()
    return result


@router.delete("/page-links/", status_code=204)
async def delete_page_link(path: str = Query(..., min_length=1)):
    try:
        deleted = await pg_store.delete_page_link(path)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Database unavailable")
    if not deleted:
        raise HTTPException(status_code=404, detail="Page link not found")
    await get_policy_cache().refresh()
