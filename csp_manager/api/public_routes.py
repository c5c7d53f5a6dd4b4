"""Unauthenticated endpoints: violation report intake and policy lookup."""

from __future__ import annotations

import asyncio
import json

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from csp_manager.config.loader import get_settings
from csp_manager.config.policy_cache import get_policy_cache
from csp_manager.models.policy import DeliveryMethod
from csp_manager.models.violation import parse_report_payload
from csp_manager.store.reports import insert_violation_report

logger = structlog.get_logger()

router = APIRouter(prefix="/csp/v1", tags=["public"])

# Strong references so pending inserts aren't garbage collected mid-flight
_pending_inserts: set[asyncio.Task] = set()


def _schedule_insert(coro) -> None:
    task = asyncio.create_task(coro)
    _pending_inserts.add(task)
    task.add_done_callback(_pending_inserts.discard)


async def receive_report(request: Request) -> Response:
    """Accept ``report-uri`` and ``report-to`` violation reports.

    Returns 204 on success regardless of whether storage succeeds; the
    browser has nothing useful to do with a failure.
    """
    settings = get_settings()

    content_length = request.headers.get("content-length")
    if content_length:
        try:
            if int(content_length) > settings.max_report_bytes:
                return Response(content="Report too large", status_code=413)
        except (ValueError, OverflowError):
            return Response(content="Invalid Content-Length", status_code=400)
    body = await request.body()
    if len(body) > settings.max_report_bytes:
        return Response(content="Report too large", status_code=413)

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.info("violation_report_malformed", size=len(body))
        return Response(content="Malformed report", status_code=400)
    if not isinstance(payload, (dict, list)):
        return Response(content="Malformed report", status_code=400)

    content_type = request.headers.get("content-type", "")
    reports = parse_report_payload(payload, content_type)
    user_agent = request.headers.get("user-agent", "")
    for report in reports:
        logger.info(
            "violation_report_received",
            document_uri=report.document_uri,
            violated_directive=report.violated_directive,
            blocked_uri=report.blocked_uri,
        )
        _schedule_insert(insert_violation_report(report, user_agent=user_agent))
    return Response(status_code=204)


router.add_api_route("/report/", receive_report, methods=["POST"], status_code=204)
router.add_api_route(
    "/report", receive_report, methods=["POST"], status_code=204, include_in_schema=False
)


@router.get("/policy")
async def lookup_policy(
    path: str = Query("/", description="Request path to resolve"),
    delivery: DeliveryMethod = Query(DeliveryMethod.HEADER),
):
    """Composed policy for *path*, for transports that set headers themselves."""
    settings = get_settings()
    values = get_policy_cache().compose(
        path, is_live=settings.serve_live, delivery_method=delivery
    )
    if values is None:
        return Response(status_code=204)
    return values.as_dict()
