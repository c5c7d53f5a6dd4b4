"""CSP delivery middleware: response header and meta tag."""

from __future__ import annotations

import re

import structlog
from starlette.requests import Request
from starlette.responses import Response

from csp_manager.config.loader import get_settings
from csp_manager.config.policy_cache import get_policy_cache
from csp_manager.middleware.pipeline import Middleware, RequestContext
from csp_manager.models.policy import DeliveryMethod
from csp_manager.policy.composer import HeaderValues, render_meta_tag, report_to_header

logger = structlog.get_logger()

_HEAD_OPEN_RE = re.compile(rb"<head(\s[^>]*)?>", re.IGNORECASE)


def is_excluded(path: str, excluded: list[str]) -> bool:
    """True if *path* falls under one of the excluded prefixes."""
    for prefix in excluded:
        if path.startswith(prefix) or path == prefix.rstrip("/"):
            return True
    return False


def inject_meta_tag(body: bytes, tag: str) -> bytes | None:
    """Insert *tag* right after the opening ``<head>``; None when there is no head."""
    match = _HEAD_OPEN_RE.search(body)
    if match is None:
        return None
    pos = match.end()
    return body[:pos] + b"\n" + tag.encode("utf-8") + body[pos:]


class CspHeaders(Middleware):
    """Compose the applicable policy for each page request and deliver it.

    - Header delivery sets ``Content-Security-Policy`` (or ``-Report-Only``)
      and, when reporting is configured, ``Report-To``
    - Meta-tag delivery exposes ``request.state.csp_meta_tag`` for templates
      and injects the tag into buffered HTML responses
    - No header is sent when no policy applies or the policy is empty
    """

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        settings = get_settings()
        path = request.url.path
        request.state.csp_meta_tag = ""
        if is_excluded(path, settings.excluded_paths):
            return None

        cache = get_policy_cache()
        nonce = context.nonce or None
        header = cache.compose(
            path, is_live=settings.serve_live, delivery_method=DeliveryMethod.HEADER, nonce=nonce
        )
        meta = cache.compose(
            path, is_live=settings.serve_live, delivery_method=DeliveryMethod.META_TAG, nonce=nonce
        )
        if header is not None:
            context.extra["csp_header"] = header
        if meta is not None:
            context.extra["csp_meta"] = meta
            request.state.csp_meta_tag = render_meta_tag(meta)
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        try:
            return self._apply(response, context)
        except Exception as exc:
            logger.error("csp_headers_error", error=str(exc))
            return response

    def _apply(self, response: Response, context: RequestContext) -> Response:
        header: HeaderValues | None = context.extra.get("csp_header")
        if header is not None:
            response.headers[header.header] = header.policy_string
            if header.reporting and get_settings().emit_report_to_header:
                response.headers["Report-To"] = report_to_header(header.reporting)

        meta: HeaderValues | None = context.extra.get("csp_meta")
        if meta is not None:
            self._inject_meta(response, meta)
        return response

    def _inject_meta(self, response: Response, meta: HeaderValues) -> None:
        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("text/html"):
            return
        # Streaming responses have no buffered body to rewrite
        body = getattr(response, "body", None)
        if not body:
            logger.debug("csp_meta_skip_no_body")
            return
        tag = render_meta_tag(meta)
        if tag.encode("utf-8") in body:
            return
        new_body = inject_meta_tag(body, tag)
        if new_body is None:
            logger.debug("csp_meta_skip_no_head")
            return
        response.body = new_body
        response.headers["content-length"] = str(len(new_body))
