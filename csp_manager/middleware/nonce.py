"""Per-request nonce and request-ID injection."""

from __future__ import annotations

import secrets

import structlog
from starlette.requests import Request
from starlette.responses import Response

from csp_manager.config.loader import get_settings
from csp_manager.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()

# Below 128 bits a nonce stops being a meaningful secret.
_MIN_NONCE_BYTES = 16


def generate_nonce(num_bytes: int | None = None) -> str:
    """Return a URL-safe base64 nonce of at least 16 random bytes."""
    if num_bytes is None:
        num_bytes = get_settings().nonce_bytes
    return secrets.token_urlsafe(max(num_bytes, _MIN_NONCE_BYTES))


class NonceInjector(Middleware):
    """Generate the request's CSP nonce and bind request context for logging.

    - Stores the nonce on the pipeline context (for header composition) and
      on ``request.state.csp_nonce`` (for templates rendering inline
      ``<script nonce=...>`` elements)
    - Binds ``request_id`` to structlog contextvars
    """

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        context.nonce = generate_nonce()
        request.state.csp_nonce = context.nonce

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=context.request_id,
            path=request.url.path,
        )
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        response.headers.setdefault("x-request-id", context.request_id)
        return response
