"""API key authentication for admin endpoints."""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from csp_manager.config.loader import get_settings

_api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


async def require_api_key(api_key: str | None = Security(_api_key_header)) -> str:
    """Validate the admin API key from the Authorization header.

    Accepts ``Bearer <key>`` or the bare key. Admin routes are disabled
    (500) until ``CSP_API_KEY`` is configured.
    """
    settings = get_settings()

    if not settings.api_key:
        raise HTTPException(status_code=500, detail="API key not configured on server")

    if not api_key:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    token = api_key
    if token.lower().startswith("bearer "):
        token = token[7:]

    if not hmac.compare_digest(token.encode(), settings.api_key.encode()):
        raise HTTPException(status_code=403, detail="Invalid API key")

    return token
