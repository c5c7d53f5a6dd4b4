"""Redis sliding-window rate limiter for the violation report endpoint."""

from __future__ import annotations

import time

import structlog
from starlette.requests import Request
from starlette.responses import Response

from csp_manager.config.loader import get_settings
from csp_manager.middleware.pipeline import Middleware, RequestContext
from csp_manager.store.redis import get_redis

logger = structlog.get_logger()

# Redis key prefix
_KEY_PREFIX = "csp:reports"

# Atomic Lua script: cleanup + count + conditional add in one operation.
# Returns [current_count, was_added (0 or 1)]
_RATE_LIMIT_LUA = """
local key = KEYS[1]
local window_start = tonumber(ARGV[1])
local now = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, 0, window_start)

local count = redis.call('ZCARD', key)

if count < max_requests then
    redis.call('ZADD', key, now, member)
    redis.call('EXPIRE', key, ttl)
    return {count, 1}
end

return {count, 0}
"""


# Always routed, whatever CSP_REPORT_PATH says
DEFAULT_REPORT_PATH = "/csp/v1/report/"


def is_report_path(path: str) -> bool:
    for report_path in (DEFAULT_REPORT_PATH, get_settings().report_path):
        if path == report_path or path == report_path.rstrip("/"):
            return True
    return False


class ReportRateLimiter(Middleware):
    """Sliding-window limit on violation reports per client IP.

    A misbehaving page can emit a report for every blocked resource, so
    ingestion is capped. Only POSTs to the report path are counted. When
    Redis is unavailable reports are accepted unlimited; losing reports is
    worse than storing too many.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        if request.method != "POST" or not is_report_path(request.url.path):
            return None

        redis = get_redis()
        if redis is None:
            logger.warning("report_rate_limit_skipped", reason="no redis", action="fail_open")
            return None

        settings = get_settings()
        max_requests = settings.report_rate_limit_max
        window = settings.report_rate_limit_window_seconds

        client_ip = request.client.host if request.client else "unknown"
        key = f"{_KEY_PREFIX}:{client_ip}"

        now = time.time()
        window_start = now - window
        member = f"{now}:{context.request_id}"

        try:
            result = await redis.eval(
                _RATE_LIMIT_LUA,
                1,
                key,
                str(window_start),
                str(now),
                str(max_requests),
                member,
                str(int(window) + 1),
            )
            current_count = int(result[0])
            was_added = int(result[1])
        except Exception as exc:
            logger.warning("report_rate_limit_redis_error", error=str(exc), action="fail_open")
            return None

        if was_added:
            return None

        logger.warning(
            "report_rate_limit_exceeded",
            client_ip=client_ip,
            current=current_count,
            max=max_requests,
        )
        return Response(
            content='{"error": "Rate limit exceeded"}',
            status_code=429,
            media_type="application/json",
            headers={"Retry-After": str(int(window))},
        )
