"""FastAPI application: admin API, report intake and CSP delivery middleware."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from csp_manager.config.loader import load_settings, register_reload_handler
from csp_manager.config.policy_cache import get_policy_cache
from csp_manager.health import router as health_router
from csp_manager.logging_config import setup_logging
from csp_manager.middleware.csp_headers import CspHeaders
from csp_manager.middleware.nonce import NonceInjector
from csp_manager.middleware.pipeline import MiddlewarePipeline, RequestContext
from csp_manager.middleware.rate_limiter import ReportRateLimiter
from csp_manager.store import postgres as pg_store
from csp_manager.store import redis as redis_store

logger = structlog.get_logger()

_DEFAULT_REPORT_PATHS = frozenset({"/csp/v1/report/", "/csp/v1/report"})


def build_pipeline() -> MiddlewarePipeline:
    """Build the ordered middleware pipeline.

    NonceInjector runs first so the nonce exists before CspHeaders composes
    the policy; the rate limiter short-circuits report floods before any
    body is read.
    """
    pipeline = MiddlewarePipeline()
    pipeline.add(NonceInjector())      # 0: nonce, request ID
    pipeline.add(ReportRateLimiter())  # 1
    pipeline.add(CspHeaders())         # 2: compose + deliver
    return pipeline


_pipeline: MiddlewarePipeline = build_pipeline()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    settings = load_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)
    register_reload_handler()

    # Redis only backs report rate limiting (non-fatal if unavailable)
    await redis_store.init_redis(settings.redis_url, pool_size=settings.redis_pool_size)

    await pg_store.init_postgres(
        settings.postgres_url,
        min_size=settings.postgres_pool_min,
        max_size=settings.postgres_pool_max,
    )
    await pg_store.run_migrations()

    if settings.report_path not in _DEFAULT_REPORT_PATHS:
        app.add_api_route(settings.report_path, receive_report, methods=["POST"], status_code=204)
        logger.info("report_path_mounted", path=settings.report_path)

    cache = get_policy_cache()
    try:
        await cache.load_all()
    except Exception:
        logger.warning("policy_cache_initial_load_failed")
    await cache.start_polling()

    logger.info("csp_manager_started", port=settings.listen_port, serve_live=settings.serve_live)

    yield

    logger.info("csp_manager_shutting_down")
    await cache.stop_polling()
    await redis_store.close_redis()
    await pg_store.close_postgres()
    logger.info("csp_manager_stopped")


app = FastAPI(title="CSP Manager", lifespan=lifespan)

app.include_router(health_router)

# Deferred to avoid circular imports
from csp_manager.api.policy_routes import router as policy_router  # noqa: E402
from csp_manager.api.public_routes import receive_report, router as public_router  # noqa: E402
from csp_manager.api.report_routes import router as report_router  # noqa: E402

app.include_router(policy_router)
app.include_router(report_router)
app.include_router(public_router)


async def _buffer_html(response: Response) -> Response:
    """Read a streamed HTML body into a plain Response so the meta tag can be injected."""
    body = b""
    async for chunk in response.body_iterator:
        body += chunk if isinstance(chunk, bytes) else chunk.encode(response.charset)
    buffered = Response(content=body, status_code=response.status_code, background=response.background)
    buffered.raw_headers = list(response.raw_headers)
    return buffered


@app.middleware("http")
async def csp_pipeline(request: Request, call_next):
    """Run every request through the CSP middleware pipeline."""
    context = RequestContext()

    short_circuit = await _pipeline.process_request(request, context)
    if short_circuit is not None:
        return await _pipeline.process_response(short_circuit, context)

    response = await call_next(request)

    if "csp_meta" in context.extra and response.headers.get("content-type", "").startswith("text/html"):
        response = await _buffer_html(response)

    return await _pipeline.process_response(response, context)
