"""FastAPI application entrypoint for the battle arena engine."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.auth.middleware import (
    AUTH_CONTEXT_KEY,
    REQUEST_CONTEXT_KEY,
    resolve_client_ip,
    resolve_request_auth_context,
)
from src.battles.router import admin_router as battles_admin_router
from src.battles.router import router as battles_router
from src.control.audit import RequestContext
from src.control.router import router as control_router
from src.core.config import get_settings
from src.core.errors import BattleError
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, render_prometheus_metrics
from src.core.observability import capture_exception, init_sentry, sentry_scope
from src.moderation.router import admin_router as moderation_admin_router
from src.moderation.router import router as comments_router
from src.storage.db import load_models
from src.storage.db import test_connection as test_db_connection
from src.storage.redis_client import test_connection as test_redis_connection


settings = get_settings()
logger = get_logger("arena.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.exception_handler(BattleError)
async def battle_error_handler(request: Request, exc: BattleError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, error_type=type(exc).__name__)
    capture_exception(exc)
    return JSONResponse(status_code=500, content={"error": "internal_error", "category": "internal"})


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)
    setattr(
        request.state,
        REQUEST_CONTEXT_KEY,
        RequestContext(
            ip=resolve_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            session_id=auth_context.session_id if auth_context else None,
            request_id=request_id,
        ),
    )

    actor_id = auth_context.user_id if auth_context else None
    bind_request_context(request_id=request_id, actor_id=actor_id)

    status_code = 500
    try:
        with sentry_scope(actor_id=actor_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
        scheduler_key_configured=bool(settings.scheduler_internal_key.strip()),
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()

    healthy = db_ok and redis_ok
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(battles_router)
app.include_router(battles_admin_router)
app.include_router(comments_router)
app.include_router(moderation_admin_router)
app.include_router(control_router)
