"""FastAPI application for the AliveHome payment core."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import alivehome.models  # noqa: F401  registers the tables
from alivehome import db
from alivehome.config import AppInfo, Settings, get_settings
from alivehome.core.logging import get_logger, setup_logging
from alivehome.core.runtime_state import set_scheduler_active
from alivehome.models import GatewayProvider
from alivehome.routers import get_api_router
from alivehome.services.billing import run_billing_cycle_once
from alivehome.services.gateway_registry import get_gateway_registry
from alivehome.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from alivehome.utils.errors import PaymentError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
SCHEMA_BOOTSTRAP_ENVS = {"dev", "local", "test"}
MANUAL_PROVIDERS = {GatewayProvider.CASH, GatewayProvider.BANK_TRANSFER}
LOCK_HEARTBEAT_SECONDS = 60


def _configure_middlewares(fastapi_app: FastAPI, settings: Settings) -> None:
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    if settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="alivehome_payments", group_paths=True)
        fastapi_app.add_route("/metrics", handle_metrics)

    if settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=settings.SENTRY_DSN, environment=settings.app_env, traces_sample_rate=0.2)


def _check_gateways(settings: Settings) -> None:
    """Warn when only CASH and BANK_TRANSFER can take payments."""

    providers = get_gateway_registry().providers()
    online = sorted(provider.value for provider in providers if provider not in MANUAL_PROVIDERS)
    if online:
        logger.info("Payment gateways configured", extra={"providers": online})
        return
    log = logger.warning if settings.app_env.lower() == "dev" else logger.error
    log("No card or wallet gateway configured; manual providers only.", extra={"env": settings.app_env})


def _bootstrap_schema(settings: Settings) -> None:
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in SCHEMA_BOOTSTRAP_ENVS:
        logger.warning("Creating tables from model metadata", extra={"env": settings.app_env})
        db.create_all()
    else:
        logger.info("Schema managed by Alembic", extra={"env": settings.app_env})


def _start_billing_scheduler(settings: Settings) -> bool:
    """Start recurring billing if this replica wins the DB lease."""

    global scheduler
    set_scheduler_active(False)
    if not settings.SCHEDULER_ENABLED:
        return False
    if not try_acquire_scheduler_lock():
        logger.warning("Billing lease held by another replica; scheduler not started.")
        return False

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_billing_cycle_once,
        "interval",
        minutes=settings.BILLING_INTERVAL_MINUTES,
        id="recurring-billing",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=LOCK_HEARTBEAT_SECONDS,
        id="billing-lease-heartbeat",
        replace_existing=True,
    )
    scheduler.start()
    set_scheduler_active(True)
    logger.info("Recurring billing scheduled", extra={"interval_minutes": settings.BILLING_INTERVAL_MINUTES})
    return True


def _stop_billing_scheduler(lease_held: bool) -> None:
    global scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
    if lease_held:
        release_scheduler_lock()
    set_scheduler_active(False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Payment core starting", extra={"env": settings.app_env})

    db.init_engine()
    _bootstrap_schema(settings)
    _check_gateways(settings)
    lease_held = _start_billing_scheduler(settings)
    try:
        yield
    finally:
        _stop_billing_scheduler(lease_held)
        db.close_engine()
        logger.info("Payment core stopped", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app, get_settings())
app.include_router(get_api_router())


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "Payment error",
        extra={"code": exc.code, "status_code": exc.status_code, "path": request.url.path},
    )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_response()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        "VALIDATION_ERROR",
        "Request validation failed.",
        {"errors": [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]},
    )
    return JSONResponse(status_code=400, content=payload)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
