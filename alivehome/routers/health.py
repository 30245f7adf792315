"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Depends
from sqlalchemy import text

from alivehome.config import get_settings
from alivehome.core.runtime_state import is_scheduler_active, last_billing_run
from alivehome.db import get_engine
from alivehome.services.gateway_registry import GatewayRegistry, gateway_status, get_gateway_registry
from alivehome.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config("alembic.ini"))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> str:
    expected_head = _expected_migration_head()
    if expected_head is None:
        return "unknown"
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
    except Exception:  # noqa: BLE001
        logger.info("alembic_version table not readable")
        return "unknown"
    return "up_to_date" if current == expected_head else "out_of_date"


def _scheduler_lock_status() -> dict[str, object]:
    try:
        return describe_scheduler_lock()
    except Exception:  # noqa: BLE001
        logger.exception("Scheduler lock lookup failed")
        return {"status": "unknown", "owner": None}


@router.get("", summary="Health check")
def healthcheck(registry: GatewayRegistry = Depends(get_gateway_registry)) -> dict[str, object]:
    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    migrations_status = _migrations_status() if db_ok else "unknown"
    gateways = gateway_status(registry, settings)
    return {
        "status": "ok" if db_ok else "degraded",
        "env": settings.app_env,
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_status": migrations_status,
        "gateways": gateways,
        "gateways_configured": [name for name, flags in gateways.items() if flags["configured"]],
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": _scheduler_lock_status() if db_ok else {"status": "unknown", "owner": None},
        "last_billing_run": last_billing_run(),
    }
