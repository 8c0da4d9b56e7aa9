# app/routes/health.py
"""
Health check endpoints with database pool, scheduler and SMS monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.jobs.trigger_scheduler import trigger_scheduler
from app.services.realtime.broadcast_hub import broadcast_hub
from app.services.sms.delivery_channel import delivery_channel

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "notification-engine"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the database pool, the scheduler and the SMS
    channel configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool health check
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "connection_time_ms": db_health.get("connection_time_ms", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            if "error_type" in db_health:
                checks["database"]["error_type"] = db_health["error_type"]

        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 2) Scheduler
    scheduler_health = trigger_scheduler.health_check()
    checks["scheduler"] = {
        "ok": scheduler_health["healthy"],
        "enabled": settings.SCHEDULER_ENABLED,
        "started": scheduler_health["started"],
        "last_fine_tick": scheduler_health["last_fine_tick"],
    }
    if "warning" in scheduler_health:
        checks["scheduler"]["warning"] = scheduler_health["warning"]
    overall_ok = overall_ok and scheduler_health["healthy"]

    # 3) SMS channel configuration
    provider_info = delivery_channel.provider_info()
    sms_ok = bool(provider_info.get("primary_configured"))
    checks["sms"] = {"ok": sms_ok, **provider_info}
    if not sms_ok:
        checks["sms"]["error"] = f"SMS provider '{provider_info.get('provider')}' is not configured"
    overall_ok = overall_ok and sms_ok

    checks["realtime"] = {"ok": True, "connections": broadcast_hub.connection_count}

    return {
        "overall_ok": overall_ok,
        "checks": checks,
        "environment": settings.environment,
        "timestamp": time.time(),
    }
