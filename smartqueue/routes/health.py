# smartqueue/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter

from smartqueue.config import settings
from smartqueue.db.pool import db_health_check
from smartqueue.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "smartqueue"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the backends this deployment is configured to use.
    The in-memory store and the logging sink have nothing to check.
    """
    checks = {}
    overall_ok = True

    if settings.STORAGE_BACKEND == "postgres":
        t0 = time.time()
        try:
            db_health = await db_health_check()
            is_healthy = db_health.get("healthy", False)
            checks["database"] = {
                "ok": is_healthy,
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            if "pool_stats" in db_health:
                checks["database"]["pool_stats"] = db_health["pool_stats"]
            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            overall_ok = overall_ok and is_healthy
        except Exception as e:
            checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False

    if settings.NOTIFICATION_SINK == "redis":
        t0 = time.time()
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and redis_ok

    # Configuration checks
    config_issues = []
    if settings.STORAGE_BACKEND == "postgres" and not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if settings.NOTIFICATION_SINK == "redis" and not settings.REDIS_URL:
        config_issues.append("REDIS_URL not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
        "storage_backend": settings.STORAGE_BACKEND,
        "notification_sink": settings.NOTIFICATION_SINK,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
