from __future__ import annotations

from flask import Blueprint, current_app

from cache_layer import cache_stats
from db import get_pool_stats, ping_db
from utils import iso_utc_now, ok

core_bp = Blueprint("core", __name__)


def _ping_redis(redis_url: str) -> bool:
    """Redis backs the notification queue; unset means async notifications are off."""
    if not redis_url:
        return True
    try:
        import redis

        r = redis.from_url(redis_url, socket_connect_timeout=2)
        r.ping()
        return True
    except Exception:
        return False


@core_bp.get("/health")
def health():
    """Lightweight health check (process alive)."""
    cfg = current_app.config["CFG"]
    return ok(
        {
            "status": "ok",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "db_pool": get_pool_stats(),
            "cache": cache_stats(),
        }
    )


@core_bp.get("/ready")
def ready():
    """
    Readiness check for load balancers.
    Checks database and Redis connectivity.
    """
    cfg = current_app.config["CFG"]
    db_ok = ping_db()
    redis_ok = _ping_redis(cfg.REDIS_URL if cfg.NOTIFY_ASYNC else "")
    all_ok = db_ok and redis_ok

    return ok(
        {
            "status": "ok" if all_ok else "degraded",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "checks": {
                "db": "ok" if db_ok else "error",
                "redis": "ok" if redis_ok else "error",
            },
        },
        http_status=200 if all_ok else 503,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return ok({"version": cfg.APP_VERSION, "env": cfg.APP_ENV, "time": iso_utc_now()})
