from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text

from account_security.core.settings import settings
from account_security.db.session import engine
from account_security.utils.cache import NullCache, get_cache

APP_VERSION = "0.1.0"


async def _check_db() -> dict[str, str]:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:  # pragma: no cover - exercised in runtime
        return {"status": "error", "error": str(exc)}


async def _check_cache() -> dict[str, str]:
    cache = get_cache()
    if isinstance(cache, NullCache):
        return {"status": "ok", "mode": "disabled"}
    try:
        await cache.ping()
        return {"status": "ok"}
    except Exception as exc:
        # The cache is advisory; an outage degrades readiness but not liveness.
        return {"status": "error", "error": str(exc)}


def _overall_status(checks: dict[str, dict[str, Any]]) -> tuple[str, bool]:
    ready = all(check.get("status") == "ok" for check in checks.values())
    return ("ok" if ready else "degraded", ready)


async def _checks() -> dict[str, dict[str, Any]]:
    return {
        "api": {"status": "ok", "version": APP_VERSION},
        "database": await _check_db(),
        "cache": await _check_cache(),
    }


async def live_payload() -> dict[str, str]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def ready_payload() -> dict[str, Any]:
    checks = await _checks()
    overall, ready = _overall_status(checks)
    return {
        "status": overall,
        "ready": ready,
        "environment": settings.environment,
        "version": APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }
