"""Concurrent, per-user and per-IP session ceilings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from account_security.core.errors import SessionLimitExceeded
from account_security.core.settings import settings
from account_security.repositories.base import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SessionLimits:
    max_concurrent_sessions: int | None = None
    max_sessions_per_user: int | None = None
    max_sessions_per_ip: int | None = None
    require_active_session: bool = False


ROLE_LIMITS = {
    "admin": SessionLimits(max_concurrent_sessions=10, max_sessions_per_user=50, max_sessions_per_ip=5),
    "security-admin": SessionLimits(max_concurrent_sessions=5, max_sessions_per_user=20, max_sessions_per_ip=3),
    "user": SessionLimits(max_concurrent_sessions=3, max_sessions_per_user=10, max_sessions_per_ip=2),
    "guest": SessionLimits(max_concurrent_sessions=1, max_sessions_per_user=5, max_sessions_per_ip=1),
}


def limits_for_role(role: str | None) -> SessionLimits:
    return ROLE_LIMITS.get((role or "").lower(), ROLE_LIMITS["user"])


async def enforce_session_limits(
    store: SessionStore,
    *,
    user_id: str | None,
    tenant_id: str | None,
    ip_address: str | None,
    limits: SessionLimits,
    now: datetime,
    fail_closed: bool | None = None,
) -> None:
    """Raise ``SessionLimitExceeded`` when a live count has reached its ceiling.

    Missing identity and store failures allow the request unless
    ``fail_closed`` (default: ``SESSION_LIMITS_FAIL_CLOSED``) is set.
    """
    fail_closed = settings.session_limits_fail_closed if fail_closed is None else fail_closed
    if not user_id or not tenant_id:
        if fail_closed:
            raise SessionLimitExceeded("Session limits require a user and tenant")
        logger.warning("Session limits skipped: missing user or tenant id")
        return

    try:
        if limits.max_concurrent_sessions:
            active = await store.count_active_for_user(user_id, tenant_id, now)
            if active >= limits.max_concurrent_sessions:
                raise SessionLimitExceeded(
                    "Maximum concurrent sessions exceeded",
                    limit=limits.max_concurrent_sessions,
                    current=active,
                )
        if limits.max_sessions_per_user:
            total = await store.count_for_user(user_id, tenant_id)
            if total >= limits.max_sessions_per_user:
                raise SessionLimitExceeded(
                    "Maximum sessions per user exceeded",
                    limit=limits.max_sessions_per_user,
                    current=total,
                )
        if limits.max_sessions_per_ip and ip_address:
            per_ip = await store.count_active_for_ip(ip_address, tenant_id, now)
            if per_ip >= limits.max_sessions_per_ip:
                raise SessionLimitExceeded(
                    "Maximum sessions per IP exceeded",
                    limit=limits.max_sessions_per_ip,
                    current=per_ip,
                )
        if limits.require_active_session:
            if await store.count_active_for_user(user_id, tenant_id, now) == 0:
                raise SessionLimitExceeded("Active session required")
    except SessionLimitExceeded:
        raise
    except Exception:
        if fail_closed:
            raise
        logger.exception("Session limit check failed for user %s; allowing request", user_id)
