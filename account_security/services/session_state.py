"""Pure functions over a session record."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from account_security.core.errors import SessionAlreadyTerminated
from account_security.models.user_session import UserSession
from account_security.schemas.sessions import SessionStatus
from account_security.services.origin import UNKNOWN_ORIGIN, Origin

DEFAULT_TTL = timedelta(hours=24)
DEFAULT_IDLE_MINUTES = 30
DEFAULT_LOG_LIMIT = 200


def session_status(record: Any, now: datetime, idle_minutes: int = DEFAULT_IDLE_MINUTES) -> SessionStatus:
    """terminated > expired > idle > active, evaluated in that order."""
    if not record.is_active:
        return SessionStatus.TERMINATED
    if record.expires_at <= now:
        return SessionStatus.EXPIRED
    if record.last_activity <= now - timedelta(minutes=idle_minutes):
        return SessionStatus.IDLE
    return SessionStatus.ACTIVE


def _append(
    record: UserSession,
    action: str,
    now: datetime,
    origin: Origin | None,
    details: dict[str, Any] | None,
    log_limit: int,
) -> None:
    origin = origin or UNKNOWN_ORIGIN
    entry = {
        "action": action,
        "timestamp": now.isoformat(),
        "ip_address": origin.ip_address,
        "user_agent": origin.user_agent,
        "details": details or {},
    }
    log = [*(record.activity_log or []), entry]
    record.activity_log = log[-log_limit:] if log_limit > 0 else log


def new_session(
    *,
    user_id: str,
    tenant_id: str,
    session_token: str,
    origin: Origin,
    device_info: dict[str, Any],
    location: dict[str, Any],
    now: datetime,
    expires_at: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> UserSession:
    record = UserSession(
        id=uuid.uuid4(),
        user_id=user_id,
        tenant_id=tenant_id,
        session_token=session_token,
        ip_address=origin.ip_address,
        user_agent=origin.user_agent or "",
        device_info=device_info,
        location=location,
        fingerprint=device_info.get("fingerprint"),
        created_at=now,
        last_activity=now,
        expires_at=expires_at or now + DEFAULT_TTL,
        is_active=True,
        terminated_by=None,
        terminated_at=None,
        termination_reason=None,
        security_flags=[],
        activity_log=[],
        session_metadata=dict(metadata or {}),
    )
    _append(record, "created", now, origin, None, DEFAULT_LOG_LIMIT)
    return record


def touch(
    record: UserSession,
    now: datetime,
    origin: Origin | None = None,
    *,
    details: dict[str, Any] | None = None,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> UserSession:
    if not record.is_active:
        raise SessionAlreadyTerminated(session_id=str(record.id))
    record.last_activity = now
    if origin and origin.ip_address:
        record.ip_address = origin.ip_address
    if origin and origin.user_agent:
        record.user_agent = origin.user_agent
    _append(record, "activity", now, origin, details, log_limit)
    return record


def terminate(
    record: UserSession,
    now: datetime,
    *,
    terminated_by: str,
    reason: str,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> UserSession:
    if not record.is_active:
        raise SessionAlreadyTerminated(session_id=str(record.id))
    record.is_active = False
    record.terminated_by = terminated_by
    record.terminated_at = now
    record.termination_reason = reason
    _append(record, "terminated", now, None, {"terminated_by": terminated_by, "reason": reason}, log_limit)
    return record


def add_flag(
    record: UserSession,
    flag: str,
    now: datetime,
    *,
    reason: str | None = None,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> bool:
    """Returns False when the flag was already present."""
    flags = list(record.security_flags or [])
    if flag in flags:
        return False
    record.security_flags = [*flags, flag]
    _append(record, "flag_added", now, None, {"flag": flag, "reason": reason}, log_limit)
    return True


def remove_flag(
    record: UserSession,
    flag: str,
    now: datetime,
    *,
    reason: str | None = None,
    log_limit: int = DEFAULT_LOG_LIMIT,
) -> bool:
    flags = list(record.security_flags or [])
    if flag not in flags:
        return False
    record.security_flags = [item for item in flags if item != flag]
    _append(record, "flag_removed", now, None, {"flag": flag, "reason": reason}, log_limit)
    return True


def duration_seconds(record: Any, now: datetime) -> int:
    end = record.terminated_at or (now if record.is_active else record.last_activity)
    return max(0, int((end - record.created_at).total_seconds()))


def age_seconds(record: Any, now: datetime) -> int:
    return max(0, int((now - record.created_at).total_seconds()))
