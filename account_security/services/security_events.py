"""Security event pipeline: severity resolution, fan-out, escalation, persistence.

``record`` is observational. It never raises into the business operation that
triggered it; every internal failure is logged and swallowed here.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic_core import PydanticSerializationError

from account_security.core.logging import get_audit_logger
from account_security.repositories.base import SecurityEventStore
from account_security.schemas.security_events import (
    SecurityAlert,
    SecurityEvent,
    SecurityEventFilters,
    SecurityEventListResponse,
    SecurityEventOut,
    SecurityEventStats,
    SecurityEventType as E,
    Severity,
)
from account_security.utils.event_bus import EventBus

logger = logging.getLogger(__name__)

CHANNEL_ALL = "security.event"
CHANNEL_HIGH_SEVERITY = "security.high_severity"
CHANNEL_ALERT = "security.alert"

SEVERITY_BY_EVENT: dict[str, Severity] = {
    E.LOGIN_SUCCESS: Severity.LOW,
    E.LOGIN_FAILURE: Severity.MEDIUM,
    E.LOGIN_ATTEMPT: Severity.LOW,
    E.LOGOUT: Severity.LOW,
    E.PASSWORD_RESET: Severity.MEDIUM,
    E.ACCOUNT_LOCKED: Severity.HIGH,
    E.BRUTE_FORCE_ATTEMPT: Severity.HIGH,
    E.MFA_SETUP: Severity.LOW,
    E.MFA_ENABLED: Severity.LOW,
    E.MFA_DISABLED: Severity.MEDIUM,
    E.MFA_VERIFICATION_SUCCESS: Severity.LOW,
    E.MFA_VERIFICATION_FAILED: Severity.MEDIUM,
    E.MFA_LOCKED: Severity.HIGH,
    E.MFA_BACKUP_CODE_USED: Severity.MEDIUM,
    E.MFA_BACKUP_CODES_REGENERATED: Severity.MEDIUM,
    E.SESSION_CREATED: Severity.LOW,
    E.SESSION_TERMINATED: Severity.LOW,
    E.SESSION_EXPIRED: Severity.LOW,
    E.SESSION_HIJACKING_ATTEMPT: Severity.CRITICAL,
    E.SESSION_SECURITY_FLAG_ADDED: Severity.MEDIUM,
    E.SUSPICIOUS_SESSION: Severity.HIGH,
    E.PERMISSION_DENIED: Severity.MEDIUM,
    E.UNAUTHORIZED_ACCESS: Severity.HIGH,
    E.PRIVILEGE_ESCALATION: Severity.CRITICAL,
    E.ROLE_CHANGED: Severity.MEDIUM,
    E.DATA_ACCESS: Severity.LOW,
    E.SENSITIVE_DATA_ACCESS: Severity.MEDIUM,
    E.DATA_EXPORT: Severity.MEDIUM,
    E.DATA_DELETION: Severity.HIGH,
    E.SYSTEM_ERROR: Severity.MEDIUM,
    E.CONFIGURATION_CHANGE: Severity.MEDIUM,
    E.BACKUP_CREATED: Severity.LOW,
    E.SYSTEM_RESTART: Severity.MEDIUM,
    E.IP_BLOCKED: Severity.MEDIUM,
    E.DDOS_ATTEMPT: Severity.CRITICAL,
    E.PORT_SCAN: Severity.HIGH,
    E.SUSPICIOUS_IP: Severity.MEDIUM,
    E.UNKNOWN: Severity.LOW,
}

ESCALATED = frozenset({Severity.HIGH, Severity.CRITICAL})

_LOG_LEVEL = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _type_name(event_type: str) -> str:
    return str(getattr(event_type, "value", event_type))


def resolve_severity(event_type: str) -> Severity:
    return SEVERITY_BY_EVENT.get(_type_name(event_type).upper(), Severity.LOW)


def type_channel(event_type: str) -> str:
    return f"security.{_type_name(event_type).lower()}"


def _json_safe(details: dict[str, Any]) -> dict[str, Any]:
    # Values JSON cannot encode are stored as their string form.
    return json.loads(json.dumps(details, default=str))


class SecurityEventRecorder:
    def __init__(
        self,
        store: SecurityEventStore | None,
        bus: EventBus,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock
        self._audit = get_audit_logger()

    async def record(self, event: SecurityEvent) -> SecurityEvent | None:
        try:
            stamped = event.model_copy(
                update={
                    "event_type": _type_name(event.event_type),
                    "timestamp": event.timestamp or self._clock(),
                    "severity": event.severity or resolve_severity(event.event_type),
                }
            )
            try:
                payload = stamped.model_dump(mode="json")
            except PydanticSerializationError:
                stamped = stamped.model_copy(update={"details": _json_safe(stamped.details)})
                payload = stamped.model_dump(mode="json")
        except Exception:
            logger.exception("Security event could not be prepared")
            return None

        try:
            self._audit.log(
                _LOG_LEVEL[stamped.severity],
                "security event %s",
                stamped.event_type,
                extra={"security": payload},
            )
        except Exception:
            logger.exception("Security event audit logging failed for %s", stamped.event_type)

        try:
            await self._bus.publish(CHANNEL_ALL, payload)
            await self._bus.publish(type_channel(stamped.event_type), payload)
            if stamped.severity in ESCALATED:
                await self._bus.publish(CHANNEL_HIGH_SEVERITY, payload)
        except Exception:
            logger.exception("Security event fan-out failed for %s", stamped.event_type)

        if self._store is not None:
            try:
                await self._store.add(stamped)
            except Exception:
                logger.exception("Security event persistence failed for %s", stamped.event_type)
        return stamped

    async def emit(self, event_type: str, **fields: Any) -> SecurityEvent | None:
        try:
            event = SecurityEvent(event_type=_type_name(event_type), **fields)
        except Exception:
            logger.exception("Invalid security event %s", event_type)
            return None
        return await self.record(event)

    async def list_events(
        self,
        tenant_id: str,
        filters: SecurityEventFilters | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> SecurityEventListResponse:
        if self._store is None:
            return SecurityEventListResponse(items=[], total=0, page=page, limit=limit)
        rows, total = await self._store.list(tenant_id, filters or SecurityEventFilters(), page, limit)
        return SecurityEventListResponse(
            items=[SecurityEventOut.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    async def statistics(self, tenant_id: str, days: int | None = 30) -> SecurityEventStats:
        if self._store is None:
            return SecurityEventStats(total=0)
        since = self._clock() - timedelta(days=days) if days else None
        by_severity, by_type = await self._store.counts(tenant_id, since)
        return SecurityEventStats(
            total=sum(by_severity.values()),
            by_severity={level.value: by_severity.get(level.value, 0) for level in Severity},
            by_type=by_type,
        )

    async def create_alert(
        self,
        alert_type: str,
        message: str,
        *,
        severity: Severity = Severity.HIGH,
        tenant_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SecurityAlert:
        alert = SecurityAlert(
            alert_type=alert_type,
            severity=severity,
            message=message,
            tenant_id=tenant_id,
            user_id=user_id,
            details=details or {},
            created_at=self._clock(),
        )
        self._audit.warning(
            "security alert %s: %s",
            alert_type,
            message,
            extra={"security": alert.model_dump(mode="json")},
        )
        await self._bus.publish(CHANNEL_ALERT, alert.model_dump(mode="json"))
        return alert
