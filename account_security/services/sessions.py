"""Session store: durable record plus an advisory cache.

The durable store is authoritative. Cache reads and writes are best-effort;
any cache failure is logged and the call falls back to the store.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from account_security.core.errors import InvalidSessionData, SessionNotFound
from account_security.core.settings import settings
from account_security.models.user_session import UserSession
from account_security.repositories.base import SessionStore
from account_security.schemas.security_events import Outcome, SecurityEventType
from account_security.schemas.sessions import (
    DeviceInfo,
    DeviceSignals,
    Location,
    SessionCreated,
    SessionFilters,
    SessionListResponse,
    SessionStatistics,
    SessionView,
)
from account_security.services import device, session_state
from account_security.services.anomaly import AnomalyDetector
from account_security.services.location import LocationResolver, is_valid_ip, locate
from account_security.services.origin import Identity, Origin
from account_security.services.security_events import SecurityEventRecorder
from account_security.utils.cache import Cache
from account_security.utils.event_bus import EventBus
from account_security.utils.redis_client import redis_key

logger = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 32
LOOKUP_LIMIT = 100
RESOURCE = "session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def cache_key(session_id: UUID | str) -> str:
    return redis_key(RESOURCE, str(session_id))


def _day_bucket(now: datetime) -> float:
    # Fingerprints are stable for one device within a UTC day.
    return now.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


class SessionService:
    def __init__(
        self,
        store: SessionStore,
        cache: Cache,
        recorder: SecurityEventRecorder,
        bus: EventBus,
        resolver: LocationResolver | None = None,
        detector: AnomalyDetector | None = None,
        clock: Callable[[], datetime] = _utcnow,
        *,
        ttl: timedelta | None = None,
        idle_minutes: int | None = None,
        cache_ttl_seconds: int | None = None,
        activity_log_limit: int | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._recorder = recorder
        self._bus = bus
        self._resolver = resolver
        self._detector = detector
        self._clock = clock
        self.ttl = ttl or timedelta(hours=settings.session_ttl_hours)
        self.idle_minutes = idle_minutes or settings.session_timeout_minutes
        self.cache_ttl_seconds = cache_ttl_seconds or settings.session_cache_ttl_seconds
        self.activity_log_limit = activity_log_limit or settings.session_activity_log_limit

    # -- cache ---------------------------------------------------------------

    async def _cache_get(self, session_id: UUID) -> SessionView | None:
        try:
            cached = await self._cache.get(cache_key(session_id))
            if cached:
                return SessionView.model_validate_json(cached)
        except Exception as exc:
            logger.warning("Session cache read failed for %s: %s", session_id, exc)
        return None

    async def _cache_set(self, view: SessionView) -> None:
        try:
            await self._cache.set(cache_key(view.id), view.model_dump_json(), self.cache_ttl_seconds)
        except Exception as exc:
            logger.warning("Session cache write failed for %s: %s", view.id, exc)

    async def _cache_delete(self, *session_ids: UUID) -> None:
        if not session_ids:
            return
        try:
            await self._cache.delete(*(cache_key(session_id) for session_id in session_ids))
        except Exception as exc:
            logger.warning("Session cache delete failed: %s", exc)

    # -- helpers -------------------------------------------------------------

    def _view(self, record: Any, now: datetime | None = None) -> SessionView:
        view = record if isinstance(record, SessionView) else SessionView.model_validate(record)
        status = session_state.session_status(view, now or self._clock(), self.idle_minutes)
        return view.model_copy(update={"status": status})

    async def _publish(self, event_name: str, payload: dict[str, Any]) -> None:
        try:
            await self._bus.publish(event_name, payload)
        except Exception:
            logger.exception("Publishing %s failed", event_name)

    async def _event(
        self,
        event_type: SecurityEventType,
        record: Any,
        action: str,
        *,
        outcome: Outcome = Outcome.SUCCESS,
        details: dict[str, Any] | None = None,
    ) -> None:
        await self._recorder.emit(
            event_type,
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            ip_address=record.ip_address,
            user_agent=getattr(record, "user_agent", None),
            resource=RESOURCE,
            action=action,
            outcome=outcome,
            details={"session_id": str(record.id), **(details or {})},
        )

    async def _mutate(
        self,
        session_id: UUID,
        tenant_id: str | None,
        fn: Callable[[UserSession], Any],
    ) -> tuple[UserSession, Any]:
        def apply(record: UserSession):
            if tenant_id is not None and record.tenant_id != tenant_id:
                raise SessionNotFound(session_id=str(session_id))
            return record, fn(record)

        return await self._store.mutate(session_id, apply)

    # -- operations ----------------------------------------------------------

    async def create(
        self,
        identity: Identity,
        origin: Origin,
        device_signals: DeviceSignals | None = None,
        device_info: DeviceInfo | None = None,
        location: Location | None = None,
        expires_at: datetime | None = None,
        session_token: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionCreated:
        now = self._clock()
        if not identity.user_id or not identity.tenant_id:
            raise InvalidSessionData("User and tenant are required")
        if not is_valid_ip(origin.ip_address):
            raise InvalidSessionData("A valid IP address is required", ip_address=origin.ip_address)
        if session_token is not None and len(session_token) < MIN_TOKEN_LENGTH:
            raise InvalidSessionData(f"Session token must be at least {MIN_TOKEN_LENGTH} characters")
        if expires_at is not None and expires_at.tzinfo is None:
            # Naive timestamps are taken as UTC.
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at is not None and expires_at <= now:
            raise InvalidSessionData("Expiry must be in the future")

        if device_info is None:
            device_info = device.build_device_info(origin.user_agent, device_signals, timestamp=_day_bucket(now))
        if location is None:
            location = await locate(self._resolver, origin.ip_address)

        record = session_state.new_session(
            user_id=identity.user_id,
            tenant_id=identity.tenant_id,
            session_token=session_token or secrets.token_urlsafe(48),
            origin=origin,
            device_info=device_info.model_dump(),
            location=location.model_dump(),
            now=now,
            expires_at=expires_at or now + self.ttl,
            metadata=metadata,
        )
        record = await self._store.add(record)
        view = self._view(record, now)
        await self._cache_set(view)
        await self._publish("session.created", view.model_dump(mode="json"))
        await self._event(SecurityEventType.SESSION_CREATED, record, "create")
        logger.info("Session %s created for user %s", record.id, record.user_id)

        anomalies = await self._evaluate_anomalies(record)
        if anomalies:
            view = await self.get(record.id, record.tenant_id)
        return SessionCreated(**view.model_dump(), session_token=record.session_token, anomalies=anomalies)

    async def _evaluate_anomalies(self, record: UserSession) -> list[str]:
        if self._detector is None:
            return []
        try:
            report = await self._detector.evaluate(record)
        except Exception:
            logger.exception("Anomaly evaluation failed for session %s", record.id)
            return []
        if not report.suspicious:
            return []
        for flag in report.flags:
            await self.add_flag(record.id, flag, reason="anomaly-detector", tenant_id=record.tenant_id)
        await self._event(
            SecurityEventType.SUSPICIOUS_SESSION,
            record,
            "evaluate",
            outcome=Outcome.WARNING,
            details={"flags": report.flags, **report.details},
        )
        return list(report.flags)

    async def get(self, session_id: UUID, tenant_id: str) -> SessionView:
        cached = await self._cache_get(session_id)
        if cached is not None:
            if cached.tenant_id != tenant_id:
                raise SessionNotFound(session_id=str(session_id))
            return self._view(cached)
        record = await self._store.get(session_id)
        if record is None or record.tenant_id != tenant_id:
            raise SessionNotFound(session_id=str(session_id))
        view = self._view(record)
        if record.is_active:
            await self._cache_set(view)
        return view

    async def touch(
        self,
        session_id: UUID,
        origin: Origin | None = None,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SessionView:
        now = self._clock()
        record, _ = await self._mutate(
            session_id,
            tenant_id,
            lambda r: session_state.touch(r, now, origin, details=details, log_limit=self.activity_log_limit),
        )
        view = self._view(record, now)
        await self._cache_set(view)
        await self._publish(
            "session.activity_updated",
            {"session_id": str(record.id), "user_id": record.user_id, "last_activity": now.isoformat()},
        )
        return view

    async def terminate(
        self,
        session_id: UUID,
        terminated_by: str,
        reason: str,
        tenant_id: str | None = None,
    ) -> SessionView:
        now = self._clock()
        record, _ = await self._mutate(
            session_id,
            tenant_id,
            lambda r: session_state.terminate(
                r, now, terminated_by=terminated_by, reason=reason, log_limit=self.activity_log_limit
            ),
        )
        await self._cache_delete(record.id)
        view = self._view(record, now)
        await self._publish("session.terminated", view.model_dump(mode="json"))
        await self._event(
            SecurityEventType.SESSION_TERMINATED,
            record,
            "terminate",
            details={"terminated_by": terminated_by, "reason": reason},
        )
        logger.info("Session %s terminated by %s: %s", record.id, terminated_by, reason)
        return view

    async def add_flag(
        self,
        session_id: UUID,
        flag: str,
        reason: str | None = None,
        tenant_id: str | None = None,
    ) -> SessionView:
        now = self._clock()
        record, changed = await self._mutate(
            session_id,
            tenant_id,
            lambda r: session_state.add_flag(r, flag, now, reason=reason, log_limit=self.activity_log_limit),
        )
        view = self._view(record, now)
        if record.is_active:
            await self._cache_set(view)
        if changed:
            await self._event(
                SecurityEventType.SESSION_SECURITY_FLAG_ADDED,
                record,
                "add_flag",
                outcome=Outcome.WARNING,
                details={"flag": flag, "reason": reason},
            )
        return view

    async def remove_flag(
        self,
        session_id: UUID,
        flag: str,
        reason: str | None = None,
        tenant_id: str | None = None,
    ) -> SessionView:
        now = self._clock()
        record, _ = await self._mutate(
            session_id,
            tenant_id,
            lambda r: session_state.remove_flag(r, flag, now, reason=reason, log_limit=self.activity_log_limit),
        )
        view = self._view(record, now)
        if record.is_active:
            await self._cache_set(view)
        return view

    async def sweep_expired(self) -> int:
        now = self._clock()
        expired = await self._store.expire_sessions(now)
        if not expired:
            return 0
        await self._cache_delete(*(item.id for item in expired))
        for item in expired:
            await self._publish("session.expired", {"session_id": str(item.id), "user_id": item.user_id})
            await self._recorder.emit(
                SecurityEventType.SESSION_EXPIRED,
                user_id=item.user_id,
                tenant_id=item.tenant_id,
                ip_address=item.ip_address,
                resource=RESOURCE,
                action="expire",
                details={"session_id": str(item.id)},
            )
        logger.info("Expired %s sessions", len(expired))
        return len(expired)

    async def list_sessions(
        self,
        tenant_id: str,
        filters: SessionFilters | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> SessionListResponse:
        now = self._clock()
        records, total = await self._store.list(tenant_id, filters or SessionFilters(), page, limit)
        return SessionListResponse(
            items=[self._view(record, now) for record in records],
            total=total,
            page=page,
            limit=limit,
        )

    async def sessions_for_fingerprint(self, tenant_id: str, fingerprint: str) -> list[SessionView]:
        page = await self.list_sessions(tenant_id, SessionFilters(fingerprint=fingerprint), limit=LOOKUP_LIMIT)
        return page.items

    async def sessions_for_ip(self, tenant_id: str, ip_address: str) -> list[SessionView]:
        page = await self.list_sessions(tenant_id, SessionFilters(ip_address=ip_address), limit=LOOKUP_LIMIT)
        return page.items

    async def active_sessions_for_user(self, user_id: str, tenant_id: str) -> list[SessionView]:
        now = self._clock()
        records = await self._store.active_for_user(user_id, tenant_id, now)
        return [self._view(record, now) for record in records]

    async def statistics(self, tenant_id: str | None) -> SessionStatistics:
        counts = await self._store.counts(tenant_id, self._clock())
        return SessionStatistics(
            total=counts.total,
            active=counts.active,
            expired=counts.expired,
            terminated=counts.terminated,
        )
