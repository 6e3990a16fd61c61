from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from account_security.core.context import set_tenant_id, set_user_id
from account_security.repositories.base import SessionStore
from account_security.repositories.mfa import SqlMfaStore
from account_security.repositories.security_events import SqlSecurityEventStore
from account_security.repositories.sessions import SqlSessionStore
from account_security.services.anomaly import AnomalyDetector
from account_security.services.location import build_resolver
from account_security.services.mfa import MfaService
from account_security.services.origin import Identity, Origin
from account_security.services.security_events import SecurityEventRecorder
from account_security.services.session_limits import SessionLimits, enforce_session_limits, limits_for_role
from account_security.services.sessions import SessionService
from account_security.utils.cache import get_cache
from account_security.utils.event_bus import get_event_bus


@dataclass(slots=True)
class TenantContext:
    tenant_id: str


async def get_tenant_context(
    tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> TenantContext:
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant resolution failed: provide X-Tenant-ID header",
        )
    set_tenant_id(tenant_id)
    return TenantContext(tenant_id=tenant_id)


async def get_identity(
    ctx: TenantContext = Depends(get_tenant_context),
    user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> Identity:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-ID header required")
    set_user_id(user_id)
    return Identity(user_id=user_id, tenant_id=ctx.tenant_id)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def get_origin(request: Request) -> Origin:
    return Origin(ip_address=client_ip(request), user_agent=request.headers.get("user-agent"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=1)
def get_session_store() -> SessionStore:
    return SqlSessionStore()


@lru_cache(maxsize=1)
def get_security_event_recorder() -> SecurityEventRecorder:
    return SecurityEventRecorder(SqlSecurityEventStore(), get_event_bus())


@lru_cache(maxsize=1)
def get_mfa_service() -> MfaService:
    return MfaService(SqlMfaStore(), get_security_event_recorder(), get_event_bus())


@lru_cache(maxsize=1)
def get_session_service() -> SessionService:
    store = get_session_store()
    return SessionService(
        store,
        get_cache(),
        get_security_event_recorder(),
        get_event_bus(),
        resolver=build_resolver(),
        detector=AnomalyDetector(store),
    )


def require_session_limits(limits: SessionLimits | None = None):
    """Block the request when the caller's live sessions have reached a ceiling.

    Without explicit ``limits`` the ceiling comes from the ``X-User-Role`` header.
    """

    async def dependency(
        request: Request,
        store: SessionStore = Depends(get_session_store),
        tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
        user_id: str | None = Header(default=None, alias="X-User-ID"),
        role: str | None = Header(default=None, alias="X-User-Role"),
    ) -> None:
        await enforce_session_limits(
            store,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=client_ip(request),
            limits=limits or limits_for_role(role),
            now=utcnow(),
        )

    return dependency
