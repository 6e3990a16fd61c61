from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from account_security.api import deps
from account_security.schemas.sessions import (
    SessionCreated,
    SessionCreateRequest,
    SessionFilters,
    SessionFlagRequest,
    SessionListResponse,
    SessionStatistics,
    SessionTerminateRequest,
    SessionView,
    SweepResult,
)
from account_security.services.mfa import MfaService
from account_security.services.origin import Identity, Origin
from account_security.services.sessions import SessionService

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post(
    "",
    response_model=SessionCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Create a session after a successful login",
    dependencies=[Depends(deps.require_session_limits())],
)
async def create_session(
    payload: SessionCreateRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionCreated:
    client = Origin(
        ip_address=payload.ip_address or origin.ip_address,
        user_agent=payload.user_agent or origin.user_agent,
    )
    return await service.create(
        identity,
        client,
        device_signals=payload.device_signals,
        expires_at=payload.expires_at,
        session_token=payload.session_token,
        metadata=payload.metadata,
    )


@router.get("", response_model=SessionListResponse, summary="List sessions")
async def list_sessions(
    filters: SessionFilters = Depends(),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionListResponse:
    return await service.list_sessions(ctx.tenant_id, filters, page, limit)


@router.get("/statistics", response_model=SessionStatistics, summary="Session counts")
async def session_statistics(
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionStatistics:
    return await service.statistics(ctx.tenant_id)


@router.get("/me/active", response_model=list[SessionView], summary="Caller's active sessions")
async def my_active_sessions(
    identity: Identity = Depends(deps.get_identity),
    service: SessionService = Depends(deps.get_session_service),
) -> list[SessionView]:
    return await service.active_sessions_for_user(identity.user_id, identity.tenant_id)


@router.get("/device/{fingerprint}", response_model=list[SessionView], summary="Sessions by fingerprint")
async def sessions_by_fingerprint(
    fingerprint: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> list[SessionView]:
    return await service.sessions_for_fingerprint(ctx.tenant_id, fingerprint)


@router.get("/ip/{ip_address}", response_model=list[SessionView], summary="Sessions by IP address")
async def sessions_by_ip(
    ip_address: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> list[SessionView]:
    return await service.sessions_for_ip(ctx.tenant_id, ip_address)


@router.post(
    "/cleanup/expired",
    response_model=SweepResult,
    summary="Expire sessions and release MFA locks",
    dependencies=[Depends(deps.get_tenant_context)],
)
async def cleanup_expired(
    service: SessionService = Depends(deps.get_session_service),
    mfa_service: MfaService = Depends(deps.get_mfa_service),
) -> SweepResult:
    expired = await service.sweep_expired()
    released = await mfa_service.cleanup_expired_locks()
    return SweepResult(expired=expired, released_locks=released)


@router.get("/{session_id}", response_model=SessionView, summary="Get a session")
async def get_session(
    session_id: UUID,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionView:
    return await service.get(session_id, ctx.tenant_id)


@router.put("/{session_id}/activity", response_model=SessionView, summary="Record session activity")
async def touch_session(
    session_id: UUID,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    origin: Origin = Depends(deps.get_origin),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionView:
    return await service.touch(session_id, origin, tenant_id=ctx.tenant_id)


@router.post("/{session_id}/terminate", response_model=SessionView, summary="Terminate a session")
async def terminate_session(
    session_id: UUID,
    payload: SessionTerminateRequest,
    identity: Identity = Depends(deps.get_identity),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionView:
    return await service.terminate(
        session_id,
        terminated_by=identity.user_id,
        reason=payload.reason,
        tenant_id=identity.tenant_id,
    )


@router.post("/{session_id}/flags", response_model=SessionView, summary="Add a security flag")
async def add_flag(
    session_id: UUID,
    payload: SessionFlagRequest,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionView:
    return await service.add_flag(session_id, payload.flag, reason=payload.reason, tenant_id=ctx.tenant_id)


@router.delete("/{session_id}/flags/{flag}", response_model=SessionView, summary="Remove a security flag")
async def remove_flag(
    session_id: UUID,
    flag: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: SessionService = Depends(deps.get_session_service),
) -> SessionView:
    return await service.remove_flag(session_id, flag, tenant_id=ctx.tenant_id)
