from fastapi import APIRouter, Depends, Query, status

from account_security.api import deps
from account_security.schemas.security_events import (
    SecurityAlert,
    SecurityAlertRequest,
    SecurityEventFilters,
    SecurityEventListResponse,
    SecurityEventStats,
)
from account_security.services.origin import Identity
from account_security.services.security_events import SecurityEventRecorder

router = APIRouter(prefix="/security-events", tags=["security-events"])


@router.get("", response_model=SecurityEventListResponse, summary="List security events")
async def list_security_events(
    filters: SecurityEventFilters = Depends(),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    recorder: SecurityEventRecorder = Depends(deps.get_security_event_recorder),
) -> SecurityEventListResponse:
    return await recorder.list_events(ctx.tenant_id, filters, page, limit)


@router.get("/statistics", response_model=SecurityEventStats, summary="Security event counts")
async def security_event_statistics(
    days: int = Query(30, ge=1, le=365),
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    recorder: SecurityEventRecorder = Depends(deps.get_security_event_recorder),
) -> SecurityEventStats:
    return await recorder.statistics(ctx.tenant_id, days)


@router.post(
    "/alerts",
    response_model=SecurityAlert,
    status_code=status.HTTP_201_CREATED,
    summary="Raise a security alert",
)
async def create_alert(
    payload: SecurityAlertRequest,
    identity: Identity = Depends(deps.get_identity),
    recorder: SecurityEventRecorder = Depends(deps.get_security_event_recorder),
) -> SecurityAlert:
    return await recorder.create_alert(
        payload.alert_type,
        payload.message,
        severity=payload.severity,
        tenant_id=identity.tenant_id,
        user_id=identity.user_id,
        details=payload.details,
    )
