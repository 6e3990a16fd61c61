from fastapi import APIRouter, Depends, status

from account_security.api import deps
from account_security.schemas.mfa import (
    MfaBackupCodesResult,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaRegenerateRequest,
    MfaSetupRequest,
    MfaSetupResult,
    MfaStatistics,
    MfaStatusView,
    MfaVerificationResult,
)
from account_security.services.mfa import MfaService
from account_security.services.origin import Identity, Origin

router = APIRouter(prefix="/mfa", tags=["mfa"])


@router.post(
    "/setup",
    response_model=MfaSetupResult,
    status_code=status.HTTP_201_CREATED,
    summary="Create an MFA enrollment and return the secret and backup codes once",
)
async def setup_mfa(
    payload: MfaSetupRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaSetupResult:
    return await service.setup(
        identity.user_id,
        identity.tenant_id,
        payload.email,
        issuer=payload.issuer,
        origin=origin,
        enable_immediately=payload.enable_immediately,
    )


@router.post("/enable", response_model=MfaStatusView, summary="Enable MFA")
async def enable_mfa(
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaStatusView:
    return await service.enable(identity.user_id, identity.tenant_id, origin)


@router.post("/disable", response_model=MfaStatusView, summary="Disable MFA")
async def disable_mfa(
    payload: MfaDisableRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaStatusView:
    return await service.disable(
        identity.user_id,
        identity.tenant_id,
        reason=payload.reason,
        disabled_by=identity.user_id,
        origin=origin,
    )


@router.post("/verify", response_model=MfaVerificationResult, summary="Verify a TOTP code")
async def verify_mfa(
    payload: MfaCodeRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaVerificationResult:
    return await service.verify_totp(identity.user_id, identity.tenant_id, payload.code, origin)


@router.post(
    "/backup-codes/verify",
    response_model=MfaVerificationResult,
    summary="Consume a single-use backup code",
)
async def use_backup_code(
    payload: MfaCodeRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaVerificationResult:
    return await service.use_backup_code(identity.user_id, identity.tenant_id, payload.code, origin)


@router.post(
    "/backup-codes/regenerate",
    response_model=MfaBackupCodesResult,
    summary="Replace all backup codes",
)
async def regenerate_backup_codes(
    payload: MfaRegenerateRequest,
    identity: Identity = Depends(deps.get_identity),
    origin: Origin = Depends(deps.get_origin),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaBackupCodesResult:
    return await service.regenerate_backup_codes(
        identity.user_id, identity.tenant_id, reason=payload.reason, origin=origin
    )


@router.get("/status", response_model=MfaStatusView, summary="MFA status for the caller")
async def mfa_status(
    identity: Identity = Depends(deps.get_identity),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaStatusView:
    return await service.get_status(identity.user_id, identity.tenant_id)


@router.get("/statistics", response_model=MfaStatistics, summary="MFA enrollment statistics")
async def mfa_statistics(
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    service: MfaService = Depends(deps.get_mfa_service),
) -> MfaStatistics:
    return await service.statistics(ctx.tenant_id)
