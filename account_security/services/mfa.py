"""MFA lifecycle: setup, enable/disable, TOTP and backup-code verification.

Wrong codes and lockouts come back as ``MfaVerificationResult(success=False)``;
only malformed input, missing records and state conflicts raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from account_security.core.errors import (
    BackupCodeAlreadyUsed,
    InvalidBackupCodeFormat,
    InvalidCodeFormat,
    MfaAlreadyExists,
    MfaNotEnabled,
    MfaNotFound,
)
from account_security.core.settings import settings
from account_security.models.mfa_record import MfaRecord
from account_security.repositories.base import MfaStore
from account_security.schemas.mfa import (
    MfaActivityEntry,
    MfaBackupCodesResult,
    MfaSetupResult,
    MfaStatistics,
    MfaStatusView,
    MfaVerificationResult,
)
from account_security.schemas.security_events import Outcome, SecurityEventType
from account_security.services import mfa_state, totp
from account_security.services.origin import UNKNOWN_ORIGIN, Origin
from account_security.services.security_events import SecurityEventRecorder
from account_security.utils.event_bus import EventBus

logger = logging.getLogger(__name__)

RESOURCE = "mfa"
LOCKED_MESSAGE = "MFA is temporarily locked"

_SUCCESS = "success"
_FAILED = "failed"
_LOCKED = "locked"
_NEWLY_LOCKED = "newly_locked"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class _Attempt:
    outcome: str
    failed_attempts: int
    locked_until: datetime | None
    remaining_backup_codes: int


def _snapshot(record: MfaRecord, outcome: str) -> _Attempt:
    return _Attempt(
        outcome=outcome,
        failed_attempts=record.failed_attempts or 0,
        locked_until=record.locked_until,
        remaining_backup_codes=len(record.backup_codes or []),
    )


class MfaService:
    def __init__(
        self,
        store: MfaStore,
        recorder: SecurityEventRecorder,
        bus: EventBus,
        clock: Callable[[], datetime] = _utcnow,
        *,
        issuer: str | None = None,
        max_failed_attempts: int | None = None,
        lockout: timedelta | None = None,
        window: int | None = None,
        backup_code_count: int | None = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._bus = bus
        self._clock = clock
        self.issuer = issuer or settings.mfa_issuer
        self.max_failed_attempts = max_failed_attempts or settings.mfa_max_failed_attempts
        self.lockout = lockout or timedelta(minutes=settings.mfa_lockout_minutes)
        self.window = settings.mfa_totp_window if window is None else window
        self.backup_code_count = backup_code_count or settings.mfa_backup_code_count

    async def _record_event(
        self,
        event_type: SecurityEventType,
        user_id: str,
        tenant_id: str,
        origin: Origin | None,
        action: str,
        *,
        outcome: Outcome = Outcome.SUCCESS,
        details: dict[str, Any] | None = None,
    ) -> None:
        origin = origin or UNKNOWN_ORIGIN
        await self._recorder.emit(
            event_type,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=origin.ip_address,
            user_agent=origin.user_agent,
            resource=RESOURCE,
            action=action,
            outcome=outcome,
            details=details or {},
        )

    async def _publish(self, event_name: str, user_id: str, tenant_id: str, **payload: Any) -> None:
        try:
            await self._bus.publish(event_name, {"user_id": user_id, "tenant_id": tenant_id, **payload})
        except Exception:
            logger.exception("Publishing %s failed", event_name)

    async def _require(self, user_id: str, tenant_id: str) -> MfaRecord:
        record = await self._store.get(user_id, tenant_id)
        if record is None:
            raise MfaNotFound(user_id=user_id, tenant_id=tenant_id)
        return record

    def _status_view(self, record: MfaRecord, now: datetime) -> MfaStatusView:
        return MfaStatusView(
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            status=mfa_state.mfa_status(record, now),
            is_enabled=bool(record.is_enabled),
            is_verified=bool(record.is_verified),
            secret_hint=totp.mask_secret(record.secret),
            remaining_backup_codes=len(record.backup_codes or []),
            used_backup_codes=len(record.used_backup_codes or []),
            failed_attempts=record.failed_attempts or 0,
            remaining_attempts=mfa_state.remaining_attempts(record, self.max_failed_attempts),
            locked_until=record.locked_until if mfa_state.is_locked(record, now) else None,
            lock_remaining_seconds=mfa_state.lock_remaining_seconds(record, now),
            verified_at=record.verified_at,
            last_used_at=record.last_used_at,
            created_at=record.created_at,
            activity_log=[MfaActivityEntry.model_validate(entry) for entry in record.activity_log or []],
        )

    def _locked_result(self, attempt: _Attempt, now: datetime) -> MfaVerificationResult:
        retry_after = max(0, int((attempt.locked_until - now).total_seconds())) if attempt.locked_until else 0
        return MfaVerificationResult(
            success=False,
            message=LOCKED_MESSAGE,
            remaining_attempts=0,
            locked_until=attempt.locked_until,
            retry_after_seconds=retry_after,
        )

    def _failure_result(self, attempt: _Attempt, now: datetime, message: str) -> MfaVerificationResult:
        if attempt.outcome == _NEWLY_LOCKED:
            result = self._locked_result(attempt, now)
            return result.model_copy(update={"message": "Too many failed attempts; " + LOCKED_MESSAGE})
        return MfaVerificationResult(
            success=False,
            message=message,
            remaining_attempts=max(0, self.max_failed_attempts - attempt.failed_attempts),
        )

    def _fail(self, record: MfaRecord, now: datetime, origin: Origin | None, action: str) -> _Attempt:
        mfa_state.record_failed_attempt(
            record,
            now,
            origin,
            action=action,
            max_attempts=self.max_failed_attempts,
            lockout=self.lockout,
        )
        locked = mfa_state.is_locked(record, now)
        return _snapshot(record, _NEWLY_LOCKED if locked else _FAILED)

    async def _after_failure(
        self,
        attempt: _Attempt,
        user_id: str,
        tenant_id: str,
        origin: Origin | None,
        action: str,
    ) -> None:
        details = {"failed_attempts": attempt.failed_attempts}
        await self._record_event(
            SecurityEventType.MFA_VERIFICATION_FAILED,
            user_id,
            tenant_id,
            origin,
            action,
            outcome=Outcome.FAILURE,
            details=details,
        )
        await self._publish("mfa.verification_failed", user_id, tenant_id, **details)
        if attempt.outcome == _NEWLY_LOCKED:
            logger.warning("MFA locked for user %s in tenant %s", user_id, tenant_id)
            await self._record_event(
                SecurityEventType.MFA_LOCKED,
                user_id,
                tenant_id,
                origin,
                action,
                outcome=Outcome.FAILURE,
                details={"locked_until": attempt.locked_until.isoformat()},
            )
            await self._publish(
                "mfa.locked", user_id, tenant_id, locked_until=attempt.locked_until.isoformat()
            )

    async def _after_locked(self, user_id: str, tenant_id: str, origin: Origin | None, action: str) -> None:
        await self._record_event(
            SecurityEventType.MFA_VERIFICATION_FAILED,
            user_id,
            tenant_id,
            origin,
            action,
            outcome=Outcome.FAILURE,
            details={"reason": "locked"},
        )

    # -- lifecycle -----------------------------------------------------------

    async def setup(
        self,
        user_id: str,
        tenant_id: str,
        email: str,
        issuer: str | None = None,
        origin: Origin | None = None,
        enable_immediately: bool = False,
    ) -> MfaSetupResult:
        if await self._store.get(user_id, tenant_id) is not None:
            raise MfaAlreadyExists(user_id=user_id, tenant_id=tenant_id)
        now = self._clock()
        issuer = issuer or self.issuer
        secret = totp.generate_secret()
        backup_codes = totp.generate_backup_codes(self.backup_code_count)
        record = mfa_state.new_record(
            user_id=user_id,
            tenant_id=tenant_id,
            secret=secret,
            backup_code_digests=[totp.hash_backup_code(code) for code in backup_codes],
            now=now,
            origin=origin,
        )
        if enable_immediately:
            mfa_state.enable(record, now, origin)
        await self._store.add(record)
        logger.info("MFA setup for user %s in tenant %s", user_id, tenant_id)

        await self._record_event(SecurityEventType.MFA_SETUP, user_id, tenant_id, origin, "setup")
        await self._publish("mfa.setup", user_id, tenant_id)
        if enable_immediately:
            await self._record_event(SecurityEventType.MFA_ENABLED, user_id, tenant_id, origin, "enable")
            await self._publish("mfa.enabled", user_id, tenant_id)

        return MfaSetupResult(
            secret=secret,
            provisioning_uri=totp.build_provisioning_uri(secret, email, issuer),
            manual_entry_key=totp.manual_entry_key(email, issuer),
            issuer=issuer,
            label=f"{issuer}:{email}",
            backup_codes=backup_codes,
            is_enabled=enable_immediately,
        )

    async def enable(self, user_id: str, tenant_id: str, origin: Origin | None = None) -> MfaStatusView:
        now = self._clock()
        record = await self._store.mutate(user_id, tenant_id, lambda r: mfa_state.enable(r, now, origin))
        await self._record_event(SecurityEventType.MFA_ENABLED, user_id, tenant_id, origin, "enable")
        await self._publish("mfa.enabled", user_id, tenant_id)
        return self._status_view(record, now)

    async def disable(
        self,
        user_id: str,
        tenant_id: str,
        reason: str | None = None,
        disabled_by: str | None = None,
        origin: Origin | None = None,
    ) -> MfaStatusView:
        now = self._clock()
        record = await self._store.mutate(
            user_id,
            tenant_id,
            lambda r: mfa_state.disable(r, now, origin, reason=reason, disabled_by=disabled_by),
        )
        details = {"reason": reason, "disabled_by": disabled_by}
        await self._record_event(
            SecurityEventType.MFA_DISABLED, user_id, tenant_id, origin, "disable", details=details
        )
        await self._publish("mfa.disabled", user_id, tenant_id, **details)
        return self._status_view(record, now)

    # -- verification --------------------------------------------------------

    async def verify_totp(
        self,
        user_id: str,
        tenant_id: str,
        code: str,
        origin: Origin | None = None,
    ) -> MfaVerificationResult:
        now = self._clock()
        code = (code or "").strip()

        def apply(record: MfaRecord) -> _Attempt:
            if not record.is_enabled:
                raise MfaNotEnabled(user_id=user_id, tenant_id=tenant_id)
            if mfa_state.is_locked(record, now):
                return _snapshot(record, _LOCKED)
            if not totp.is_valid_code(code):
                raise InvalidCodeFormat("Code must be exactly 6 digits")
            mfa_state.release_expired_lock(record, now)
            if totp.verify(record.secret, code, window=self.window, now=now):
                mfa_state.mark_verified(record, now, origin)
                return _snapshot(record, _SUCCESS)
            return self._fail(record, now, origin, "verify_totp")

        attempt = await self._store.mutate(user_id, tenant_id, apply)

        if attempt.outcome == _LOCKED:
            await self._after_locked(user_id, tenant_id, origin, "verify_totp")
            return self._locked_result(attempt, now)
        if attempt.outcome == _SUCCESS:
            await self._record_event(
                SecurityEventType.MFA_VERIFICATION_SUCCESS, user_id, tenant_id, origin, "verify_totp"
            )
            await self._publish("mfa.verified", user_id, tenant_id)
            return MfaVerificationResult(
                success=True,
                message="MFA verification successful",
                remaining_attempts=self.max_failed_attempts,
            )
        await self._after_failure(attempt, user_id, tenant_id, origin, "verify_totp")
        return self._failure_result(attempt, now, "Invalid verification code")

    async def use_backup_code(
        self,
        user_id: str,
        tenant_id: str,
        code: str,
        origin: Origin | None = None,
    ) -> MfaVerificationResult:
        now = self._clock()
        code = (code or "").strip().upper()

        def apply(record: MfaRecord) -> _Attempt:
            if not record.is_enabled:
                raise MfaNotEnabled(user_id=user_id, tenant_id=tenant_id)
            if mfa_state.is_locked(record, now):
                return _snapshot(record, _LOCKED)
            if not totp.is_valid_backup_code(code):
                raise InvalidBackupCodeFormat("Backup code must be 8 uppercase letters or digits")
            digest = totp.hash_backup_code(code)
            if digest in (record.used_backup_codes or []):
                raise BackupCodeAlreadyUsed()
            mfa_state.release_expired_lock(record, now)
            if digest not in (record.backup_codes or []):
                return self._fail(record, now, origin, "use_backup_code")
            mfa_state.consume_backup_code(record, digest, now, origin)
            return _snapshot(record, _SUCCESS)

        attempt = await self._store.mutate(user_id, tenant_id, apply)

        if attempt.outcome == _LOCKED:
            await self._after_locked(user_id, tenant_id, origin, "use_backup_code")
            return self._locked_result(attempt, now)
        if attempt.outcome == _SUCCESS:
            details = {"remaining_backup_codes": attempt.remaining_backup_codes}
            await self._record_event(
                SecurityEventType.MFA_BACKUP_CODE_USED,
                user_id,
                tenant_id,
                origin,
                "use_backup_code",
                details=details,
            )
            await self._publish("mfa.backup_code_used", user_id, tenant_id, **details)
            return MfaVerificationResult(
                success=True,
                message="Backup code accepted",
                remaining_attempts=self.max_failed_attempts,
                remaining_backup_codes=attempt.remaining_backup_codes,
            )
        await self._after_failure(attempt, user_id, tenant_id, origin, "use_backup_code")
        return self._failure_result(attempt, now, "Invalid backup code")

    async def regenerate_backup_codes(
        self,
        user_id: str,
        tenant_id: str,
        reason: str | None = None,
        origin: Origin | None = None,
    ) -> MfaBackupCodesResult:
        now = self._clock()
        codes = totp.generate_backup_codes(self.backup_code_count)
        digests = [totp.hash_backup_code(code) for code in codes]
        await self._store.mutate(
            user_id,
            tenant_id,
            lambda r: mfa_state.replace_backup_codes(r, digests, now, origin, reason=reason),
        )
        await self._record_event(
            SecurityEventType.MFA_BACKUP_CODES_REGENERATED,
            user_id,
            tenant_id,
            origin,
            "regenerate_backup_codes",
            details={"reason": reason},
        )
        await self._publish("mfa.backup_codes_regenerated", user_id, tenant_id, reason=reason)
        return MfaBackupCodesResult(backup_codes=codes, remaining_backup_codes=len(codes))

    # -- reads and maintenance -----------------------------------------------

    async def get_status(self, user_id: str, tenant_id: str) -> MfaStatusView:
        record = await self._require(user_id, tenant_id)
        return self._status_view(record, self._clock())

    async def statistics(self, tenant_id: str | None) -> MfaStatistics:
        counts = await self._store.counts(tenant_id, self._clock())
        return MfaStatistics(
            total=counts.total,
            enabled=counts.enabled,
            verified=counts.verified,
            locked=counts.locked,
            average_failed_attempts=counts.average_failed_attempts,
        )

    async def cleanup_expired_locks(self) -> int:
        return await self._store.release_expired_locks(self._clock())
