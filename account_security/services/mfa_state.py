"""Pure transitions over an MFA record.

Every mutating function appends exactly one activity entry and replaces list
fields instead of editing them in place, so JSON columns are always flagged
dirty and earlier snapshots of the record stay untouched.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

from account_security.core.errors import BackupCodeAlreadyUsed
from account_security.models.mfa_record import MfaRecord
from account_security.services.origin import UNKNOWN_ORIGIN, Origin

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_LOCKOUT = timedelta(minutes=30)

STATUS_DISABLED = "disabled"
STATUS_PENDING = "pending"
STATUS_LOCKED = "locked"
STATUS_ACTIVE = "active"


def _entry(
    action: str,
    now: datetime,
    origin: Origin,
    outcome: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "action": action,
        "timestamp": now.isoformat(),
        "ip_address": origin.ip_address,
        "user_agent": origin.user_agent,
        "outcome": outcome,
        "details": details or {},
    }


def _append(
    record: MfaRecord,
    action: str,
    now: datetime,
    origin: Origin | None,
    outcome: str = "success",
    details: dict[str, Any] | None = None,
) -> None:
    record.activity_log = [
        *(record.activity_log or []),
        _entry(action, now, origin or UNKNOWN_ORIGIN, outcome, details),
    ]
    record.updated_at = now


def new_record(
    *,
    user_id: str,
    tenant_id: str,
    secret: str,
    backup_code_digests: list[str],
    now: datetime,
    origin: Origin | None = None,
) -> MfaRecord:
    record = MfaRecord(
        id=uuid.uuid4(),
        user_id=user_id,
        tenant_id=tenant_id,
        secret=secret,
        is_enabled=False,
        is_verified=False,
        backup_codes=list(backup_code_digests),
        used_backup_codes=[],
        failed_attempts=0,
        locked_until=None,
        verified_at=None,
        last_used_at=None,
        activity_log=[],
        created_at=now,
        updated_at=now,
    )
    _append(record, "setup", now, origin, details={"backup_codes": len(backup_code_digests)})
    return record


def enable(record: MfaRecord, now: datetime, origin: Origin | None = None) -> MfaRecord:
    was_enabled = bool(record.is_enabled)
    record.is_enabled = True
    _append(record, "enable", now, origin, details={"changed": not was_enabled})
    return record


def disable(
    record: MfaRecord,
    now: datetime,
    origin: Origin | None = None,
    *,
    reason: str | None = None,
    disabled_by: str | None = None,
) -> MfaRecord:
    was_enabled = bool(record.is_enabled)
    record.is_enabled = False
    record.is_verified = False
    record.verified_at = None
    _append(
        record,
        "disable",
        now,
        origin,
        details={"changed": was_enabled, "reason": reason, "disabled_by": disabled_by},
    )
    return record


def is_locked(record: MfaRecord, now: datetime) -> bool:
    return record.locked_until is not None and record.locked_until > now


def lock_remaining_seconds(record: MfaRecord, now: datetime) -> int:
    if not is_locked(record, now):
        return 0
    return max(0, int((record.locked_until - now).total_seconds()))


def remaining_attempts(record: MfaRecord, max_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS) -> int:
    return max(0, max_attempts - (record.failed_attempts or 0))


def _was_disabled(record: MfaRecord) -> bool:
    return any(entry.get("action") == "disable" for entry in record.activity_log or [])


def mfa_status(record: MfaRecord | None, now: datetime) -> str:
    """``disabled`` / ``pending`` / ``locked`` / ``active``; locked is computed, never stored."""
    if record is None:
        return STATUS_DISABLED
    if not record.is_enabled and _was_disabled(record):
        return STATUS_DISABLED
    if is_locked(record, now):
        return STATUS_LOCKED
    if record.is_enabled and record.is_verified:
        return STATUS_ACTIVE
    return STATUS_PENDING


def release_expired_lock(record: MfaRecord, now: datetime) -> bool:
    """Clear a lock whose deadline has passed. Returns True when one was released.

    Not an auditable action on its own; the attempt that triggers it logs.
    """
    if record.locked_until is None or record.locked_until > now:
        return False
    record.locked_until = None
    record.failed_attempts = 0
    record.updated_at = now
    return True


def record_failed_attempt(
    record: MfaRecord,
    now: datetime,
    origin: Origin | None = None,
    *,
    action: str = "verify_totp",
    max_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
    lockout: timedelta = DEFAULT_LOCKOUT,
) -> MfaRecord:
    record.failed_attempts = (record.failed_attempts or 0) + 1
    locked = record.failed_attempts >= max_attempts
    if locked:
        record.locked_until = now + lockout
    _append(
        record,
        action,
        now,
        origin,
        outcome="failure",
        details={
            "failed_attempts": record.failed_attempts,
            "locked_until": record.locked_until.isoformat() if locked else None,
        },
    )
    return record


def mark_verified(record: MfaRecord, now: datetime, origin: Origin | None = None) -> MfaRecord:
    record.is_verified = True
    record.verified_at = now
    record.last_used_at = now
    record.failed_attempts = 0
    record.locked_until = None
    _append(record, "verify_totp", now, origin)
    return record


def consume_backup_code(
    record: MfaRecord,
    digest: str,
    now: datetime,
    origin: Origin | None = None,
) -> MfaRecord:
    if digest in (record.used_backup_codes or []):
        raise BackupCodeAlreadyUsed()
    if digest not in (record.backup_codes or []):
        raise ValueError("Backup code is not issued for this record")
    record.backup_codes = [code for code in record.backup_codes if code != digest]
    record.used_backup_codes = [*(record.used_backup_codes or []), digest]
    record.failed_attempts = 0
    record.locked_until = None
    record.last_used_at = now
    _append(
        record,
        "use_backup_code",
        now,
        origin,
        details={"remaining_backup_codes": len(record.backup_codes)},
    )
    return record


def replace_backup_codes(
    record: MfaRecord,
    digests: list[str],
    now: datetime,
    origin: Origin | None = None,
    *,
    reason: str | None = None,
) -> MfaRecord:
    record.backup_codes = list(digests)
    record.used_backup_codes = []
    _append(
        record,
        "regenerate_backup_codes",
        now,
        origin,
        details={"reason": reason, "backup_codes": len(digests)},
    )
    return record
