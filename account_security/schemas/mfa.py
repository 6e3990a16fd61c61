from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class MfaSetupRequest(BaseModel):
    email: EmailStr
    issuer: str | None = Field(default=None, max_length=128)
    enable_immediately: bool = False


class MfaSetupResult(BaseModel):
    secret: str
    provisioning_uri: str
    manual_entry_key: str
    issuer: str
    label: str
    backup_codes: list[str]
    is_enabled: bool = False


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)


class MfaDisableRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class MfaRegenerateRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class MfaVerificationResult(BaseModel):
    """Wrong codes and lockouts are normal results, not errors."""

    success: bool
    message: str
    remaining_attempts: int | None = None
    locked_until: datetime | None = None
    retry_after_seconds: int | None = None
    remaining_backup_codes: int | None = None


class MfaBackupCodesResult(BaseModel):
    backup_codes: list[str]
    remaining_backup_codes: int


class MfaActivityEntry(BaseModel):
    action: str
    timestamp: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    outcome: str
    details: dict[str, Any] = Field(default_factory=dict)


class MfaStatusView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    tenant_id: str
    status: str
    is_enabled: bool
    is_verified: bool
    secret_hint: str
    remaining_backup_codes: int
    used_backup_codes: int
    failed_attempts: int
    remaining_attempts: int
    locked_until: datetime | None = None
    lock_remaining_seconds: int = 0
    verified_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    activity_log: list[MfaActivityEntry] = Field(default_factory=list)


class MfaStatistics(BaseModel):
    total: int
    enabled: int
    verified: int
    locked: int
    average_failed_attempts: float
