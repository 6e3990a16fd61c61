from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGOUT = "LOGOUT"
    PASSWORD_RESET = "PASSWORD_RESET"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"

    MFA_SETUP = "MFA_SETUP"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    MFA_VERIFICATION_SUCCESS = "MFA_VERIFICATION_SUCCESS"
    MFA_VERIFICATION_FAILED = "MFA_VERIFICATION_FAILED"
    MFA_LOCKED = "MFA_LOCKED"
    MFA_BACKUP_CODE_USED = "MFA_BACKUP_CODE_USED"
    MFA_BACKUP_CODES_REGENERATED = "MFA_BACKUP_CODES_REGENERATED"

    SESSION_CREATED = "SESSION_CREATED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_HIJACKING_ATTEMPT = "SESSION_HIJACKING_ATTEMPT"
    SESSION_SECURITY_FLAG_ADDED = "SESSION_SECURITY_FLAG_ADDED"
    SUSPICIOUS_SESSION = "SUSPICIOUS_SESSION"

    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    ROLE_CHANGED = "ROLE_CHANGED"

    DATA_ACCESS = "DATA_ACCESS"
    SENSITIVE_DATA_ACCESS = "SENSITIVE_DATA_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"
    DATA_DELETION = "DATA_DELETION"

    SYSTEM_ERROR = "SYSTEM_ERROR"
    CONFIGURATION_CHANGE = "CONFIGURATION_CHANGE"
    BACKUP_CREATED = "BACKUP_CREATED"
    SYSTEM_RESTART = "SYSTEM_RESTART"

    IP_BLOCKED = "IP_BLOCKED"
    DDOS_ATTEMPT = "DDOS_ATTEMPT"
    PORT_SCAN = "PORT_SCAN"
    SUSPICIOUS_IP = "SUSPICIOUS_IP"

    UNKNOWN = "UNKNOWN"


class SecurityEvent(BaseModel):
    """Transient event value; ``severity`` and ``timestamp`` are filled by the recorder."""

    event_type: str
    user_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    resource: str = "system"
    action: str = "unknown"
    outcome: Outcome = Outcome.SUCCESS
    severity: Severity | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None


class SecurityEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    tenant_id: str | None = None
    user_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    resource: str
    action: str
    outcome: Outcome
    severity: Severity
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class SecurityEventFilters(BaseModel):
    event_type: str | None = None
    user_id: str | None = None
    severity: Severity | None = None
    outcome: Outcome | None = None
    ip_address: str | None = None
    occurred_from: datetime | None = None
    occurred_to: datetime | None = None


class SecurityEventListResponse(BaseModel):
    items: list[SecurityEventOut]
    total: int
    page: int
    limit: int


class SecurityEventStats(BaseModel):
    total: int
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)


class SecurityAlertRequest(BaseModel):
    alert_type: str = Field(min_length=1, max_length=64)
    severity: Severity = Severity.HIGH
    message: str = Field(min_length=1, max_length=1024)
    details: dict[str, Any] = Field(default_factory=dict)


class SecurityAlert(BaseModel):
    alert_type: str
    severity: Severity
    message: str
    tenant_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
