from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    EXPIRED = "expired"
    TERMINATED = "terminated"


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    country: str = "Unknown"
    region: str = "Unknown"
    city: str = "Unknown"
    latitude: float = 0.0
    longitude: float = 0.0
    timezone: str = "UTC"


class DeviceInfo(BaseModel):
    fingerprint: str
    device_type: str = "desktop"
    browser: str = "unknown"
    browser_version: str = "unknown"
    os: str = "unknown"
    os_version: str = "unknown"
    screen_resolution: str | None = None
    timezone: str | None = None
    language: str | None = None


class DeviceSignals(BaseModel):
    screen_resolution: str | None = Field(default=None, max_length=32)
    timezone: str | None = Field(default=None, max_length=64)
    language: str | None = Field(default=None, max_length=32)
    plugins: list[str] = Field(default_factory=list)


class SessionActivity(BaseModel):
    action: str
    timestamp: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class SessionView(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    user_id: str
    tenant_id: str
    ip_address: str
    user_agent: str
    device_info: DeviceInfo
    location: Location
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool
    terminated_by: str | None = None
    terminated_at: datetime | None = None
    termination_reason: str | None = None
    security_flags: list[str] = Field(default_factory=list)
    activity_log: list[SessionActivity] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("session_metadata", "metadata"),
    )
    status: SessionStatus = SessionStatus.ACTIVE


class SessionCreated(SessionView):
    session_token: str
    anomalies: list[str] = Field(default_factory=list)


class SessionCreateRequest(BaseModel):
    user_agent: str | None = Field(default=None, max_length=1024)
    ip_address: str | None = Field(default=None, max_length=64)
    session_token: str | None = Field(default=None, min_length=32, max_length=255)
    expires_at: datetime | None = None
    device_signals: DeviceSignals | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionTerminateRequest(BaseModel):
    reason: str = Field(default="logout", min_length=1, max_length=255)


class SessionFlagRequest(BaseModel):
    flag: str = Field(min_length=1, max_length=64)
    reason: str | None = Field(default=None, max_length=255)


class SessionFilters(BaseModel):
    user_id: str | None = None
    session_token: str | None = None
    ip_address: str | None = None
    fingerprint: str | None = None
    is_active: bool | None = None
    security_flag: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    last_activity_from: datetime | None = None
    last_activity_to: datetime | None = None
    sort_by: Literal["created_at", "last_activity", "expires_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class SessionListResponse(BaseModel):
    items: list[SessionView]
    total: int
    page: int
    limit: int


class SessionStatistics(BaseModel):
    total: int
    active: int
    expired: int
    terminated: int


class SweepResult(BaseModel):
    expired: int
    released_locks: int = 0
