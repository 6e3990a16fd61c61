"""Persistence ports for the account-security core.

Services depend on these protocols only. ``mutate`` is the single write path
for an existing record: the implementation loads the record under a per-record
lock, hands it to ``fn``, and persists whatever ``fn`` left behind. If ``fn``
raises, nothing is written.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol, TypeVar
from uuid import UUID

from account_security.models.mfa_record import MfaRecord
from account_security.models.user_session import UserSession
from account_security.schemas.security_events import SecurityEvent, SecurityEventFilters
from account_security.schemas.sessions import SessionFilters

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ExpiredSession:
    id: UUID
    user_id: str
    tenant_id: str
    ip_address: str | None = None


@dataclass(frozen=True, slots=True)
class MfaCounts:
    total: int
    enabled: int
    verified: int
    locked: int
    average_failed_attempts: float


@dataclass(frozen=True, slots=True)
class SessionCounts:
    total: int
    active: int
    expired: int
    terminated: int


class MfaStore(Protocol):
    async def get(self, user_id: str, tenant_id: str) -> MfaRecord | None: ...

    async def add(self, record: MfaRecord) -> MfaRecord:
        """Insert; raises ``MfaAlreadyExists`` when (user_id, tenant_id) is taken."""
        ...

    async def mutate(self, user_id: str, tenant_id: str, fn: Callable[[MfaRecord], T]) -> T:
        """Raises ``MfaNotFound`` when no record exists."""
        ...

    async def release_expired_locks(self, now: datetime) -> int: ...

    async def counts(self, tenant_id: str | None, now: datetime) -> MfaCounts: ...


class SessionStore(Protocol):
    async def add(self, record: UserSession) -> UserSession: ...

    async def get(self, session_id: UUID) -> UserSession | None: ...

    async def mutate(self, session_id: UUID, fn: Callable[[UserSession], T]) -> T:
        """Raises ``SessionNotFound`` when no record exists."""
        ...

    async def expire_sessions(self, now: datetime) -> list[ExpiredSession]:
        """Single conditional update: active and past expiry becomes terminated."""
        ...

    async def list(
        self,
        tenant_id: str,
        filters: SessionFilters,
        page: int,
        limit: int,
    ) -> tuple[list[UserSession], int]: ...

    async def active_for_user(self, user_id: str, tenant_id: str, now: datetime) -> list[UserSession]: ...

    async def count_active_for_user(self, user_id: str, tenant_id: str, now: datetime) -> int: ...

    async def count_for_user(self, user_id: str, tenant_id: str) -> int: ...

    async def count_active_for_ip(self, ip_address: str, tenant_id: str, now: datetime) -> int: ...

    async def counts(self, tenant_id: str | None, now: datetime) -> SessionCounts: ...


class SecurityEventStore(Protocol):
    async def add(self, event: SecurityEvent) -> Any: ...

    async def list(
        self,
        tenant_id: str,
        filters: SecurityEventFilters,
        page: int,
        limit: int,
    ) -> tuple[list[Any], int]: ...

    async def counts(
        self, tenant_id: str, since: datetime | None = None
    ) -> tuple[dict[str, int], dict[str, int]]:
        """Returns (by_severity, by_type)."""
        ...
