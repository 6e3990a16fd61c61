from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from account_security.db.session import AsyncSessionLocal
from account_security.models.security_event import SecurityEventLog
from account_security.schemas.security_events import SecurityEvent, SecurityEventFilters


def _apply_filters(stmt, tenant_id: str, filters: SecurityEventFilters):
    stmt = stmt.where(SecurityEventLog.tenant_id == tenant_id)
    if filters.event_type:
        stmt = stmt.where(SecurityEventLog.event_type == filters.event_type)
    if filters.user_id:
        stmt = stmt.where(SecurityEventLog.user_id == filters.user_id)
    if filters.severity:
        stmt = stmt.where(SecurityEventLog.severity == filters.severity.value)
    if filters.outcome:
        stmt = stmt.where(SecurityEventLog.outcome == filters.outcome.value)
    if filters.ip_address:
        stmt = stmt.where(SecurityEventLog.ip_address == filters.ip_address)
    if filters.occurred_from:
        stmt = stmt.where(SecurityEventLog.occurred_at >= filters.occurred_from)
    if filters.occurred_to:
        stmt = stmt.where(SecurityEventLog.occurred_at <= filters.occurred_to)
    return stmt


class SqlSecurityEventStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self._sessionmaker = sessionmaker

    async def add(self, event: SecurityEvent) -> SecurityEventLog:
        row = SecurityEventLog(
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            user_id=event.user_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            resource=event.resource,
            action=event.action,
            outcome=event.outcome.value,
            severity=event.severity.value,
            details=event.model_dump(mode="json")["details"],
            occurred_at=event.timestamp,
        )
        async with self._sessionmaker() as db:
            db.add(row)
            await db.commit()
            return row

    async def list(
        self,
        tenant_id: str,
        filters: SecurityEventFilters,
        page: int,
        limit: int,
    ) -> tuple[list[SecurityEventLog], int]:
        stmt = _apply_filters(select(SecurityEventLog), tenant_id, filters)
        count_stmt = _apply_filters(select(func.count(SecurityEventLog.id)), tenant_id, filters)
        async with self._sessionmaker() as db:
            total = (await db.execute(count_stmt)).scalar_one()
            result = await db.execute(
                stmt.order_by(SecurityEventLog.occurred_at.desc()).offset((page - 1) * limit).limit(limit)
            )
            return list(result.scalars().all()), total

    async def counts(
        self, tenant_id: str, since: datetime | None = None
    ) -> tuple[dict[str, int], dict[str, int]]:
        async def _grouped(column) -> dict[str, int]:
            stmt = select(column, func.count(SecurityEventLog.id)).where(SecurityEventLog.tenant_id == tenant_id)
            if since is not None:
                stmt = stmt.where(SecurityEventLog.occurred_at >= since)
            async with self._sessionmaker() as db:
                rows = (await db.execute(stmt.group_by(column))).all()
            return {key: count for key, count in rows}

        return await _grouped(SecurityEventLog.severity), await _grouped(SecurityEventLog.event_type)
