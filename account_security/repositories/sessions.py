from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from account_security.core.errors import SessionNotFound
from account_security.db.session import AsyncSessionLocal
from account_security.models.user_session import UserSession
from account_security.repositories.base import ExpiredSession, SessionCounts
from account_security.schemas.sessions import SessionFilters

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPIRED_REASON = "expired"
SYSTEM_ACTOR = "system"


def _apply_filters(stmt, tenant_id: str, filters: SessionFilters):
    stmt = stmt.where(UserSession.tenant_id == tenant_id)
    if filters.user_id:
        stmt = stmt.where(UserSession.user_id == filters.user_id)
    if filters.session_token:
        stmt = stmt.where(UserSession.session_token == filters.session_token)
    if filters.ip_address:
        stmt = stmt.where(UserSession.ip_address == filters.ip_address)
    if filters.fingerprint:
        stmt = stmt.where(UserSession.fingerprint == filters.fingerprint)
    if filters.is_active is not None:
        stmt = stmt.where(UserSession.is_active.is_(filters.is_active))
    if filters.security_flag:
        stmt = stmt.where(UserSession.security_flags.contains([filters.security_flag]))
    if filters.created_from:
        stmt = stmt.where(UserSession.created_at >= filters.created_from)
    if filters.created_to:
        stmt = stmt.where(UserSession.created_at <= filters.created_to)
    if filters.last_activity_from:
        stmt = stmt.where(UserSession.last_activity >= filters.last_activity_from)
    if filters.last_activity_to:
        stmt = stmt.where(UserSession.last_activity <= filters.last_activity_to)
    return stmt


def _live(now: datetime):
    return and_(UserSession.is_active.is_(True), UserSession.expires_at > now)


class SqlSessionStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self._sessionmaker = sessionmaker

    async def add(self, record: UserSession) -> UserSession:
        async with self._sessionmaker() as db:
            db.add(record)
            await db.commit()
            return record

    async def get(self, session_id: UUID) -> UserSession | None:
        async with self._sessionmaker() as db:
            return await db.get(UserSession, session_id)

    async def mutate(self, session_id: UUID, fn: Callable[[UserSession], T]) -> T:
        stmt = select(UserSession).where(UserSession.id == session_id).with_for_update()
        async with self._sessionmaker() as db:
            async with db.begin():
                record = (await db.execute(stmt)).scalar_one_or_none()
                if record is None:
                    raise SessionNotFound(session_id=str(session_id))
                return fn(record)

    async def expire_sessions(self, now: datetime) -> list[ExpiredSession]:
        # The filter is the guard: a row already terminated by a concurrent
        # writer no longer matches once its lock is released.
        stmt = (
            update(UserSession)
            .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
            .values(
                is_active=False,
                terminated_at=now,
                terminated_by=SYSTEM_ACTOR,
                termination_reason=EXPIRED_REASON,
            )
            .returning(UserSession.id, UserSession.user_id, UserSession.tenant_id, UserSession.ip_address)
            .execution_options(synchronize_session=False)
        )
        async with self._sessionmaker() as db:
            async with db.begin():
                rows = (await db.execute(stmt)).all()
        return [
            ExpiredSession(id=row.id, user_id=row.user_id, tenant_id=row.tenant_id, ip_address=row.ip_address)
            for row in rows
        ]

    async def list(
        self,
        tenant_id: str,
        filters: SessionFilters,
        page: int,
        limit: int,
    ) -> tuple[list[UserSession], int]:
        column = getattr(UserSession, filters.sort_by)
        order = column.asc() if filters.sort_order == "asc" else column.desc()
        stmt = _apply_filters(select(UserSession), tenant_id, filters)
        count_stmt = _apply_filters(select(func.count(UserSession.id)), tenant_id, filters)
        async with self._sessionmaker() as db:
            total = (await db.execute(count_stmt)).scalar_one()
            result = await db.execute(stmt.order_by(order).offset((page - 1) * limit).limit(limit))
            return list(result.scalars().all()), total

    async def active_for_user(self, user_id: str, tenant_id: str, now: datetime) -> list[UserSession]:
        stmt = (
            select(UserSession)
            .where(UserSession.user_id == user_id, UserSession.tenant_id == tenant_id, _live(now))
            .order_by(UserSession.created_at.desc())
        )
        async with self._sessionmaker() as db:
            return list((await db.execute(stmt)).scalars().all())

    async def _count(self, *conditions) -> int:
        stmt = select(func.count(UserSession.id)).where(*conditions)
        async with self._sessionmaker() as db:
            return (await db.execute(stmt)).scalar_one()

    async def count_active_for_user(self, user_id: str, tenant_id: str, now: datetime) -> int:
        return await self._count(UserSession.user_id == user_id, UserSession.tenant_id == tenant_id, _live(now))

    async def count_for_user(self, user_id: str, tenant_id: str) -> int:
        return await self._count(UserSession.user_id == user_id, UserSession.tenant_id == tenant_id)

    async def count_active_for_ip(self, ip_address: str, tenant_id: str, now: datetime) -> int:
        return await self._count(
            UserSession.ip_address == ip_address, UserSession.tenant_id == tenant_id, _live(now)
        )

    async def counts(self, tenant_id: str | None, now: datetime) -> SessionCounts:
        expired = and_(UserSession.is_active.is_(True), UserSession.expires_at <= now)
        stmt = select(
            func.count(UserSession.id),
            func.count(UserSession.id).filter(_live(now)),
            func.count(UserSession.id).filter(expired),
            func.count(UserSession.id).filter(UserSession.is_active.is_(False)),
        )
        if tenant_id is not None:
            stmt = stmt.where(UserSession.tenant_id == tenant_id)
        async with self._sessionmaker() as db:
            total, active, expired_count, terminated = (await db.execute(stmt)).one()
        return SessionCounts(total=total, active=active, expired=expired_count, terminated=terminated)
