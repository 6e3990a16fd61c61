from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, TypeVar

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from account_security.core.errors import MfaAlreadyExists, MfaNotFound
from account_security.db.session import AsyncSessionLocal
from account_security.models.mfa_record import MfaRecord
from account_security.repositories.base import MfaCounts

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqlMfaStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self._sessionmaker = sessionmaker

    @staticmethod
    def _by_identity(user_id: str, tenant_id: str):
        return select(MfaRecord).where(MfaRecord.user_id == user_id, MfaRecord.tenant_id == tenant_id)

    async def get(self, user_id: str, tenant_id: str) -> MfaRecord | None:
        async with self._sessionmaker() as db:
            result = await db.execute(self._by_identity(user_id, tenant_id))
            return result.scalar_one_or_none()

    async def add(self, record: MfaRecord) -> MfaRecord:
        async with self._sessionmaker() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise MfaAlreadyExists(user_id=record.user_id, tenant_id=record.tenant_id) from exc
            return record

    async def mutate(self, user_id: str, tenant_id: str, fn: Callable[[MfaRecord], T]) -> T:
        async with self._sessionmaker() as db:
            async with db.begin():
                result = await db.execute(self._by_identity(user_id, tenant_id).with_for_update())
                record = result.scalar_one_or_none()
                if record is None:
                    raise MfaNotFound(user_id=user_id, tenant_id=tenant_id)
                return fn(record)

    async def release_expired_locks(self, now: datetime) -> int:
        stmt = (
            update(MfaRecord)
            .where(MfaRecord.locked_until.is_not(None), MfaRecord.locked_until <= now)
            .values(locked_until=None, failed_attempts=0, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._sessionmaker() as db:
            async with db.begin():
                result = await db.execute(stmt)
        released = result.rowcount or 0
        if released:
            logger.info("Released %s expired MFA locks", released)
        return released

    async def counts(self, tenant_id: str | None, now: datetime) -> MfaCounts:
        locked = and_(MfaRecord.locked_until.is_not(None), MfaRecord.locked_until > now)
        stmt = select(
            func.count(MfaRecord.id),
            func.count(MfaRecord.id).filter(MfaRecord.is_enabled.is_(True)),
            func.count(MfaRecord.id).filter(MfaRecord.is_verified.is_(True)),
            func.count(MfaRecord.id).filter(locked),
            func.coalesce(func.avg(MfaRecord.failed_attempts), 0),
        )
        if tenant_id is not None:
            stmt = stmt.where(MfaRecord.tenant_id == tenant_id)
        async with self._sessionmaker() as db:
            total, enabled, verified, locked_count, average = (await db.execute(stmt)).one()
        return MfaCounts(
            total=total,
            enabled=enabled,
            verified=verified,
            locked=locked_count,
            average_failed_attempts=round(float(average), 2),
        )
