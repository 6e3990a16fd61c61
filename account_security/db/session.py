from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from account_security.core.settings import settings
from account_security.db.url import normalize_database_url

engine = create_async_engine(
    normalize_database_url(settings.database_url), future=True, echo=False, pool_pre_ping=True
)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
