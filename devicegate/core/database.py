"""
Async database engine & request-scoped sessions.

`get_db` is the FastAPI dependency every controller uses: one
session per request, committed when the handler returns normally and
rolled back when it raises.  Services only ever `flush()`.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from devicegate.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def dialect_name(db: AsyncSession) -> str:
    return db.bind.dialect.name


def dialect_insert(db: AsyncSession):
    """
    Return the dialect-specific `insert` construct for the session's
    bind, so ON CONFLICT statements work on PostgreSQL (production) and
    SQLite (tests) alike.
    """
    if dialect_name(db) == "sqlite":
        return sqlite.insert
    return postgresql.insert
