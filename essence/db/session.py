from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
    AsyncSession
)
from essence.core.config import settings


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith('sqlite'):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


engine = build_engine(settings.database_url)


AsyncSessionLocal: async_sessionmaker[AsyncSession] = build_sessionmaker(engine)
