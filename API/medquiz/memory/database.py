from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from medquiz.core.settings import settings


def build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        # aiosqlite connections are bound to the loop that opened them.
        return create_async_engine(url, poolclass=NullPool)
    return create_async_engine(url, pool_pre_ping=True)


engine = build_engine(settings.database_url)
SessionLocal = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
