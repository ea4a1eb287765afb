"""Async database engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from marketscan.config import settings
from marketscan.db.models import Base

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_models(bind: AsyncEngine | None = None):
    """Create any missing tables. Alembic owns migrations in production."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
