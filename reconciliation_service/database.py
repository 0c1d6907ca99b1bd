from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from reconciliation_service.errors import ConfigurationError

Base = declarative_base()

engine = None
AsyncSessionLocal = None


def configure_engine(database_url: str):
    global engine, AsyncSessionLocal
    engine = create_async_engine(database_url, pool_pre_ping=True)
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return engine


async def init_db():
    """Create tables directly; deployed databases are migrated with alembic instead."""
    if engine is None:
        raise ConfigurationError("Database engine not configured")
    # models must be imported so their tables are registered on Base.metadata
    from reconciliation_service import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    if AsyncSessionLocal is None:
        raise ConfigurationError("Database engine not configured")
    async with AsyncSessionLocal() as session:
        yield session


async def dispose_engine():
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None
