"""
Database configuration with async SQLAlchemy
Postgres (asyncpg) in production, SQLite (aiosqlite) for local dev and tests
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
import os
from dotenv import load_dotenv

load_dotenv()

# Database Configuration - Supabase/Postgres with SSL support
DATABASE_URL = os.getenv("DATABASE_URL") or os.getenv(
    'POSTGRES_URL',
    'sqlite+aiosqlite:///./jetsetters.db'  # SQLite for local dev only
)

# asyncpg wants the explicit driver in the URL
if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

engine_kwargs = {"echo": False, "pool_pre_ping": True}
if DATABASE_URL.startswith("postgresql"):
    engine_kwargs.update(
        pool_size=20,
        max_overflow=30,
        pool_recycle=3600,
        connect_args={
            "server_settings": {
                "application_name": "jetsetters_payments"
            }
        },
    )

# Create async engine
engine = create_async_engine(DATABASE_URL, **engine_kwargs)

# Create async session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Base class for all models
Base = declarative_base()


# Dependency for FastAPI
async def get_session():
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()

# Alias for compatibility
get_db = get_session


async def init_db():
    """Initialize database tables"""
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections"""
    await engine.dispose()
