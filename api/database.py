"""
Async database setup for PostgreSQL via SQLAlchemy + asyncpg.

Falls back to SQLite for local development if DATABASE_URL is not set.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from .models import Base

load_dotenv()


def normalize_database_url(url: str) -> str:
    """Point bare postgres URLs at the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


DATABASE_URL = normalize_database_url(os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./data/fundraising.db"
))


def make_engine(url: str):
    url = normalize_database_url(url)
    if url.startswith("sqlite") and ":///" in url and ":memory:" not in url:
        Path(url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(
        url,
        echo=False,
        poolclass=NullPool if "sqlite" in url else None,
    )


def make_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(DATABASE_URL)

async_session = make_session_factory(engine)


async def init_db(db_engine=None):
    """Create all tables (for development — use Alembic in production)."""
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
