from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from mediaxform.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from mediaxform.modules.media.models import MediaObject  # noqa: F401


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create an async engine; in-memory SQLite shares one connection."""
    url = url or settings.DATABASE_URL
    if url in ("sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"):
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=False, future=True)


def build_session_maker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(bind: AsyncEngine):
    """Create all tables if they don't exist."""
    async with bind.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))
