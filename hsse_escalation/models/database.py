"""Database engine, session factory and declarative base."""

from typing import Any, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from hsse_escalation.config import settings


class Base(DeclarativeBase):
    """Declarative base for all escalation tables."""


def build_engine(database_url: Optional[str] = None, **kwargs: Any) -> AsyncEngine:
    """Create an async engine; SQLite connections enforce foreign keys."""
    url = database_url or settings.DATABASE_URL
    engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}
    engine_kwargs.update(kwargs)
    new_engine = create_async_engine(url, **engine_kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(new_engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):  # noqa: ANN001
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


async def create_tables(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables that do not exist yet."""
    # Model modules must be imported so their tables register on Base.metadata
    from hsse_escalation.models import history, rule  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
