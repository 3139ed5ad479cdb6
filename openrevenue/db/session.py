"""
Database Sessions
=================

Engine and session factory singletons plus the two FastAPI session
dependencies:

- ``get_db``: one session per request, committed when the handler
  returns and rolled back when it raises.
- ``get_lazy_db``: a ``LazyDB`` that only opens a session on first
  ``await lazy_db.get()``.  Customer-info reads use it so a projection
  cache hit never checks out a connection.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from openrevenue.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

# PostgreSQL pool; SQLite keeps driver defaults
POOL_OPTIONS = {
    "pool_size": 20,
    "max_overflow": 40,
    "pool_recycle": 300,
    "pool_use_lifo": True,
    "pool_timeout": 30,
}


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it from ``DATABASE_URL``."""
    global _engine

    if _engine is None:
        url = settings.database_url_async
        if not url:
            raise ValueError("DATABASE_URL is not set")

        options = {} if url.startswith("sqlite") else POOL_OPTIONS
        _engine = create_async_engine(url, echo=settings.DATABASE_ECHO, **options)
        logger.info("Database engine created (%s)", url.split("://", 1)[0])

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _session_factory


def configure_engine(engine: Optional[AsyncEngine]) -> None:
    """Install an engine built elsewhere (tests, scripts); ``None`` resets."""
    global _engine, _session_factory
    _engine = engine
    _session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    Services that must reach a durable point before writing the cache
    commit on their own; the closing commit then has nothing to do.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


class LazyDB:
    """A session that is only created when someone asks for it."""

    def __init__(self) -> None:
        self._session: Optional[AsyncSession] = None

    @property
    def opened(self) -> bool:
        return self._session is not None

    async def get(self) -> AsyncSession:
        if self._session is None:
            self._session = get_session_factory()()
        return self._session

    async def close(self, *, commit: bool = True) -> None:
        """Finish and release the session, if one was opened."""
        session, self._session = self._session, None
        if session is None:
            return
        try:
            if commit:
                await session.commit()
            else:
                await session.rollback()
        finally:
            await session.close()


async def get_lazy_db() -> AsyncGenerator[LazyDB, None]:
    """
    Lazy request-scoped session.

    Usage::

        async def handler(lazy_db: Annotated[LazyDB, Depends(get_lazy_db)]):
            db = await lazy_db.get()
    """
    lazy = LazyDB()
    try:
        yield lazy
    except Exception:
        await lazy.close(commit=False)
        raise
    await lazy.close()


async def create_all() -> None:
    """Create every table from model metadata (local bootstrap and tests)."""
    from openrevenue.db.base import Base
    import openrevenue.models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Check connectivity at startup and open a few pooled connections."""
    engine = get_engine()

    # SQLite pools have no size()
    size = getattr(engine.pool, "size", lambda: 1)()
    opened = []
    try:
        for _ in range(min(3, size)):
            conn = await engine.connect()
            await conn.execute(text("SELECT 1"))
            opened.append(conn)
    except Exception as exc:
        logger.warning("Database warmup stopped early: %s", exc)
    finally:
        for conn in opened:
            await conn.close()

    print(f"✅ Database ready ({len(opened)} pooled connections)")


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    print("✅ Database engine disposed")
