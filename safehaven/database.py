"""
Database plumbing for the webhook event log.

One lazily built async engine (asyncpg in production, aiosqlite in tests)
shared by request handlers, dispatcher workers and the retry sweep.
Sessions use expire_on_commit=False: rows committed in the request session
are read again by the worker after the request has returned.
"""
import logging
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine = None
_sessionmaker = None


class Base(DeclarativeBase):
    pass


def _build_engine():
    from safehaven.config import get_settings
    settings = get_settings()
    options = {"echo": settings.app_env == "development"}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    logger.info("Creating database engine (pool_size=%s)", options.get("pool_size", "default"))
    return create_async_engine(settings.database_url, **options)


def _sessions() -> async_sessionmaker:
    global _engine, _sessionmaker
    if _sessionmaker is None:
        _engine = _build_engine()
        _sessionmaker = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker


def async_session_factory() -> AsyncSession:
    """Fresh session outside a request: dispatcher workers, retry sweep."""
    return _sessions()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session, committed when the endpoint returns normally."""
    async with _sessions()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Rolling back request session: %s", str(e))
            await session.rollback()
            raise


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _sessionmaker = None
