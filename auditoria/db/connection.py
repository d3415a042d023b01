"""
Database Connection Management
Async SQLAlchemy engine and session factory for live integration mode.
Source: https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html

Repositories receive the session maker and open one session per call, so the
module only keeps the shared engine and factory.
"""

from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from auditoria.core.config import AuditSettings, get_audit_settings
from auditoria.models import Base
from auditoria.utils.logging import get_logger

logger = get_logger(__name__)


_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def _engine_options(settings: AuditSettings) -> dict[str, Any]:
    if settings.DB_USE_NULL_POOL:
        # NullPool rejects pool sizing arguments
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_pre_ping": True,
    }


def get_engine(settings: Optional[AuditSettings] = None) -> AsyncEngine:
    """Shared engine, created on first use from AUDITORIA_DATABASE_URL."""
    global _engine
    if _engine is None:
        settings = settings or get_audit_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL, echo=settings.DB_ECHO, **_engine_options(settings)
        )
        # Credentials stay out of the log
        logger.info(f"Database engine created for {settings.DATABASE_URL.rsplit('@', 1)[-1]}")
    return _engine


def get_session_maker(
    settings: Optional[AuditSettings] = None,
) -> async_sessionmaker[AsyncSession]:
    """Shared session factory; sessions keep loaded rows usable after commit."""
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(settings),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_maker


async def create_schema() -> None:
    """Create the audit tables that do not exist yet."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Audit tables created")


async def drop_schema() -> None:
    """Drop every audit table."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Audit tables dropped")


async def check_db_connection() -> bool:
    """True when `SELECT 1` succeeds."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
    return True


async def close_db_connection() -> None:
    """Dispose of the pool; the next call to get_engine starts over."""
    global _engine, _session_maker
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_maker = None
    logger.info("Database connection pool closed")
