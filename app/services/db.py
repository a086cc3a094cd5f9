from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.config import Settings, load_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


class DatabaseNotConfiguredError(RuntimeError):
    """No database URL is configured for catalog access."""


def init_engine(settings: Settings | None = None) -> AsyncEngine:
    """Create the shared engine lazily; later calls return the same engine."""
    global _engine

    if _engine is not None:
        return _engine
    cfg = settings or load_settings()
    if not cfg.database_url:
        raise DatabaseNotConfiguredError("SPROC_CONTRACTS_DATABASE_URL is not set")
    _engine = create_async_engine(cfg.database_url, pool_pre_ping=True)
    logger.info("init_engine: dialect=%s", _engine.dialect.name)
    return _engine


def get_engine() -> AsyncEngine:
    return init_engine()


async def dispose_engine() -> None:
    global _engine

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    logger.info("dispose_engine: disposed")
