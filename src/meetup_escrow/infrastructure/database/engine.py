"""Async database engine and persistence store wiring.

Provides:
    - get_engine: The SQLAlchemy async engine (lazy singleton).
    - get_store: The SqlAlchemyPersistenceStore bound to that engine.
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

PostgreSQL (asyncpg) in production; SQLite (aiosqlite) for tests and the
simulation script, where pool sizing options do not apply.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from meetup_escrow.config import get_settings
from meetup_escrow.infrastructure.database.orm_models import Base
from meetup_escrow.infrastructure.database.repositories import SqlAlchemyPersistenceStore
from meetup_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from meetup_escrow.config import Settings

logger = get_logger(__name__)

# Module-level singletons (initialized in init_db)
_engine: AsyncEngine | None = None
_store: SqlAlchemyPersistenceStore | None = None


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine with options suited to the backend."""
    settings = settings or get_settings()
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.db_echo_sql)
    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=settings.db_echo_sql,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, settings)
        logger.info(
            "database.engine_created",
            dialect=_engine.dialect.name,
            pool_size=settings.db_pool_size,
        )
    return _engine


def get_store() -> SqlAlchemyPersistenceStore:
    """Get or create the persistence store (lazy singleton)."""
    global _store
    if _store is None:
        _store = SqlAlchemyPersistenceStore.from_engine(
            get_engine(), initial_trust_score=get_settings().initial_trust_score
        )
    return _store


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. Outside development the schema
    is expected to exist already.
    """
    engine = get_engine()
    settings = get_settings()

    if settings.is_development:
        await create_tables(engine)
        logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _store
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _store = None
