"""
Forge Service Database

Database connection and session management.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
import structlog
import os

from .config import ForgeSettings
from .forge_jobs.models import ForgeJob  # noqa: F401  (registers the table)

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager for the Forge service.

    Uses async SQLModel with asyncpg in production. SQLite URLs (tests,
    local runs) share one connection so in-memory databases persist.
    """

    def __init__(self, settings: ForgeSettings) -> None:
        self._settings = settings
        url = settings.postgres_dsn
        if url.startswith("sqlite"):
            self._engine: AsyncEngine = create_async_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            self._engine = create_async_engine(
                url,
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=15,
                echo=False,
            )
        self._session_factory = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel models.
        Set SKIP_INIT_MODELS=true to skip this when migrations manage the schema.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("init_models_skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("forge_tables_initialized")

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
