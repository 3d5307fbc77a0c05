"""Database connection and session management."""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.config import Settings
from storefront.database.models import Base


class Database:
    """
    Owns the async engine and session factory for one process.

    Constructed by the application lifespan and handed to the repositories.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs: Any) -> None:
        """
        Initialize the engine.

        Args:
            url: Async SQLAlchemy database URL
            echo: Echo SQL statements
            **engine_kwargs: Extra arguments for create_async_engine
        """
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **engine_kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """
        Build a database from application settings.

        SQLite does not accept pool sizing arguments, so they are only
        passed for server databases.
        """
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_recycle=3600,  # Recycle connections after 1 hour
            )
        return cls(settings.database_url, echo=settings.database_echo, **kwargs)

    async def create_all(self) -> None:
        """Create all tables defined in models if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        """Drop all tables. Intended for tests."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
