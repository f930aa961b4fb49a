"""Async engine and session factory."""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from prepaid_meter.storage.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine; hands out sessions to the services."""

    def __init__(self, url: str, echo: bool = False) -> None:
        self._url = url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    @property
    def url(self) -> str:
        return self._url

    async def connect(self) -> None:
        """Create the engine and any missing tables."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self._url, echo=self._echo)
        self._session_maker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database ready (%s)", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            logger.info("Database closed")

    def session(self) -> AsyncSession:
        if self._session_maker is None:
            raise RuntimeError("Database is not connected")
        return self._session_maker()
