"""
CTF Range Orchestrator - Persistence
Async SQLAlchemy engine, sessions and transaction scopes
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from ctfrange.core.config import Settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base shared by the range tables."""


class DatabaseManager:
    """
    Owns the engine and hands out sessions.

    PostgreSQL (asyncpg) in deployments; SQLite (aiosqlite) for tests and
    single-node trials, where one shared connection keeps an in-memory
    database alive between sessions.
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self._settings.database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected")
        return self._engine

    def _engine_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"echo": self._settings.database_echo}
        if self.is_sqlite:
            options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        else:
            options.update(
                pool_size=self._settings.database_pool_size,
                max_overflow=self._settings.database_max_overflow,
                pool_timeout=self._settings.database_pool_timeout,
                pool_pre_ping=True,
            )
        return options

    async def connect(self) -> None:
        """Create the engine and verify the database answers."""
        target = self._settings.database_url.rsplit("@", 1)[-1]
        logger.info("Opening database engine", target=target)

        self._engine = create_async_engine(self._settings.database_url, **self._engine_options())
        # Objects stay readable after commit; services return them to callers
        self._factory = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            autoflush=False,
        )

        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database ready", dialect=self._engine.dialect.name)

    async def create_schema(self) -> None:
        """Create missing tables."""
        from ctfrange.infrastructure import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured", tables=len(Base.metadata.tables))

    async def disconnect(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._factory = None
            logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Plain session for reads; nothing is committed."""
        if self._factory is None:
            raise RuntimeError("Database not connected")

        async with self._factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator["UnitOfWork", None]:
        """Session wrapped in a UnitOfWork that rolls back unless committed."""
        async with self.session() as session:
            async with UnitOfWork(session) as uow:
                yield uow

    @asynccontextmanager
    async def scope(
        self, session: Optional[AsyncSession] = None
    ) -> AsyncGenerator[AsyncSession, None]:
        """
        Transaction scope that joins a caller's session when given one.

        With no session, opens a unit of work and commits it on clean exit.
        With a session, the caller owns commit and rollback.
        """
        if session is not None:
            yield session
            return

        async with self.unit_of_work() as uow:
            yield uow.session
            await uow.commit()

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip a trivial query and report pool usage."""
        try:
            async with self.session() as session:
                await session.scalar(text("SELECT 1"))
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}

        report: Dict[str, Any] = {"status": "healthy"}
        if not self.is_sqlite and self._engine is not None:
            report["pool_size"] = self._engine.pool.size()
            report["checked_out"] = self._engine.pool.checkedout()
        return report


class UnitOfWork:
    """
    One transaction over a session.

    Leaving the block without ``commit()`` rolls everything back, including
    when an exception escapes.
    """

    def __init__(self, session: AsyncSession):
        self._session = session
        self._committed = False

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def committed(self) -> bool:
        return self._committed

    async def commit(self) -> None:
        await self._session.commit()
        self._committed = True

    async def flush(self) -> None:
        await self._session.flush()

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self._committed:
            await self._session.rollback()
