"""
Dimeloc Database Session Management

Async SQLAlchemy engine and session factory, owned by a Database object
with an explicit open/close lifecycle. The FastAPI lifespan opens one
instance at startup and stores it on app.state.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


class Database:
    """Long-lived connection handle for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    async def open(self) -> None:
        if self._engine is not None:
            return
        engine_kwargs = {"echo": self.echo, "pool_pre_ping": True}
        # SQLite (aiosqlite) does not accept queue-pool sizing
        if not self.url.startswith("sqlite"):
            engine_kwargs.update(pool_size=20, max_overflow=10)
        self._engine = create_async_engine(self.url, **engine_kwargs)
        self._sessionmaker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create missing tables."""
        import db.models  # noqa: F401  registers tables on Base.metadata

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        return self._sessionmaker()
