"""
SQLAlchemy database models and configuration.

Architecture Decision: Why SQLAlchemy?
- Supports async operations for non-blocking database access
- Atomic per-key writes without hand-managing a file format
- The same engine works in-memory for tests

Local state is a set of independently keyed JSON documents (session, timer
snapshot, history). There is no cross-key transaction.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Base class for all models
class Base(DeclarativeBase):
    pass


class KeyValueModel(Base):
    """One JSON document per key"""
    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)


class DatabaseEngine:
    """
    Manages database connection and session lifecycle.

    Constructed once by the application bootstrap and handed to repositories.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables in the database"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_session(self) -> AsyncSession:
        """Get a new database session"""
        return self.session_factory()

    async def dispose(self):
        await self.engine.dispose()


async def init_db(db_url: str) -> DatabaseEngine:
    """Create the engine and its tables"""
    engine = DatabaseEngine(db_url)
    await engine.create_tables()
    return engine
