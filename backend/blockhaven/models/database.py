"""Database configuration and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy import DDL, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./blockhaven.db"

Base = declarative_base()

# Catalog tables whose updated_at is owned by the database, not the ORM
TIMESTAMPED_CATALOG_TABLES = ("currencies", "exchange_pairs")


class Database:
    """Storage handle owning the engine and the session factory.

    Opened once at process start, closed at shutdown. Every unit of work
    acquires its own session through ``session()``.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> None:
        """Create the engine and session factory."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, echo=self.echo)
        self._session_maker = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info(f"Database engine created for {self._engine.url.render_as_string(hide_password=True)}")

    async def create_all(self) -> None:
        """Create all tables (and catalog triggers) that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Dispose of the engine and every pooled connection."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Acquire a session for one unit of work."""
        if self._session_maker is None:
            raise RuntimeError("Database is not open")
        async with self._session_maker() as session:
            yield session


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions."""
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session


def _install_updated_at_triggers() -> None:
    """Attach updated_at refresh triggers to the catalog tables.

    PostgreSQL uses a shared plpgsql function with a BEFORE UPDATE trigger;
    SQLite rewrites the row's updated_at in an AFTER UPDATE trigger.
    """
    pg_function = DDL(
        "CREATE OR REPLACE FUNCTION update_updated_at_column() "
        "RETURNS TRIGGER AS $$ "
        "BEGIN NEW.updated_at = NOW(); RETURN NEW; END; "
        "$$ language 'plpgsql'"
    )

    for table_name in TIMESTAMPED_CATALOG_TABLES:
        table = Base.metadata.tables[table_name]
        trigger_name = f"update_{table_name}_updated_at"

        event.listen(table, "after_create", pg_function.execute_if(dialect="postgresql"))
        event.listen(
            table,
            "after_create",
            DDL(
                f"CREATE TRIGGER {trigger_name} BEFORE UPDATE ON {table_name} "
                f"FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()"
            ).execute_if(dialect="postgresql"),
        )
        event.listen(
            table,
            "after_create",
            DDL(
                f"CREATE TRIGGER {trigger_name} AFTER UPDATE ON {table_name} "
                f"FOR EACH ROW WHEN NEW.updated_at IS OLD.updated_at "
                f"BEGIN UPDATE {table_name} SET updated_at = CURRENT_TIMESTAMP "
                f"WHERE id = NEW.id; END"
            ).execute_if(dialect="sqlite"),
        )
