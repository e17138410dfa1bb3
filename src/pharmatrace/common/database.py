"""Async database manager and storage helpers for PharmaTrace (single-DB)."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Iterable

from sqlalchemy import event, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pharmatrace.common.config import PharmaTraceSettings, get_settings
from pharmatrace.common.exceptions import DuplicateKeyError
from pharmatrace.common.models import Base

# Import all model modules so Base.metadata is complete for create_all().
import pharmatrace.participants.models  # noqa: F401
import pharmatrace.batches.models  # noqa: F401
import pharmatrace.custody.models  # noqa: F401
import pharmatrace.resolution.models  # noqa: F401
import pharmatrace.signatures.models  # noqa: F401

logger = logging.getLogger(__name__)


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works on the sqlite drivers.

    Transactions start with ``BEGIN IMMEDIATE`` so concurrent writers queue on
    the busy timeout instead of failing a SHARED to RESERVED lock upgrade.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Manages a single async database engine."""

    def __init__(self, settings: PharmaTraceSettings | None = None):
        self._settings = settings or get_settings()
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        url = self._settings.db_url
        if url.startswith("sqlite"):
            database = make_url(url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_async_engine(url, echo=False)
        if url.startswith("sqlite"):
            _enable_sqlite_savepoints(self.engine)
        self._session_factory = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        if self.engine is None:
            raise RuntimeError("DatabaseManager not initialized — call init() first")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_factory = None


def duplicate_field(exc: IntegrityError, table: str, columns: Iterable[str]) -> str | None:
    """Return the first column of ``table`` named by a uniqueness violation, if any.

    Understands the sqlite ("UNIQUE constraint failed: table.column") and
    postgres ('Key (column)=...' / "uq_table_column") message shapes.
    """
    message = str(exc.orig) if exc.orig is not None else str(exc)
    lowered = message.lower()
    if "unique" not in lowered and "duplicate" not in lowered:
        return None
    for column in columns:
        needles = (f"{table}.{column}", f"({column})", f"uq_{table}_{column}")
        if any(needle in message for needle in needles):
            return column
    return None


async def insert_unique(
    session: AsyncSession, record: Base, table: str, columns: Iterable[str],
) -> None:
    """Insert ``record`` inside a savepoint, translating uniqueness violations.

    The storage constraint is the only uniqueness check; there is no
    read-before-write.
    """
    columns = list(columns)
    try:
        async with session.begin_nested():
            session.add(record)
    except IntegrityError as exc:
        field = duplicate_field(exc, table, columns)
        if field is None:
            raise
        raise DuplicateKeyError(field) from exc


async def write_best_effort(session: AsyncSession, record: Base, what: str) -> bool:
    """Insert a side-log record without ever failing the caller.

    The write runs in its own savepoint; on failure the savepoint is rolled
    back, the failure is logged and ``False`` is returned.
    """
    try:
        async with session.begin_nested():
            session.add(record)
    except SQLAlchemyError:
        logger.warning("Best-effort %s write failed", what, exc_info=True)
        return False
    return True
