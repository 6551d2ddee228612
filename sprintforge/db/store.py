"""
Durable Store
=============

Owns the engine and session factory for one database and provides the
single-writer write path used by every component:

    async def _insert(session):
        session.add(PatternModel(...))

    await store.write(_insert, label="create pattern")

`write()` serializes writers behind a per-store asyncio.Lock and retries
"database is locked" / "database is busy" contention with exponential backoff.
Once attempts are exhausted, or on any other database error, a
PersistenceError is raised. SQLAlchemy exceptions never escape this module.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sprintforge.concurrency import retry_async
from sprintforge.config import OrchestrationConfig
from sprintforge.db.connection import (
    create_engine,
    create_session_maker,
    create_tables,
    project_database_url,
)
from sprintforge.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONTENTION_MARKERS = ("database is locked", "database is busy", "database table is locked")


def is_contention_error(exc: BaseException) -> bool:
    """True for SQLite lock/busy errors that are worth retrying."""
    if not isinstance(exc, OperationalError):
        return False
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _CONTENTION_MARKERS)


class DurableStore:
    """Async SQLAlchemy store with a lock-with-retry write primitive."""

    def __init__(
        self,
        database_url: str,
        *,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.05,
    ):
        self.database_url = database_url
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._engine = create_engine(database_url)
        self._session_maker = create_session_maker(self._engine)
        self._write_lock = asyncio.Lock()

    @classmethod
    def for_project(
        cls,
        project_path: Path,
        config: Optional[OrchestrationConfig] = None,
    ) -> "DurableStore":
        config = config or OrchestrationConfig()
        url = config.database_url or project_database_url(project_path)
        return cls(
            url,
            retry_attempts=config.store_retry_attempts,
            retry_base_delay=config.store_retry_base_delay,
        )

    async def init(self) -> "DurableStore":
        """Create tables if they don't exist."""
        try:
            await create_tables(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError("create tables", 1, e) from e
        return self

    async def close(self) -> None:
        await self._engine.dispose()

    @property
    def write_locked(self) -> bool:
        return self._write_lock.locked()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session for reads. Database errors become PersistenceError."""
        async with self._session_maker() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                raise PersistenceError("read", 1, e) from e

    async def read(self, operation: Callable[[AsyncSession], Awaitable[T]], *, label: str = "read") -> T:
        async with self._session_maker() as session:
            try:
                return await operation(session)
            except SQLAlchemyError as e:
                raise PersistenceError(label, 1, e) from e

    async def write(self, operation: Callable[[AsyncSession], Awaitable[T]], *, label: str = "write") -> T:
        """
        Run `operation` in its own transaction while holding the write lock.

        Each attempt gets a fresh session; a failed attempt is rolled back
        before the next one starts.
        """

        async def attempt() -> T:
            async with self._session_maker() as session:
                try:
                    result = await operation(session)
                    await session.commit()
                    return result
                except Exception:
                    await session.rollback()
                    raise

        def exhausted(exc: BaseException, attempts: int) -> PersistenceError:
            logger.error("%s failed after %d attempt(s): %s", label, attempts, exc)
            return PersistenceError(label, attempts, exc)

        async with self._write_lock:
            try:
                return await retry_async(
                    attempt,
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    is_retryable=is_contention_error,
                    label=label,
                    on_exhausted=exhausted,
                )
            except SQLAlchemyError as e:
                raise PersistenceError(label, 1, e) from e
