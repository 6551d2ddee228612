"""
Database Connection Setup
=========================

Builds the async engine for a project-specific SQLite database.
The database file is stored in .sprintforge/project.db within the project root.
"""

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from sprintforge.db.models import Base

DB_DIRNAME = ".sprintforge"
DB_FILENAME = "project.db"


def project_database_url(project_path: Path) -> str:
    """Return the SQLite URL for a project, creating the .sprintforge directory."""
    db_dir = Path(project_path) / DB_DIRNAME
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_dir / DB_FILENAME}"


def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, echo=False)


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
