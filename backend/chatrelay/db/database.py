"""Database connection and lifecycle management."""

from pathlib import Path

import databases

from chatrelay.core.config import settings
from chatrelay.db.schema import schema_statements


def sqlite_path(database_url: str) -> Path:
    """Filesystem path of a sqlite:/// database URL."""
    prefix = "sqlite:///"
    if not database_url.startswith(prefix):
        raise ValueError(f"Only sqlite URLs are supported, got: {database_url}")
    return Path(database_url[len(prefix):])


# Create database connection
database = databases.Database(settings.database_url)


async def get_database() -> databases.Database:
    """Get database connection."""
    return database


async def init_schema(db: databases.Database) -> None:
    """Create tables that do not exist yet."""
    for statement in schema_statements():
        await db.execute(statement)


async def connect_db():
    """Connect to database on startup."""
    if not database.is_connected:
        await database.connect()
        await init_schema(database)


async def disconnect_db():
    """Disconnect from database on shutdown."""
    if database.is_connected:
        await database.disconnect()
