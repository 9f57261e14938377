"""Engine lifecycle for the sync state database.

One process-wide async engine backs both stores. SQLite (aiosqlite) is the
default for a single-user client; PostgreSQL (asyncpg) works unchanged.

## Configuration

- DATABASE_URL: SQLAlchemy async URL (default: sqlite+aiosqlite:///agenda_sync.db)
- DATABASE_POOL_SIZE: Connection pool size, PostgreSQL only (default: 5)
- DATABASE_MAX_OVERFLOW: Max overflow connections, PostgreSQL only (default: 10)

## Usage

```python
from agenda_sync.database import init_db, create_tables

session_factory = await init_db()
await create_tables()

async with session_factory() as session:
    row = await session.get(SyncTokenRow, "primary")
```
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from agenda_sync.config import get_settings
from agenda_sync.database.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def _engine_options(database_url: str, echo: bool) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"echo": echo}

    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            # One shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
        options["pool_pre_ping"] = True

    return options


async def init_db(database_url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Create the engine and return a session factory bound to it.

    Args:
        database_url: Override for the configured DATABASE_URL

    Returns:
        The session factory used by the stores
    """
    global _engine

    settings = get_settings()
    url = database_url or settings.database_url

    if _engine is not None:
        await _engine.dispose()
    _engine = create_async_engine(url, **_engine_options(url, settings.database_echo))
    logger.info(f"Opened database {_engine.url.render_as_string(hide_password=True)}")

    return async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose of the engine, if one is open."""
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Closed database")


async def create_tables() -> None:
    """Create the token and event tables if they do not exist."""
    if _engine is None:
        raise RuntimeError("init_db() must be called before create_tables()")

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.debug("Database schema ready")
