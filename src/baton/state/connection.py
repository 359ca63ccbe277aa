"""Database connection and write utilities.

Single module-level connection, initialized by init_database().
Schema definition lives in :mod:`schema`.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from baton.config import get_settings
from baton.state.schema import create_schema

_db: aiosqlite.Connection | None = None

# Shared write lock for multi-statement transactions, see atomic_write().
#
# One aiosqlite connection is shared by every polling loop.  sqlite3 opens
# transactions implicitly per *connection*, so two coroutines whose DML
# interleaves at await points share one transaction and a rollback() from
# one undoes the other's work.  Multi-statement writes MUST go through
# atomic_write().
_write_lock: asyncio.Lock | None = None


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Acquire the write lock, yield the connection, commit or roll back."""
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _get_db()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def _update_by_id(
    table: str,
    row_id: int | str,
    updates: dict[str, Any],
    allowed_fields: set[str],
) -> None:
    """Build and execute a dynamic UPDATE for an allowlisted set of fields.

    Silently skips keys not in *allowed_fields* so callers don't need to
    pre-filter.
    """
    fields: list[str] = []
    values: list[Any] = []

    for key, value in updates.items():
        if key in allowed_fields:
            fields.append(f"{key} = ?")
            values.append(value)

    if not fields:
        return

    values.append(row_id)
    async with atomic_write() as db:
        await db.execute(
            f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?",
            values,
        )


async def init_database(db_path: Path | None = None) -> None:
    """Initialize the database connection and schema.

    WAL mode lets the CLI read while the gateway process writes.
    """
    global _db, _write_lock
    path = db_path or get_settings().db_path
    _write_lock = None
    path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(path))
    _db.row_factory = aiosqlite.Row
    await _db.execute("PRAGMA journal_mode=WAL")
    await _db.execute("PRAGMA busy_timeout=5000")
    await _db.execute("PRAGMA foreign_keys=ON")
    await create_schema(_db)


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _init_test_database() -> None:
    """Create an in-memory database for tests.

    Uses ``stop()`` + thread join instead of ``await close()`` because
    pytest-asyncio creates a new event loop per test function.  The previous
    connection's worker thread targets its original (now-dead) loop, so
    ``await close()`` hangs.  ``stop()`` bypasses the loop entirely.
    """
    global _db, _write_lock
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _write_lock = None
    _db = await aiosqlite.connect(":memory:")
    _db.row_factory = aiosqlite.Row
    await _db.execute("PRAGMA foreign_keys=ON")
    await create_schema(_db)
