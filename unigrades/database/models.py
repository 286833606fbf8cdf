"""SQLite database schema and initialization.

Subscriptions and statistics are JSON documents keyed by username; the
columns next to ``doc`` only exist for indexing and housekeeping.
"""

from __future__ import annotations

import aiosqlite

SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    username TEXT PRIMARY KEY,
    doc TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS statistics (
    username TEXT PRIMARY KEY,
    doc TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_updated ON subscriptions(updated_at);
CREATE INDEX IF NOT EXISTS idx_statistics_updated ON statistics(updated_at);
"""


async def initialize_db(db: aiosqlite.Connection):
    """Create tables and indexes if they don't exist."""
    await db.executescript(SCHEMA)
    await db.commit()


async def open_db(path: str) -> aiosqlite.Connection:
    """Connect to ``path`` and make sure the schema exists."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await initialize_db(db)
    return db
