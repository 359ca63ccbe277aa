"""Database schema definition.

``_SCHEMA`` is the source of truth for the table definitions.
``CREATE TABLE IF NOT EXISTS`` makes ``create_schema`` safe to run on every
start.  All timestamps are fixed-width UTC ISO strings (see
:func:`baton.utils.to_iso`) so plain string comparison orders them.
"""

from __future__ import annotations

import aiosqlite

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    direction TEXT NOT NULL DEFAULT 'in' CHECK (direction IN ('in', 'out')),
    channel TEXT NOT NULL,
    endpoint TEXT,
    content TEXT NOT NULL,
    content_preview TEXT,
    attachment_path TEXT,
    priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 3),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'done', 'failed')),
    require_idle INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    available_at TEXT NOT NULL,
    started_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_queue
    ON messages(status, priority, created_at, id);

CREATE TABLE IF NOT EXISTS control_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 0 AND 3),
    require_idle INTEGER NOT NULL DEFAULT 0,
    bypass_state INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'done', 'failed', 'timeout')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    ack_deadline_at TEXT,
    available_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_control_queue
    ON control_queue(status, priority, created_at, id);
CREATE INDEX IF NOT EXISTS idx_control_deadline ON control_queue(ack_deadline_at);

CREATE TABLE IF NOT EXISTS checkpoints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_conversation_id INTEGER NOT NULL,
    end_conversation_id INTEGER NOT NULL,
    summary TEXT,
    created_at TEXT NOT NULL,
    CHECK (end_conversation_id >= start_conversation_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    prompt TEXT NOT NULL,
    type TEXT NOT NULL CHECK (type IN ('one-time', 'recurring', 'interval')),
    cron_expression TEXT,
    interval_seconds INTEGER,
    timezone TEXT,
    next_run_at TEXT,
    last_run_at TEXT,
    priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 3),
    require_idle INTEGER NOT NULL DEFAULT 0,
    reply_channel TEXT,
    reply_endpoint TEXT,
    miss_threshold_seconds INTEGER,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed', 'paused')),
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, next_run_at);

CREATE TABLE IF NOT EXISTS task_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('started', 'success', 'failed', 'timeout')),
    error TEXT,
    run_at TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id)
);
CREATE INDEX IF NOT EXISTS idx_task_history ON task_history(task_id, run_at);
"""


async def create_schema(database: aiosqlite.Connection) -> None:
    """Apply schema DDL."""
    await database.executescript(_SCHEMA)
    await database.commit()
