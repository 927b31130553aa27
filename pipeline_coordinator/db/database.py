"""SQLite connection and migration helpers."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
SCHEMA_VERSION = 2
MEMORY_DB = ":memory:"

# SQLite cannot alter a CHECK constraint, so version 2 rebuilds workflow_state
# to admit the skipped status.
_ADD_SKIPPED_STATUS = """
PRAGMA foreign_keys = OFF;
BEGIN IMMEDIATE;
CREATE TABLE workflow_state_rebuild (
    id TEXT PRIMARY KEY,
    unit_of_work_id TEXT NOT NULL,
    stage_name TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    checkpoint_data TEXT NOT NULL DEFAULT '{}',
    items_processed INTEGER NOT NULL DEFAULT 0 CHECK (items_processed >= 0),
    items_total INTEGER CHECK (items_total IS NULL OR items_total >= 0),
    last_processed_id TEXT,
    error_count INTEGER NOT NULL DEFAULT 0 CHECK (error_count >= 0),
    last_error_details TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK (status IN ('in_progress', 'paused', 'completed', 'failed', 'skipped')),
    awaiting_gate INTEGER NOT NULL DEFAULT 0 CHECK (awaiting_gate IN (0, 1)),
    gate_requested_at TEXT,
    stage_output TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
INSERT INTO workflow_state_rebuild SELECT
    id, unit_of_work_id, stage_name, execution_id, checkpoint_data,
    items_processed, items_total, last_processed_id, error_count,
    last_error_details, status, awaiting_gate, gate_requested_at,
    stage_output, created_at, updated_at
FROM workflow_state;
DROP TABLE workflow_state;
ALTER TABLE workflow_state_rebuild RENAME TO workflow_state;
CREATE UNIQUE INDEX idx_workflow_state_active
    ON workflow_state(unit_of_work_id, stage_name)
    WHERE status IN ('in_progress', 'paused');
CREATE INDEX idx_workflow_state_unit
    ON workflow_state(unit_of_work_id, stage_name, created_at);
CREATE INDEX idx_workflow_state_execution ON workflow_state(execution_id);
CREATE INDEX idx_workflow_state_updated ON workflow_state(updated_at);
COMMIT;
PRAGMA foreign_keys = ON;
"""

_UPGRADES = {2: _ADD_SKIPPED_STATUS}


async def _init_connection(db: aiosqlite.Connection) -> None:
    await db.execute("PRAGMA journal_mode = WAL")
    await db.execute("PRAGMA synchronous = NORMAL")
    await db.execute("PRAGMA foreign_keys = ON")
    await db.execute("PRAGMA temp_store = MEMORY")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create a fresh schema, or step an older database up to SCHEMA_VERSION."""
    cursor = await db.execute("PRAGMA user_version")
    row = await cursor.fetchone()
    current = int(row[0]) if row else 0
    if current >= SCHEMA_VERSION:
        return
    if current == 0:
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        await db.executescript(schema_sql)
    else:
        for version in range(current + 1, SCHEMA_VERSION + 1):
            await db.executescript(_UPGRADES[version])
    await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    await db.commit()


@asynccontextmanager
async def get_db(
    db_path: str = "data/pipeline/checkpoints.db",
    busy_timeout: float = 30.0,
) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection in autocommit mode; callers own their transactions."""
    if db_path != MEMORY_DB:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(db_path, timeout=busy_timeout, isolation_level=None)
    try:
        db.row_factory = aiosqlite.Row
        await _init_connection(db)
        await run_migrations(db)
        yield db
    finally:
        await db.close()
