"""DDL for the sync engine tables.

The alembic ``core`` chain applies these statements; ``ensure_schema()``
applies the same statements directly, which tests and one-off tooling use
to bootstrap a fresh database without running alembic.

Rows are never hard-deleted: credentials are deactivated, cursors are
cleared to NULL, runs are append-only and synced items carry ``deleted_at``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

CREDENTIAL_RECORDS_DDL = """
CREATE TABLE IF NOT EXISTS credential_records (
    account_id          TEXT NOT NULL,
    provider            TEXT NOT NULL,
    access_token_enc    TEXT,
    refresh_token_enc   TEXT,
    token_expires_at    TIMESTAMPTZ,
    scope               TEXT,
    external_account_id TEXT,
    metadata            JSONB NOT NULL DEFAULT '{}'::jsonb,
    active              BOOLEAN NOT NULL DEFAULT true,
    connected_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_connected_at   TIMESTAMPTZ,
    disconnected_at     TIMESTAMPTZ,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (account_id, provider),
    CONSTRAINT credential_records_active_has_token
        CHECK (active = false OR access_token_enc IS NOT NULL)
)
"""

SYNC_CURSORS_DDL = """
CREATE TABLE IF NOT EXISTS sync_cursors (
    account_id     TEXT NOT NULL,
    provider       TEXT NOT NULL,
    resource_id    TEXT NOT NULL,
    cursor         TEXT,
    issued_at      TIMESTAMPTZ,
    cleared_at     TIMESTAMPTZ,
    cleared_reason TEXT,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (account_id, provider, resource_id)
)
"""

SYNC_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id                UUID PRIMARY KEY,
    account_id        TEXT NOT NULL,
    provider          TEXT NOT NULL,
    resource_id       TEXT NOT NULL,
    requested_mode    TEXT NOT NULL,
    mode              TEXT NOT NULL,
    status            TEXT NOT NULL,
    started_at        TIMESTAMPTZ NOT NULL,
    finished_at       TIMESTAMPTZ,
    duration_ms       INTEGER,
    items_synced      INTEGER NOT NULL DEFAULT 0,
    item_errors       JSONB NOT NULL DEFAULT '[]'::jsonb,
    fatal_error       TEXT,
    fell_back_to_full BOOLEAN NOT NULL DEFAULT false,
    cursor_committed  BOOLEAN NOT NULL DEFAULT false,
    CONSTRAINT sync_runs_mode_check CHECK (mode IN ('full', 'incremental')),
    CONSTRAINT sync_runs_status_check CHECK (
        status IN ('started', 'fetching', 'applying', 'finalizing', 'completed', 'failed')
    )
)
"""

SYNC_RUNS_KEY_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS ix_sync_runs_key_started
ON sync_runs (account_id, provider, resource_id, started_at DESC)
"""

SYNCED_ITEMS_DDL = """
CREATE TABLE IF NOT EXISTS synced_items (
    account_id    TEXT NOT NULL,
    provider      TEXT NOT NULL,
    resource_id   TEXT NOT NULL,
    external_id   TEXT NOT NULL,
    item_type     TEXT NOT NULL,
    fields        JSONB NOT NULL DEFAULT '{}'::jsonb,
    content_hash  TEXT NOT NULL,
    first_seen_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at    TIMESTAMPTZ,
    PRIMARY KEY (account_id, provider, resource_id, external_id)
)
"""

SCHEMA_STATEMENTS: tuple[str, ...] = (
    CREDENTIAL_RECORDS_DDL,
    SYNC_CURSORS_DDL,
    SYNC_RUNS_DDL,
    SYNC_RUNS_KEY_INDEX_DDL,
    SYNCED_ITEMS_DDL,
)

TABLES: tuple[str, ...] = ("synced_items", "sync_runs", "sync_cursors", "credential_records")


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create all sync engine tables if they don't already exist.

    Idempotent; safe to call on every startup.
    """
    async with pool.acquire() as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.debug("Sync engine schema ensured")
