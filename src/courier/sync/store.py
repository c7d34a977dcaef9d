"""Persistence for sync cursors and sync run records.

Each shared-state write is a single SQL statement.  Cursor commits are
compare-and-set against the cursor the run started from, so a writer that
lost a race cannot overwrite a newer cursor.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from courier.db import rows_affected
from courier.sync.errors import CursorConflictError, RunFinalizedError
from courier.sync.models import ItemError, ResourceKey, RunStatus, SyncCursor, SyncMode, SyncRun

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class CursorRepository(Protocol):
    """Storage contract for per-resource cursors."""

    async def get(self, key: ResourceKey) -> SyncCursor | None:
        """Return the current cursor, or None when absent or cleared."""
        ...

    async def commit(self, key: ResourceKey, value: str, *, expected: str | None) -> None:
        """Replace the cursor with *value* if it still equals *expected*.

        Raises CursorConflictError otherwise.
        """
        ...

    async def clear(self, key: ResourceKey, *, reason: str, expected: str | None = None) -> bool:
        """Clear the cursor if it still equals *expected*; True if cleared."""
        ...

    async def clear_account(self, account_id: str, provider: str, *, reason: str) -> int:
        """Clear every cursor of one connection; returns the number cleared."""
        ...


class RunRepository(Protocol):
    """Storage contract for append-only sync run records."""

    async def create(self, run: SyncRun) -> None: ...

    async def mark_phase(self, run: SyncRun) -> None: ...

    async def finalize(self, run: SyncRun) -> None:
        """Persist the terminal state.  Raises RunFinalizedError if already final."""
        ...

    async def get(self, run_id: uuid.UUID) -> SyncRun | None: ...

    async def list_runs(self, key: ResourceKey, *, limit: int = 20) -> list[SyncRun]: ...

    async def last_success_at(self, key: ResourceKey) -> datetime | None: ...


# ---------------------------------------------------------------------------
# Postgres cursor repository
# ---------------------------------------------------------------------------

_GET_CURSOR_SQL = """
SELECT cursor, issued_at
FROM sync_cursors
WHERE account_id = $1 AND provider = $2 AND resource_id = $3
"""

_COMMIT_CURSOR_SQL = """
INSERT INTO sync_cursors (account_id, provider, resource_id, cursor, issued_at, updated_at)
VALUES ($1, $2, $3, $4, now(), now())
ON CONFLICT (account_id, provider, resource_id) DO UPDATE
SET cursor         = EXCLUDED.cursor,
    issued_at      = EXCLUDED.issued_at,
    cleared_at     = NULL,
    cleared_reason = NULL,
    updated_at     = now()
WHERE sync_cursors.cursor IS NOT DISTINCT FROM $5::text
RETURNING cursor
"""

_CLEAR_CURSOR_SQL = """
UPDATE sync_cursors
SET cursor         = NULL,
    cleared_at     = now(),
    cleared_reason = $4,
    updated_at     = now()
WHERE account_id = $1
  AND provider = $2
  AND resource_id = $3
  AND cursor IS NOT NULL
  AND ($5::text IS NULL OR cursor = $5::text)
"""

_CLEAR_ACCOUNT_CURSORS_SQL = """
UPDATE sync_cursors
SET cursor         = NULL,
    cleared_at     = now(),
    cleared_reason = $3,
    updated_at     = now()
WHERE account_id = $1 AND provider = $2 AND cursor IS NOT NULL
"""


class PostgresCursorRepository:
    """``sync_cursors`` table access.  Cleared cursors keep their row."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, key: ResourceKey) -> SyncCursor | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _GET_CURSOR_SQL, key.account_id, key.provider, key.resource_id
            )
        if row is None or not row["cursor"]:
            return None
        return SyncCursor(key=key, value=row["cursor"], issued_at=row["issued_at"])

    async def commit(self, key: ResourceKey, value: str, *, expected: str | None) -> None:
        async with self._pool.acquire() as conn:
            committed = await conn.fetchval(
                _COMMIT_CURSOR_SQL,
                key.account_id,
                key.provider,
                key.resource_id,
                value,
                expected,
            )
        if committed is None:
            raise CursorConflictError(
                f"Cursor for {key} changed since the run started; refusing to overwrite"
            )

    async def clear(self, key: ResourceKey, *, reason: str, expected: str | None = None) -> bool:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                _CLEAR_CURSOR_SQL,
                key.account_id,
                key.provider,
                key.resource_id,
                reason,
                expected,
            )
        return rows_affected(status) > 0

    async def clear_account(self, account_id: str, provider: str, *, reason: str) -> int:
        async with self._pool.acquire() as conn:
            status = await conn.execute(_CLEAR_ACCOUNT_CURSORS_SQL, account_id, provider, reason)
        return rows_affected(status)


# ---------------------------------------------------------------------------
# Postgres run repository
# ---------------------------------------------------------------------------

_RUN_COLUMNS = """
id, account_id, provider, resource_id, requested_mode, mode, status, started_at,
finished_at, duration_ms, items_synced, item_errors, fatal_error, fell_back_to_full,
cursor_committed
"""

_CREATE_RUN_SQL = """
INSERT INTO sync_runs
    (id, account_id, provider, resource_id, requested_mode, mode, status, started_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
"""

_MARK_PHASE_SQL = """
UPDATE sync_runs
SET status = $2, mode = $3, fell_back_to_full = $4
WHERE id = $1 AND finished_at IS NULL
"""

_FINALIZE_RUN_SQL = """
UPDATE sync_runs
SET status            = $2,
    mode              = $3,
    finished_at       = $4,
    duration_ms       = $5,
    items_synced      = $6,
    item_errors       = $7::jsonb,
    fatal_error       = $8,
    fell_back_to_full = $9,
    cursor_committed  = $10
WHERE id = $1 AND finished_at IS NULL
"""

_GET_RUN_SQL = f"SELECT {_RUN_COLUMNS} FROM sync_runs WHERE id = $1"

_LIST_RUNS_SQL = f"""
SELECT {_RUN_COLUMNS}
FROM sync_runs
WHERE account_id = $1 AND provider = $2 AND resource_id = $3
ORDER BY started_at DESC
LIMIT $4
"""

_LAST_SUCCESS_SQL = """
SELECT max(finished_at)
FROM sync_runs
WHERE account_id = $1 AND provider = $2 AND resource_id = $3 AND status = 'completed'
"""


def _decode_item_errors(raw: Any) -> list[ItemError]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    return [ItemError.model_validate(entry) for entry in raw]


def _row_to_run(row: Any) -> SyncRun:
    return SyncRun(
        id=row["id"],
        key=ResourceKey(
            account_id=row["account_id"],
            provider=row["provider"],
            resource_id=row["resource_id"],
        ),
        requested_mode=SyncMode(row["requested_mode"]),
        mode=SyncMode(row["mode"]),
        status=RunStatus(row["status"]),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        duration_ms=row["duration_ms"],
        items_synced=row["items_synced"],
        item_errors=_decode_item_errors(row["item_errors"]),
        fatal_error=row["fatal_error"],
        fell_back_to_full=row["fell_back_to_full"],
        cursor_committed=row["cursor_committed"],
    )


class PostgresRunRepository:
    """``sync_runs`` table access.  Rows are append-only once finalized."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, run: SyncRun) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                _CREATE_RUN_SQL,
                run.id,
                run.key.account_id,
                run.key.provider,
                run.key.resource_id,
                run.requested_mode.value,
                run.mode.value,
                run.status.value,
                run.started_at,
            )

    async def mark_phase(self, run: SyncRun) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                _MARK_PHASE_SQL,
                run.id,
                run.status.value,
                run.mode.value,
                run.fell_back_to_full,
            )

    async def finalize(self, run: SyncRun) -> None:
        errors = json.dumps([error.model_dump() for error in run.item_errors])
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                _FINALIZE_RUN_SQL,
                run.id,
                run.status.value,
                run.mode.value,
                run.finished_at,
                run.duration_ms,
                run.items_synced,
                errors,
                run.fatal_error,
                run.fell_back_to_full,
                run.cursor_committed,
            )
        if rows_affected(status) == 0:
            raise RunFinalizedError(f"Run {run.id} is unknown or already finalized")

    async def get(self, run_id: uuid.UUID) -> SyncRun | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_GET_RUN_SQL, run_id)
        return _row_to_run(row) if row is not None else None

    async def list_runs(self, key: ResourceKey, *, limit: int = 20) -> list[SyncRun]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                _LIST_RUNS_SQL, key.account_id, key.provider, key.resource_id, limit
            )
        return [_row_to_run(row) for row in rows]

    async def last_success_at(self, key: ResourceKey) -> datetime | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchval(
                _LAST_SUCCESS_SQL, key.account_id, key.provider, key.resource_id
            )
