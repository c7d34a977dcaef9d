"""Delta appliers: turn one provider change into an idempotent local write.

Contract
--------
* ``classify`` decides whether an item is an upsert or a tombstone.
* Items are keyed by their stable external id within a resource.
* An upsert of an unseen item creates it; an upsert of a known item replaces
  every field (never a partial patch).
* A tombstone of an unknown item is a no-op, not an error.
* Applying the same item any number of times yields the same stored state.

``SyncedItemApplier`` is the Postgres reference implementation backing the
``synced_items`` table.  Provider-specific appliers subclass it and override
``classify``/``project`` only.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import logging
from typing import TYPE_CHECKING, Any

import asyncpg

from courier.db import rows_affected
from courier.sync.errors import ItemApplyError, SyncError
from courier.sync.models import ChangeKind, DeltaItem, ResourceKey

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


class StorageUnavailableError(SyncError):
    """Raised when local storage cannot be reached while applying items.

    Unlike :class:`ItemApplyError` this aborts the run: every remaining item
    would fail the same way, and the cursor must not advance past them.
    """


_STORAGE_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.InterfaceError,
    asyncpg.PostgresConnectionError,
)


class DeltaApplier(abc.ABC):
    """Per-resource logic for applying delta items idempotently."""

    def classify(self, item: DeltaItem) -> ChangeKind:
        """Return TOMBSTONE for removed items, UPSERT otherwise."""
        return ChangeKind.TOMBSTONE if item.deleted else ChangeKind.UPSERT

    @abc.abstractmethod
    async def upsert(self, key: ResourceKey, item: DeltaItem) -> bool:
        """Create or fully replace *item*; return True if stored state changed."""
        ...

    @abc.abstractmethod
    async def tombstone(self, key: ResourceKey, item: DeltaItem) -> bool:
        """Mark *item* removed; return True if stored state changed."""
        ...

    async def apply(self, key: ResourceKey, item: DeltaItem) -> ChangeKind:
        """Classify *item* and apply it.  Returns the applied change kind."""
        kind = self.classify(item)
        if kind is ChangeKind.TOMBSTONE:
            await self.tombstone(key, item)
        else:
            await self.upsert(key, item)
        return kind


def content_hash(item_type: str, fields: Mapping[str, Any]) -> str:
    """Stable digest of an item's projected state."""
    serialized = json.dumps(
        {"type": item_type, "fields": fields},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


_UPSERT_SQL = """
INSERT INTO synced_items
    (account_id, provider, resource_id, external_id, item_type, fields, content_hash)
VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
ON CONFLICT (account_id, provider, resource_id, external_id) DO UPDATE
SET item_type    = EXCLUDED.item_type,
    fields       = EXCLUDED.fields,
    content_hash = EXCLUDED.content_hash,
    deleted_at   = NULL,
    updated_at   = now()
WHERE synced_items.content_hash IS DISTINCT FROM EXCLUDED.content_hash
   OR synced_items.deleted_at IS NOT NULL
"""

_TOMBSTONE_SQL = """
UPDATE synced_items
SET deleted_at = now(),
    updated_at = now()
WHERE account_id = $1
  AND provider = $2
  AND resource_id = $3
  AND external_id = $4
  AND deleted_at IS NULL
"""


class SyncedItemApplier(DeltaApplier):
    """Postgres-backed applier writing to ``synced_items``.

    Parameters
    ----------
    pool:
        asyncpg pool for the courier database.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def project(self, item: DeltaItem) -> dict[str, Any]:
        """Return the fields stored for *item*.  Defaults to the raw payload."""
        return dict(item.payload)

    async def upsert(self, key: ResourceKey, item: DeltaItem) -> bool:
        try:
            fields = self.project(item)
            encoded = json.dumps(fields, default=str)
        except (TypeError, ValueError, KeyError) as exc:
            raise ItemApplyError(
                f"Cannot project item {item.external_id}: {exc}", retryable=False
            ) from exc

        status = await self._execute(
            _UPSERT_SQL,
            key.account_id,
            key.provider,
            key.resource_id,
            item.external_id,
            item.item_type,
            encoded,
            content_hash(item.item_type, fields),
        )
        changed = rows_affected(status) > 0
        if not changed:
            logger.debug("Upsert of %s skipped: content unchanged", item.external_id)
        return changed

    async def tombstone(self, key: ResourceKey, item: DeltaItem) -> bool:
        status = await self._execute(
            _TOMBSTONE_SQL,
            key.account_id,
            key.provider,
            key.resource_id,
            item.external_id,
        )
        changed = rows_affected(status) > 0
        if not changed:
            logger.debug("Tombstone for %s was a no-op (unknown or already removed)", item.external_id)
        return changed

    async def _execute(self, sql: str, *args: Any) -> str:
        try:
            async with self._pool.acquire() as conn:
                return await conn.execute(sql, *args)
        except _STORAGE_UNAVAILABLE_ERRORS as exc:
            raise StorageUnavailableError(f"Item storage unavailable: {exc}") from exc
        except asyncpg.PostgresError as exc:
            raise ItemApplyError(f"Item write rejected: {exc}", retryable=False) from exc
