"""Incremental sync engine.

- ``models``: run, cursor and delta item types
- ``adapter``: provider contract (``list_changes``)
- ``applier``: idempotent delta application
- ``store``: cursor and run persistence
- ``orchestrator``: mode selection, pagination, fallback, single-flight
- ``poller``: scheduled trigger
"""

from courier.sync.errors import (
    CursorInvalidError,
    ItemApplyError,
    SyncFailedError,
    SyncInProgressError,
)
from courier.sync.models import ResourceKey, RunStatus, SyncMode, SyncRun

__all__ = [
    "CursorInvalidError",
    "ItemApplyError",
    "ResourceKey",
    "RunStatus",
    "SyncFailedError",
    "SyncInProgressError",
    "SyncMode",
    "SyncRun",
]
