"""Data model for sync runs, cursors and delta items."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from courier.sync.errors import InvalidRunTransitionError, RunFinalizedError


class SyncMode(enum.StrEnum):
    """Fetch strategy for one sync attempt."""

    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(enum.StrEnum):
    """Phases of one sync attempt.

    ``STARTED -> FETCHING -> APPLYING (per page) -> FINALIZING -> COMPLETED | FAILED``
    """

    STARTED = "started"
    FETCHING = "fetching"
    APPLYING = "applying"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


# FETCHING -> FETCHING restarts the fetch in full mode after a rejected cursor.
_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.STARTED: frozenset({RunStatus.FETCHING, RunStatus.FAILED}),
    RunStatus.FETCHING: frozenset(
        {RunStatus.FETCHING, RunStatus.APPLYING, RunStatus.FINALIZING, RunStatus.FAILED}
    ),
    RunStatus.APPLYING: frozenset({RunStatus.FETCHING, RunStatus.FINALIZING, RunStatus.FAILED}),
    RunStatus.FINALIZING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class ChangeKind(enum.StrEnum):
    UPSERT = "upsert"
    TOMBSTONE = "tombstone"


def _strip_required(value: str, info: ValidationInfo) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{info.field_name} must be a non-empty string")
    return normalized


class ResourceKey(BaseModel):
    """Identity of one synchronized resource: (account, provider, resource)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    provider: str
    resource_id: str

    @field_validator("account_id", "provider", "resource_id")
    @classmethod
    def _normalize(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info)

    def __str__(self) -> str:
        return f"{self.account_id}/{self.provider}/{self.resource_id}"


class SyncCursor(BaseModel):
    """A provider-issued cursor and the resource it was issued for.

    Binding is structural: repositories read and write cursors by the full
    ``ResourceKey`` primary key, and the orchestrator only commits a cursor
    under the key of the run that fetched it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: ResourceKey
    value: str
    issued_at: datetime | None = None

    @field_validator("value")
    @classmethod
    def _normalize_value(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info)


class DeltaItem(BaseModel):
    """One changed or removed record reported by a provider.

    ``deleted`` is the provider's own removal flag; appliers may classify
    additional shapes (e.g. cancelled events) as tombstones.
    """

    model_config = ConfigDict(extra="forbid")

    external_id: str
    item_type: str = "item"
    deleted: bool = False
    etag: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str, info: ValidationInfo) -> str:
        return _strip_required(value, info)


class ItemError(BaseModel):
    """A per-item failure recorded on a run without aborting it."""

    model_config = ConfigDict(extra="forbid")

    external_id: str
    message: str
    retryable: bool


class ChangePage(BaseModel):
    """One page returned by ``ProviderAdapter.list_changes``.

    ``item_errors`` carries items the adapter could not materialize (e.g. a
    detail fetch that failed); the rest of the page is still applied.
    """

    model_config = ConfigDict(extra="forbid")

    items: list[DeltaItem] = Field(default_factory=list)
    next_page_token: str | None = None
    next_cursor: str | None = None
    item_errors: list[ItemError] = Field(default_factory=list)

    @field_validator("next_page_token", "next_cursor")
    @classmethod
    def _normalize_tokens(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class RunResult(BaseModel):
    """Outcome handed to ``complete_run``."""

    model_config = ConfigDict(extra="forbid")

    mode: SyncMode
    items_synced: int = 0
    item_errors: list[ItemError] = Field(default_factory=list)
    fatal_error: str | None = None
    fell_back_to_full: bool = False
    cursor_committed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None


class SyncRun(BaseModel):
    """Record of one sync attempt.

    Created in STARTED, advanced through the phase machine, and finalized
    exactly once; any change after finalization raises
    :class:`RunFinalizedError`.
    """

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    key: ResourceKey
    requested_mode: SyncMode
    mode: SyncMode
    status: RunStatus = RunStatus.STARTED
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    duration_ms: int | None = None
    items_synced: int = 0
    item_errors: list[ItemError] = Field(default_factory=list)
    fatal_error: str | None = None
    fell_back_to_full: bool = False
    cursor_committed: bool = False

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def advance(self, status: RunStatus) -> None:
        """Move to *status*, enforcing the phase machine."""
        if self.finalized:
            raise RunFinalizedError(f"Run {self.id} is already finalized as {self.status}")
        if status not in _TRANSITIONS[self.status]:
            raise InvalidRunTransitionError(
                f"Run {self.id} cannot move from {self.status} to {status}"
            )
        self.status = status

    def finalize(self, result: RunResult, *, finished_at: datetime | None = None) -> None:
        """Seal the run with *result*: COMPLETED without a fatal error, FAILED otherwise."""
        if self.finalized:
            raise RunFinalizedError(f"Run {self.id} is already finalized as {self.status}")
        finished = finished_at or datetime.now(UTC)
        self.mode = result.mode
        self.items_synced = result.items_synced
        self.item_errors = list(result.item_errors)
        self.fatal_error = result.fatal_error
        self.fell_back_to_full = result.fell_back_to_full
        self.cursor_committed = result.cursor_committed
        self.duration_ms = max(int((finished - self.started_at).total_seconds() * 1000), 0)
        self.status = RunStatus.COMPLETED if result.succeeded else RunStatus.FAILED
        self.finished_at = finished
