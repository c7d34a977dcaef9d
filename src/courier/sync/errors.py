"""Sync engine error taxonomy.

Only ``SyncFailedError`` (raised once the single full-sync fallback has
also failed) and credential errors leave ``SyncOrchestrator.sync``.
Everything else ends up recorded on a FAILED run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from courier.sync.models import ResourceKey, SyncRun


class SyncError(RuntimeError):
    """Base sync engine error."""


class ProviderError(SyncError):
    """Base error raised by provider adapters."""


class ProviderRequestError(ProviderError):
    """Raised when a provider API request fails (transport, HTTP or payload)."""

    def __init__(self, *, status_code: int, message: str, provider: str = "provider") -> None:
        self.status_code = status_code
        self.message = message
        self.provider = provider
        super().__init__(f"{provider} request failed ({status_code}): {message}")

    @property
    def retryable(self) -> bool:
        """Transport failures, throttling and server errors are worth retrying."""
        return self.status_code in (0, 408, 429) or self.status_code >= 500


class CursorInvalidError(ProviderError):
    """Raised when the provider no longer honours an incremental cursor.

    Distinct from :class:`ProviderRequestError`: it triggers one fallback
    full sync instead of failing the run.
    """


class ItemApplyError(SyncError):
    """Raised by a delta applier when a single item cannot be applied."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class SyncInProgressError(SyncError):
    """Raised when a run for the same resource is already in flight."""

    def __init__(self, key: ResourceKey) -> None:
        self.key = key
        super().__init__(f"A sync run is already in progress for {key}")


class SyncFailedError(SyncError):
    """Raised when a run fails even after the full-sync fallback."""

    def __init__(self, run: SyncRun) -> None:
        self.run = run
        super().__init__(
            f"Sync run {run.id} for {run.key} failed after full-sync fallback: {run.fatal_error}"
        )


class RunFinalizedError(SyncError):
    """Raised on any attempt to change a run after it was finalized."""


class InvalidRunTransitionError(SyncError):
    """Raised when a run is moved to a phase its state machine forbids."""


class CursorConflictError(SyncError):
    """Raised when a compare-and-set cursor commit finds an unexpected cursor."""
