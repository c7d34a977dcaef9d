"""SyncOrchestrator: one end-to-end sync attempt per (account, provider, resource).

An attempt walks ``STARTED -> FETCHING -> APPLYING (per page) -> FINALIZING``
and always ends in exactly one terminal state, COMPLETED or FAILED.

Mode selection
--------------
* No stored cursor: full sync, whatever was requested.
* Stored cursor: incremental.  When the adapter raises
  :class:`CursorInvalidError` the cursor is cleared and the same attempt
  restarts once in full mode.  There is no second fallback; if the full pass
  fails too the run fails and :class:`SyncFailedError` is raised.

Failure handling
----------------
* Per-item errors, whether raised by the applier or reported by the adapter
  on the page, are recorded on the run with a retryable flag and never
  abort the page.
* Adapter failures, storage outages and the wall-clock timeout abort the
  attempt; the run is finalized FAILED and the stored cursor is left as it
  was, so the next attempt starts from the same point.
* The cursor from the terminal page is committed (compare-and-set) only
  after every page was applied.

Single-flight
-------------
``sync`` refuses a second concurrent run for the same key with
:class:`SyncInProgressError`.  ``request_sync`` is the fire-and-forget
trigger: a request for a busy key is folded into one follow-up run that
starts when the in-flight run finishes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from courier.core.metrics import SyncMetrics
from courier.core.telemetry import sync_span
from courier.credentials.errors import IntegrationNotConnectedError
from courier.credentials.vault import CredentialVault
from courier.sync.adapter import ProviderAdapter
from courier.sync.applier import DeltaApplier, StorageUnavailableError
from courier.sync.errors import (
    CursorInvalidError,
    ItemApplyError,
    ProviderError,
    RunFinalizedError,
    SyncError,
    SyncFailedError,
    SyncInProgressError,
)
from courier.sync.models import (
    DeltaItem,
    ItemError,
    ResourceKey,
    RunResult,
    RunStatus,
    SyncCursor,
    SyncMode,
    SyncRun,
)
from courier.sync.single_flight import RunRegistry
from courier.sync.store import CursorRepository, RunRepository

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT_SECONDS = 300.0


@dataclass
class _Progress:
    """Mutable tally of one attempt, kept outside the timeout scope."""

    mode: SyncMode
    items_synced: int = 0
    item_errors: list[ItemError] = field(default_factory=list)
    fell_back_to_full: bool = False
    cursor_committed: bool = False
    fatal_error: str | None = None

    def to_result(self) -> RunResult:
        return RunResult(
            mode=self.mode,
            items_synced=self.items_synced,
            item_errors=list(self.item_errors),
            fatal_error=self.fatal_error,
            fell_back_to_full=self.fell_back_to_full,
            cursor_committed=self.cursor_committed,
        )


class SyncOrchestrator:
    """Coordinates vault, adapter, applier and persistence for sync runs.

    Parameters
    ----------
    vault:
        Source of valid access tokens.
    cursors:
        Cursor storage (compare-and-set commits).
    runs:
        Sync run record storage.
    adapters:
        Provider adapters keyed by provider name.
    appliers:
        Delta appliers keyed by provider name.
    registry:
        Single-flight registry; a private one is created when omitted.
    run_timeout:
        Wall-clock budget for one attempt, in seconds.
    """

    def __init__(
        self,
        *,
        vault: CredentialVault,
        cursors: CursorRepository,
        runs: RunRepository,
        adapters: Mapping[str, ProviderAdapter],
        appliers: Mapping[str, DeltaApplier],
        registry: RunRegistry | None = None,
        run_timeout: float = DEFAULT_RUN_TIMEOUT_SECONDS,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._vault = vault
        self._cursors = cursors
        self._runs = runs
        self._adapters = dict(adapters)
        self._appliers = dict(appliers)
        self._registry = registry or RunRegistry()
        self._run_timeout = run_timeout
        self._metrics = metrics or SyncMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))

        self._active_runs: dict[uuid.UUID, SyncRun] = {}

        # Fire-and-forget bookkeeping (event-loop confined).
        self._accepting = True
        self._tasks: dict[ResourceKey, asyncio.Task] = {}
        self._follow_ups: set[ResourceKey] = set()
        self._in_flight: set[asyncio.Task] = set()
        self._in_flight_event = asyncio.Event()
        self._in_flight_event.set()

    @property
    def registry(self) -> RunRegistry:
        return self._registry

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    async def start_run(
        self,
        key: ResourceKey,
        mode: SyncMode,
        *,
        run_id: uuid.UUID | None = None,
    ) -> SyncRun:
        """Create and persist a run record in STARTED state."""
        run = SyncRun(
            id=run_id or uuid.uuid4(),
            key=key,
            requested_mode=mode,
            mode=mode,
            started_at=self._clock(),
        )
        await self._runs.create(run)
        self._active_runs[run.id] = run
        self._metrics.run_started(key.provider)
        return run

    async def complete_run(self, run_id: uuid.UUID, result: RunResult) -> SyncRun:
        """Finalize a run exactly once.

        COMPLETED when *result* carries no fatal error (item errors are
        tolerated), FAILED otherwise.

        Raises
        ------
        RunFinalizedError
            If the run is unknown or was already finalized.
        """
        run = self._active_runs.get(run_id)
        tracked = run is not None
        if run is None:
            run = await self._runs.get(run_id)
        if run is None:
            raise RunFinalizedError(f"Run {run_id} is unknown")

        run.finalize(result, finished_at=self._clock())
        try:
            await self._runs.finalize(run)
        finally:
            if tracked:
                self._active_runs.pop(run_id, None)
                self._metrics.run_finished(
                    run.key.provider,
                    status=run.status.value,
                    mode=run.mode.value,
                    duration_ms=run.duration_ms or 0,
                )
        return run

    async def _advance(self, run: SyncRun, status: RunStatus) -> None:
        run.advance(status)
        await self._runs.mark_phase(run)

    # ------------------------------------------------------------------
    # Synchronous (awaited) entry point
    # ------------------------------------------------------------------

    async def sync(
        self,
        account_id: str,
        provider: str,
        resource_id: str,
        *,
        mode: SyncMode = SyncMode.INCREMENTAL,
    ) -> SyncRun:
        """Run one sync attempt and return its finalized record.

        Raises
        ------
        SyncInProgressError
            If a run for the same resource is already in flight.
        IntegrationNotConnectedError
            If the account has no active connection for *provider*.
        SyncFailedError
            If the run failed even after falling back to a full sync.
        """
        key = ResourceKey(account_id=account_id, provider=provider, resource_id=resource_id)
        adapter = self._adapters.get(key.provider)
        applier = self._appliers.get(key.provider)
        if adapter is None or applier is None:
            raise SyncError(f"No adapter/applier registered for provider {key.provider!r}")

        run_id = uuid.uuid4()
        if not self._registry.try_acquire(key, run_id):
            self._metrics.request_rejected(key.provider, outcome="rejected")
            raise SyncInProgressError(key)
        try:
            with structlog.contextvars.bound_contextvars(
                account_id=key.account_id,
                provider=key.provider,
                resource_id=key.resource_id,
                run_id=str(run_id),
            ):
                return await self._run(key, mode, run_id, adapter, applier)
        finally:
            self._registry.release(key, run_id)

    async def _run(
        self,
        key: ResourceKey,
        requested: SyncMode,
        run_id: uuid.UUID,
        adapter: ProviderAdapter,
        applier: DeltaApplier,
    ) -> SyncRun:
        with sync_span(
            account_id=key.account_id,
            provider=key.provider,
            resource_id=key.resource_id,
            requested_mode=requested.value,
        ) as span:
            cursor = await self._cursors.get(key)
            run = await self.start_run(key, requested, run_id=run_id)
            if cursor is None or requested is SyncMode.FULL:
                run.mode = SyncMode.FULL
            progress = _Progress(mode=run.mode)
            logger.info("Sync run started (requested=%s, mode=%s)", requested, run.mode)

            propagate: BaseException | None = None
            deadline = asyncio.timeout(self._run_timeout)
            try:
                async with deadline:
                    await self._execute(run, progress, cursor, adapter, applier)
            except TimeoutError as exc:
                if deadline.expired():
                    progress.fatal_error = (
                        f"Sync run exceeded its {self._run_timeout:g}s wall-clock budget"
                    )
                else:
                    # Raised by a call inside the run, e.g. a database command timeout.
                    progress.fatal_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Sync run aborted: %s", progress.fatal_error)
            except IntegrationNotConnectedError as exc:
                progress.fatal_error = str(exc)
                propagate = exc
            except asyncio.CancelledError as exc:
                progress.fatal_error = "Sync run was cancelled"
                propagate = exc
            except Exception as exc:
                progress.fatal_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Sync run aborted: %s", progress.fatal_error)

            run = await self.complete_run(run.id, progress.to_result())
            span.set_attribute("sync.mode", run.mode.value)
            span.set_attribute("sync.status", run.status.value)
            span.set_attribute("sync.items_synced", run.items_synced)
            span.set_attribute("sync.item_errors", len(run.item_errors))
            span.set_attribute("sync.fell_back_to_full", run.fell_back_to_full)
            logger.info(
                "Sync run %s (mode=%s, items=%d, item_errors=%d, duration_ms=%s)",
                run.status,
                run.mode,
                run.items_synced,
                len(run.item_errors),
                run.duration_ms,
            )

            if propagate is not None:
                raise propagate
            if run.status is RunStatus.FAILED and run.fell_back_to_full:
                raise SyncFailedError(run)
            return run

    async def _execute(
        self,
        run: SyncRun,
        progress: _Progress,
        cursor: SyncCursor | None,
        adapter: ProviderAdapter,
        applier: DeltaApplier,
    ) -> None:
        key = run.key
        await self._advance(run, RunStatus.FETCHING)

        token = await self._vault.get_valid_token(key.account_id, key.provider)
        if token is None:
            raise IntegrationNotConnectedError(key.account_id, key.provider)

        starting_cursor = cursor.value if cursor is not None else None
        fetch_cursor = starting_cursor if progress.mode is SyncMode.INCREMENTAL else None
        try:
            new_cursor = await self._fetch_and_apply(
                run, progress, token, fetch_cursor, adapter, applier
            )
        except CursorInvalidError as exc:
            if fetch_cursor is None:
                raise
            logger.warning("Provider rejected the cursor; falling back to a full sync: %s", exc)
            self._metrics.cursor_fallback(key.provider)
            await self._cursors.clear(
                key, reason=f"rejected by provider: {exc}", expected=starting_cursor
            )
            starting_cursor = None
            progress.mode = run.mode = SyncMode.FULL
            progress.fell_back_to_full = run.fell_back_to_full = True
            await self._advance(run, RunStatus.FETCHING)
            new_cursor = await self._fetch_and_apply(run, progress, token, None, adapter, applier)

        await self._advance(run, RunStatus.FINALIZING)
        if new_cursor is None:
            logger.warning("Terminal page carried no cursor; keeping the stored cursor")
            return
        await self._cursors.commit(key, new_cursor, expected=starting_cursor)
        progress.cursor_committed = True

    async def _fetch_and_apply(
        self,
        run: SyncRun,
        progress: _Progress,
        token: str,
        cursor: str | None,
        adapter: ProviderAdapter,
        applier: DeltaApplier,
    ) -> str | None:
        """Drive pagination to the terminal page; return its cursor."""
        page_token: str | None = None
        while True:
            if run.status is not RunStatus.FETCHING:
                await self._advance(run, RunStatus.FETCHING)
            page = await adapter.list_changes(
                token,
                resource_id=run.key.resource_id,
                cursor=cursor,
                page_token=page_token,
            )
            await self._advance(run, RunStatus.APPLYING)
            for error in page.item_errors:
                self._record_item_error(
                    run.key, progress, error.external_id, error.message, retryable=error.retryable
                )
            for item in page.items:
                await self._apply_item(run.key, item, progress, applier)

            if page.next_page_token is None:
                return page.next_cursor
            if page.next_page_token == page_token:
                raise ProviderError(
                    f"{adapter.name} returned the same page token twice; aborting pagination"
                )
            page_token = page.next_page_token

    async def _apply_item(
        self,
        key: ResourceKey,
        item: DeltaItem,
        progress: _Progress,
        applier: DeltaApplier,
    ) -> None:
        try:
            kind = await applier.apply(key, item)
        except StorageUnavailableError:
            raise
        except ItemApplyError as exc:
            self._record_item_error(
                key, progress, item.external_id, str(exc), retryable=exc.retryable
            )
        except (ValueError, TypeError, KeyError) as exc:
            self._record_item_error(key, progress, item.external_id, str(exc), retryable=False)
        except Exception as exc:
            self._record_item_error(
                key, progress, item.external_id, f"{type(exc).__name__}: {exc}", retryable=True
            )
        else:
            progress.items_synced += 1
            self._metrics.item_applied(key.provider, kind.value)

    def _record_item_error(
        self,
        key: ResourceKey,
        progress: _Progress,
        external_id: str,
        message: str,
        *,
        retryable: bool,
    ) -> None:
        progress.item_errors.append(
            ItemError(external_id=external_id, message=message, retryable=retryable)
        )
        self._metrics.item_failed(key.provider, retryable=retryable)
        logger.warning(
            "Failed to sync item %s (retryable=%s): %s", external_id, retryable, message
        )

    # ------------------------------------------------------------------
    # Fire-and-forget trigger
    # ------------------------------------------------------------------

    def request_sync(self, account_id: str, provider: str, resource_id: str) -> bool:
        """Schedule a sync without waiting for it.

        Returns True when a new background run was started.  Returns False
        when the request was folded into the follow-up of a run already in
        flight for the same resource, or when the orchestrator is draining.
        Outcomes are observable through the run log only.
        """
        key = ResourceKey(account_id=account_id, provider=provider, resource_id=resource_id)
        if not self._accepting:
            logger.warning("Not accepting sync requests (draining); dropped request for %s", key)
            return False

        if key in self._tasks:
            self._follow_ups.add(key)
            self._metrics.request_rejected(key.provider, outcome="coalesced")
            logger.debug("Sync for %s already in flight; coalesced into a follow-up", key)
            return False

        task = asyncio.create_task(self._triggered(key), name=f"courier-sync:{key}")
        self._tasks[key] = task
        self._in_flight.add(task)
        self._in_flight_event.clear()
        task.add_done_callback(self._on_task_done)
        return True

    async def _triggered(self, key: ResourceKey) -> None:
        try:
            while True:
                try:
                    await self.sync(key.account_id, key.provider, key.resource_id)
                except IntegrationNotConnectedError as exc:
                    logger.warning("Triggered sync skipped: %s", exc)
                except SyncFailedError as exc:
                    logger.error("Triggered sync failed: %s", exc)
                except SyncInProgressError:
                    logger.info("Triggered sync for %s skipped: another run holds the key", key)
                except Exception:
                    logger.exception("Triggered sync for %s crashed", key)

                if key not in self._follow_ups or not self._accepting:
                    break
                self._follow_ups.discard(key)
                logger.debug("Running coalesced follow-up sync for %s", key)
        finally:
            self._follow_ups.discard(key)
            self._tasks.pop(key, None)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if not self._in_flight:
            self._in_flight_event.set()

    def stop_accepting(self) -> None:
        """Refuse new triggered syncs; in-flight runs continue."""
        self._accepting = False
        logger.info("Orchestrator stopped accepting sync requests")

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for triggered syncs to finish, cancelling them after *timeout*.

        A cancelled run is finalized FAILED before its task exits.
        """
        self.stop_accepting()
        if not self._in_flight:
            logger.info("No in-flight syncs to drain")
            return

        logger.info("Draining %d in-flight sync(s) (timeout=%.1fs)", len(self._in_flight), timeout)
        try:
            await asyncio.wait_for(self._in_flight_event.wait(), timeout=timeout)
            logger.info("All in-flight syncs drained")
        except TimeoutError:
            remaining = list(self._in_flight)
            logger.warning(
                "Drain timeout after %.1fs; cancelling %d in-flight sync(s)",
                timeout,
                len(remaining),
            )
            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def shutdown(self, timeout: float = 30.0) -> None:
        await self.drain(timeout)
        for adapter in self._adapters.values():
            await adapter.shutdown()
