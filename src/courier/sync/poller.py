"""Scheduled trigger: periodically request syncs for stale resources.

Every ``interval`` the poller walks each active connection and each of its
provider's configured resources, and calls
:meth:`SyncOrchestrator.request_sync` for resources whose last successful
run is older than ``max_age`` (or that never synced).  The poller never
waits on a run; single-flight and coalescing live in the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from courier.sync.models import ResourceKey

if TYPE_CHECKING:
    from courier.credentials.vault import CredentialVault
    from courier.sync.orchestrator import SyncOrchestrator
    from courier.sync.store import RunRepository

logger = logging.getLogger(__name__)


def is_sync_needed(
    last_success_at: datetime | None,
    *,
    max_age: timedelta,
    now: datetime | None = None,
) -> bool:
    """True when a resource never synced or its last success is too old."""
    if last_success_at is None:
        return True
    return (now or datetime.now(UTC)) - last_success_at >= max_age


class SyncPoller:
    """Background task that requests syncs on a fixed interval.

    Args:
        orchestrator: Receives ``request_sync`` calls.
        vault: Lists active connections.
        runs: Answers ``last_success_at`` per resource.
        resources: Resource ids to keep fresh, keyed by provider name.
        interval: Time between polling passes.
        max_age: Staleness threshold for requesting a sync.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        vault: CredentialVault,
        runs: RunRepository,
        resources: Mapping[str, Sequence[str]],
        *,
        interval: timedelta = timedelta(minutes=15),
        max_age: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._vault = vault
        self._runs = runs
        self._resources = {provider: list(ids) for provider, ids in resources.items()}
        self._interval = interval
        self._max_age = max_age
        self._clock = clock or (lambda: datetime.now(UTC))
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> list[ResourceKey]:
        """Run one polling pass; return the keys a new sync was started for."""
        started: list[ResourceKey] = []
        now = self._clock()
        for account_id, provider in await self._vault.list_connections():
            resource_ids = self._resources.get(provider)
            if not resource_ids:
                logger.debug("No resources configured for provider=%s; skipping", provider)
                continue
            for resource_id in resource_ids:
                key = ResourceKey(account_id=account_id, provider=provider, resource_id=resource_id)
                last_success = await self._runs.last_success_at(key)
                if not is_sync_needed(last_success, max_age=self._max_age, now=now):
                    continue
                if self._orchestrator.request_sync(account_id, provider, resource_id):
                    started.append(key)
        if started:
            logger.info("Poll requested %d sync(s)", len(started))
        return started

    def start(self) -> None:
        """Start the polling background task."""
        if self.running:
            logger.warning("Sync poller already running")
            return
        self._task = asyncio.create_task(self._loop(), name="courier-sync-poller")
        logger.info(
            "Started sync poller (interval=%s, max_age=%s)", self._interval, self._max_age
        )

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to exit."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sync poller stopped")

    async def _loop(self) -> None:
        try:
            while True:
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("Sync polling pass failed")
                await asyncio.sleep(self._interval.total_seconds())
        except asyncio.CancelledError:
            logger.debug("Sync poller loop cancelled")
            raise
