"""Courier runtime: wires config, storage, vault, adapters and orchestrator.

Startup sequence:
1. Load config
2. Configure logging, tracing and metrics
3. Provision database and open the pool
4. Run Alembic migrations
5. Build repositories, vault, provider adapters and appliers
6. Build the orchestrator (and, for long-running mode, the poller)

Shutdown reverses it: stop the poller, drain in-flight syncs, close
adapters and OAuth clients, close the pool.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

from courier.config import CourierConfig, load_config
from courier.core.logging import configure_logging
from courier.core.metrics import SyncMetrics, init_metrics
from courier.core.telemetry import init_telemetry
from courier.credentials.oauth import OAuthClient
from courier.credentials.store import PostgresCredentialRepository
from courier.credentials.vault import CredentialVault
from courier.crypto import KeyRing
from courier.db import Database
from courier.migrations import run_migrations
from courier.providers.gmail import GmailAdapter, MailMessageApplier
from courier.providers.google_calendar import CalendarAdapter, CalendarEventApplier
from courier.sync.adapter import ProviderAdapter
from courier.sync.applier import DeltaApplier
from courier.sync.orchestrator import SyncOrchestrator
from courier.sync.poller import SyncPoller
from courier.sync.store import PostgresCursorRepository, PostgresRunRepository

logger = logging.getLogger(__name__)


class RuntimeNotStartedError(RuntimeError):
    """Raised when a runtime component is used before ``start()``."""


def build_key_ring(config: CourierConfig) -> KeyRing:
    return KeyRing(
        default=config.encryption.key,
        tokens=config.encryption.token_key,
        pii=config.encryption.pii_key,
    )


def build_providers(
    config: CourierConfig,
    pool,
) -> tuple[dict[str, ProviderAdapter], dict[str, DeltaApplier]]:
    """Instantiate adapters and appliers for every configured known provider."""
    window = timedelta(days=config.sync.full_sync_window_days)
    adapters: dict[str, ProviderAdapter] = {}
    appliers: dict[str, DeltaApplier] = {}
    for name in config.providers:
        if name == "gmail":
            adapters[name] = GmailAdapter(page_size=config.sync.page_size, full_sync_window=window)
            appliers[name] = MailMessageApplier(pool)
        elif name == "google_calendar":
            adapters[name] = CalendarAdapter(
                page_size=config.sync.page_size, full_sync_window=window
            )
            appliers[name] = CalendarEventApplier(pool)
        else:
            logger.warning("Provider %r has OAuth settings but no sync adapter; skipping", name)
    return adapters, appliers


class CourierRuntime:
    """Owns every long-lived component of one courier process."""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir
        self.config: CourierConfig | None = None
        self.db: Database | None = None
        self.metrics: SyncMetrics | None = None
        self._vault: CredentialVault | None = None
        self._orchestrator: SyncOrchestrator | None = None
        self._cursors: PostgresCursorRepository | None = None
        self._runs: PostgresRunRepository | None = None
        self._poller: SyncPoller | None = None

    @property
    def vault(self) -> CredentialVault:
        if self._vault is None:
            raise RuntimeNotStartedError("Courier runtime is not started")
        return self._vault

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            raise RuntimeNotStartedError("Courier runtime is not started")
        return self._orchestrator

    @property
    def runs(self) -> PostgresRunRepository:
        if self._runs is None:
            raise RuntimeNotStartedError("Courier runtime is not started")
        return self._runs

    async def start(self, *, migrate: bool = True) -> None:
        # 1. Load config
        self.config = load_config(self.config_dir)
        config = self.config

        # 2. Logging, tracing, metrics
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=Path(config.logging.log_root) if config.logging.log_root else None,
            service_name=config.name,
        )
        init_telemetry(f"courier.{config.name}")
        init_metrics(f"courier.{config.name}")
        self.metrics = SyncMetrics()
        logger.info("Loaded config for courier: %s", config.name)

        # 3. Database
        self.db = Database.from_env(config.db_name, schema=config.db_schema)
        await self.db.provision()
        pool = await self.db.connect()

        # 4. Migrations
        if migrate:
            await run_migrations(self.db.url, schema=config.db_schema)

        # 5. Components
        keys = build_key_ring(config)
        oauth_clients = {name: OAuthClient(provider) for name, provider in config.providers.items()}
        self._vault = CredentialVault(
            PostgresCredentialRepository(pool),
            keys,
            oauth_clients=oauth_clients,
            refresh_buffer=timedelta(minutes=config.sync.token_refresh_buffer_minutes),
            metrics=self.metrics,
        )
        self._cursors = PostgresCursorRepository(pool)
        self._runs = PostgresRunRepository(pool)
        adapters, appliers = build_providers(config, pool)

        # 6. Orchestrator
        self._orchestrator = SyncOrchestrator(
            vault=self._vault,
            cursors=self._cursors,
            runs=self._runs,
            adapters=adapters,
            appliers=appliers,
            run_timeout=float(config.sync.run_timeout_seconds),
            metrics=self.metrics,
        )
        logger.info("Courier %s started (providers: %s)", config.name, ", ".join(adapters))

    def start_poller(self) -> SyncPoller:
        """Start the background poller for every configured resource."""
        config = self.config
        if config is None or self._runs is None:
            raise RuntimeNotStartedError("Courier runtime is not started")
        resources = {
            name: provider.resources
            for name, provider in config.providers.items()
            if name in self.orchestrator.providers
        }
        self._poller = SyncPoller(
            self.orchestrator,
            self.vault,
            self._runs,
            resources,
            interval=timedelta(minutes=config.sync.poll_interval_minutes),
            max_age=timedelta(minutes=config.sync.max_sync_age_minutes),
        )
        self._poller.start()
        return self._poller

    async def disconnect(self, account_id: str, provider: str) -> bool:
        """Deactivate credentials and clear every cursor of the connection.

        Cursor rows are kept; the next connection starts with a full sync.
        """
        if self._cursors is None:
            raise RuntimeNotStartedError("Courier runtime is not started")
        deactivated = await self.vault.disconnect(account_id, provider)
        cleared = await self._cursors.clear_account(account_id, provider, reason="disconnected")
        logger.info(
            "Disconnect account=%s provider=%s: deactivated=%s, cursors cleared=%d",
            account_id,
            provider,
            deactivated,
            cleared,
        )
        return deactivated

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the poller
        2. Drain in-flight syncs
        3. Close adapters and OAuth clients
        4. Close DB pool
        """
        logger.info("Shutting down courier: %s", self.config.name if self.config else "unknown")

        if self._poller is not None:
            await self._poller.stop()
            self._poller = None

        if self._orchestrator is not None:
            timeout = float(self.config.sync.drain_timeout_seconds) if self.config else 30.0
            try:
                await self._orchestrator.shutdown(timeout)
            except Exception:
                logger.exception("Error while draining sync orchestrator")

        if self._vault is not None:
            try:
                await self._vault.aclose()
            except Exception:
                logger.exception("Error while closing OAuth clients")

        if self.db is not None:
            await self.db.close()

        logger.info("Courier shutdown complete")
