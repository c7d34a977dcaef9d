"""CLI for courier: migrations, manual syncs, connection management."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click

from courier import __version__
from courier.config import ConfigError
from courier.credentials.errors import CredentialError
from courier.sync.errors import SyncFailedError, SyncInProgressError
from courier.sync.models import ResourceKey, SyncMode, SyncRun

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")

T = TypeVar("T")

config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    show_default=True,
    help="Directory containing courier.toml",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Courier: credential-bound incremental sync for mail and calendar."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


def _run_with_runtime(
    config_dir: Path,
    action: Callable[..., Awaitable[T]],
    *,
    migrate: bool = False,
) -> T:
    """Start a runtime, run *action(runtime)*, and always shut it down."""
    from courier.daemon import CourierRuntime

    async def _main() -> T:
        runtime = CourierRuntime(config_dir)
        try:
            await runtime.start(migrate=migrate)
            return await action(runtime)
        finally:
            await runtime.shutdown()

    try:
        return asyncio.run(_main())
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)


def _echo_run(run: SyncRun) -> None:
    click.echo(
        f"{run.id}  {run.status.value:<10} {run.mode.value:<12} "
        f"items={run.items_synced:<5} errors={len(run.item_errors):<4} "
        f"{'fallback ' if run.fell_back_to_full else ''}"
        f"started={run.started_at.isoformat()}"
    )
    if run.fatal_error:
        click.echo(f"    fatal: {run.fatal_error}")
    for error in run.item_errors:
        retry = "retryable" if error.retryable else "permanent"
        click.echo(f"    item {error.external_id} ({retry}): {error.message}")


@cli.command()
@config_option
def migrate(config_dir: Path) -> None:
    """Provision the database and apply schema migrations."""

    async def _noop(runtime) -> None:
        return None

    _run_with_runtime(config_dir, _noop, migrate=True)
    click.echo("Migrations applied")


@cli.command()
@config_option
@click.argument("account_id")
@click.argument("provider")
@click.argument("resource_id")
@click.option("--full", is_flag=True, help="Force a full sync even if a cursor exists")
def sync(config_dir: Path, account_id: str, provider: str, resource_id: str, full: bool) -> None:
    """Run one sync for a resource and wait for the result."""
    mode = SyncMode.FULL if full else SyncMode.INCREMENTAL

    async def _sync(runtime) -> SyncRun:
        return await runtime.orchestrator.sync(account_id, provider, resource_id, mode=mode)

    try:
        run = _run_with_runtime(config_dir, _sync)
    except SyncFailedError as exc:
        _echo_run(exc.run)
        click.echo(f"Sync failed: {exc}", err=True)
        sys.exit(1)
    except (CredentialError, SyncInProgressError) as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)

    _echo_run(run)
    if not run.succeeded:
        sys.exit(1)


@cli.command()
@config_option
@click.argument("account_id")
@click.argument("provider")
def status(config_dir: Path, account_id: str, provider: str) -> None:
    """Show the connection status for an account and provider."""

    async def _status(runtime):
        return await runtime.vault.get_status(account_id, provider)

    result = _run_with_runtime(config_dir, _status)
    if result is None:
        click.echo(f"{provider} has never been connected for {account_id}")
        sys.exit(1)
    state = "connected" if result.connected else "not connected, please reconnect"
    click.echo(f"{provider} for {account_id}: {state}")
    if result.expires_at is not None:
        soon = " (refresh due)" if result.expiring_soon else ""
        click.echo(f"  token expires: {result.expires_at.isoformat()}{soon}")
    if result.scope:
        click.echo(f"  scope: {result.scope}")
    if result.external_account_id:
        click.echo(f"  external account: {result.external_account_id}")
    if result.last_connected_at is not None:
        click.echo(f"  last connected: {result.last_connected_at.isoformat()}")


@cli.command()
@config_option
@click.argument("account_id")
@click.argument("provider")
def disconnect(config_dir: Path, account_id: str, provider: str) -> None:
    """Deactivate a connection and clear its sync cursors."""

    async def _disconnect(runtime) -> bool:
        return await runtime.disconnect(account_id, provider)

    if _run_with_runtime(config_dir, _disconnect):
        click.echo(f"Disconnected {provider} for {account_id}")
    else:
        click.echo(f"{provider} was not connected for {account_id}")


@cli.command()
@config_option
@click.argument("account_id")
@click.argument("provider")
@click.argument("resource_id")
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
def runs(config_dir: Path, account_id: str, provider: str, resource_id: str, limit: int) -> None:
    """List recent sync runs for a resource, newest first."""
    key = ResourceKey(account_id=account_id, provider=provider, resource_id=resource_id)

    async def _runs(runtime) -> list[SyncRun]:
        return await runtime.runs.list_runs(key, limit=limit)

    history = _run_with_runtime(config_dir, _runs)
    if not history:
        click.echo(f"No sync runs recorded for {key}")
        return
    for run in history:
        _echo_run(run)


@cli.command("authorize-url")
@config_option
@click.argument("account_id")
@click.argument("provider")
def authorize_url(config_dir: Path, account_id: str, provider: str) -> None:
    """Print the consent URL that starts a connection."""

    async def _url(runtime) -> str:
        return runtime.vault.authorization_url(account_id, provider)

    try:
        click.echo(_run_with_runtime(config_dir, _url))
    except CredentialError as exc:
        click.echo(str(exc), err=True)
        sys.exit(1)


@cli.command()
@config_option
@click.argument("state")
@click.argument("code")
@click.option("--external-account-id", default=None, help="Provider-side account identifier")
def connect(config_dir: Path, state: str, code: str, external_account_id: str | None) -> None:
    """Complete an authorization callback and store the tokens."""

    async def _connect(runtime):
        return await runtime.vault.complete_authorization(
            state, code, external_account_id=external_account_id
        )

    try:
        verified = _run_with_runtime(config_dir, _connect)
    except CredentialError as exc:
        click.echo(f"Connection failed: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Connected {verified.provider} for {verified.account_id}")


@cli.command()
@config_option
def poll(config_dir: Path) -> None:
    """Keep connected resources fresh until interrupted."""
    click.echo(f"Starting courier poller from {config_dir}")
    try:
        asyncio.run(_poll(config_dir))
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)


async def _poll(config_dir: Path) -> None:
    from courier.daemon import CourierRuntime

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    runtime = CourierRuntime(config_dir)
    try:
        await runtime.start()
        runtime.start_poller()
        await shutdown_event.wait()
    finally:
        await runtime.shutdown()
