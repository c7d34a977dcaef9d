"""Root conftest: a shared Postgres testcontainer for the integration tests."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

logger = logging.getLogger(__name__)

# Docker daemon messages seen when a container is torn down while the daemon
# is still reaping it.  Anything else propagates.
_TEARDOWN_RACE_MARKERS = (
    "did not receive an exit event",
    "no such container",
    "removal of container",
    "is already in progress",
    "is dead or marked for removal",
)


def _stop_container(container: PostgresContainer, *, attempts: int = 4) -> None:
    delay = 0.1
    for attempt in range(1, attempts + 1):
        try:
            container.stop()
            return
        except Exception as exc:
            text = f"{getattr(exc, 'explanation', '') or ''} {exc}".lower()
            if attempt == attempts or not any(m in text for m in _TEARDOWN_RACE_MARKERS):
                raise
            logger.warning("Container teardown race (attempt %d/%d): %s", attempt, attempts, exc)
            time.sleep(delay)
            delay *= 2


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """One Postgres 16 container per session; each test gets its own database."""
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16")
    container.start()
    try:
        yield container
    finally:
        _stop_container(container)


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Factory for a pool on a fresh database with the courier tables created.

    Usage::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from courier.db import ConnectionSettings, Database
    from courier.schema import ensure_schema

    settings = ConnectionSettings(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )

    @asynccontextmanager
    async def _provision(*, max_pool_size: int = 3) -> AsyncIterator[Pool]:
        db = Database(
            f"test_{uuid.uuid4().hex[:12]}",
            settings=settings,
            min_pool_size=1,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            await ensure_schema(pool)
            yield pool
        finally:
            await db.close()

    return _provision
