"""Postgres connection settings, database provisioning and the asyncpg pool."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "COURIER_DATABASE_URL"

_SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Server-side cap on any single statement.
_STATEMENT_TIMEOUT_MS = "30000"


@dataclass(frozen=True)
class ConnectionSettings:
    """Server coordinates shared by every courier database."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    sslmode: str | None = None

    @classmethod
    def from_env(cls) -> ConnectionSettings:
        """Read ``COURIER_DATABASE_URL``, else the ``POSTGRES_*`` variables."""
        url = os.environ.get(DATABASE_URL_ENV)
        if url:
            parsed = urlparse(url)
            sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
            return cls(
                host=parsed.hostname or "localhost",
                port=parsed.port or 5432,
                user=parsed.username or "postgres",
                password=parsed.password or "postgres",
                sslmode=_check_sslmode(sslmode),
            )
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "postgres"),
            password=os.environ.get("POSTGRES_PASSWORD", "postgres"),
            sslmode=_check_sslmode(os.environ.get("POSTGRES_SSLMODE")),
        )


def _check_sslmode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown PostgreSQL sslmode %r", value)
        return None
    return mode


def _check_identifier(value: str | None, what: str) -> str | None:
    if value is None or not value.strip():
        return None
    name = value.strip()
    if _IDENTIFIER_RE.fullmatch(name) is None:
        raise ValueError(f"Invalid {what}: {value!r}")
    return name


class Database:
    """One courier database: provisioning plus its connection pool.

    Parameters
    ----------
    db_name:
        Database to create (if missing) and connect to.
    schema:
        Optional schema placed first on the pool's ``search_path``.
    """

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        *,
        settings: ConnectionSettings | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        **overrides: Any,
    ) -> None:
        base = settings or ConnectionSettings()
        if overrides:
            base = replace(base, **overrides)
        self.db_name = db_name
        self.schema = _check_identifier(schema, "schema name")
        self.settings = base
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        return cls(db_name, schema, settings=ConnectionSettings.from_env())

    @property
    def url(self) -> str:
        """libpq URL for this database; alembic's engine is built from it."""
        s = self.settings
        url = (
            f"postgresql://{quote(s.user, safe='')}:{quote(s.password, safe='')}"
            f"@{s.host}:{s.port}/{self.db_name}"
        )
        if s.sslmode is not None:
            url += f"?sslmode={s.sslmode}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        s = self.settings
        kwargs: dict[str, Any] = {
            "host": s.host,
            "port": s.port,
            "user": s.user,
            "password": s.password,
            "database": database,
        }
        if s.sslmode is not None:
            kwargs["ssl"] = s.sslmode
        return kwargs

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance database if absent."""
        conn = await asyncpg.connect(**self._connect_kwargs("postgres"))
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.debug("Database %s already exists", self.db_name)
                return
            # Identifiers cannot be bound as parameters.
            quoted = '"' + self.db_name.replace('"', '""') + '"'
            await conn.execute(f"CREATE DATABASE {quoted} TEMPLATE template0")
            logger.info("Created database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        server_settings = {"statement_timeout": _STATEMENT_TIMEOUT_MS}
        if self.schema is not None:
            server_settings["search_path"] = f"{self.schema},public"
        self.pool = await asyncpg.create_pool(
            **self._connect_kwargs(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            server_settings=server_settings,
        )
        logger.info(
            "Connected to %s (pool %d-%d)", self.db_name, self.min_pool_size, self.max_pool_size
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Closed connection pool for %s", self.db_name)


def rows_affected(status: str) -> int:
    """Trailing row count of an asyncpg command status tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
