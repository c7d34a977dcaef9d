"""Credential record persistence backed by the ``credential_records`` table.

Token columns only ever hold ciphertext produced by :mod:`courier.crypto`;
this module never sees plaintext tokens.

Every write is a single statement:

* ``upsert`` (authorization / re-authorization) reactivates the row.
* ``update_tokens`` (refresh) only applies while the row is active and still
  holds the access-token ciphertext the refresh started from, so a refresh
  racing a disconnect or a re-authorization cannot clobber the newer state.
* ``deactivate`` clears token columns and sets ``active = false``; the row is
  kept for audit.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field

from courier.db import rows_affected

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)


class CredentialRecord(BaseModel):
    """One (account, provider) credential row.

    When ``active`` is False the token fields are not trusted, even if
    populated.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: str
    provider: str
    access_token_enc: str | None = None
    refresh_token_enc: str | None = None
    token_expires_at: datetime | None = None
    scope: str | None = None
    external_account_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    connected_at: datetime | None = None
    last_connected_at: datetime | None = None
    disconnected_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def usable(self) -> bool:
        return self.active and bool(self.access_token_enc)

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(account_id={self.account_id!r}, provider={self.provider!r}, "
            f"active={self.active!r}, token_expires_at={self.token_expires_at!r}, "
            f"has_refresh_token={self.refresh_token_enc is not None})"
        )


class CredentialRepository(Protocol):
    """Storage contract used by :class:`~courier.credentials.vault.CredentialVault`."""

    async def get(self, account_id: str, provider: str) -> CredentialRecord | None: ...

    async def upsert(
        self,
        account_id: str,
        provider: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        token_expires_at: datetime | None,
        scope: str | None,
        external_account_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    async def update_tokens(
        self,
        account_id: str,
        provider: str,
        *,
        expected_access_token_enc: str,
        access_token_enc: str,
        refresh_token_enc: str | None,
        token_expires_at: datetime | None,
    ) -> bool: ...

    async def deactivate(self, account_id: str, provider: str) -> bool: ...

    async def list_active(self, provider: str | None = None) -> list[tuple[str, str]]: ...


_GET_SQL = """
SELECT account_id, provider, access_token_enc, refresh_token_enc, token_expires_at,
       scope, external_account_id, metadata, active, connected_at, last_connected_at,
       disconnected_at, updated_at
FROM credential_records
WHERE account_id = $1 AND provider = $2
"""

_UPSERT_SQL = """
INSERT INTO credential_records
    (account_id, provider, access_token_enc, refresh_token_enc, token_expires_at,
     scope, external_account_id, metadata, active, connected_at, last_connected_at,
     disconnected_at, updated_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, true, now(), now(), NULL, now())
ON CONFLICT (account_id, provider) DO UPDATE
SET access_token_enc    = EXCLUDED.access_token_enc,
    refresh_token_enc   = COALESCE(EXCLUDED.refresh_token_enc, credential_records.refresh_token_enc),
    token_expires_at    = EXCLUDED.token_expires_at,
    scope               = COALESCE(EXCLUDED.scope, credential_records.scope),
    external_account_id = COALESCE(EXCLUDED.external_account_id,
                                   credential_records.external_account_id),
    metadata            = credential_records.metadata || EXCLUDED.metadata,
    active              = true,
    last_connected_at   = now(),
    disconnected_at     = NULL,
    updated_at          = now()
"""

_UPDATE_TOKENS_SQL = """
UPDATE credential_records
SET access_token_enc  = $4,
    refresh_token_enc = COALESCE($5, refresh_token_enc),
    token_expires_at  = $6,
    updated_at        = now()
WHERE account_id = $1
  AND provider = $2
  AND active
  AND access_token_enc = $3
"""

_DEACTIVATE_SQL = """
UPDATE credential_records
SET access_token_enc  = NULL,
    refresh_token_enc = NULL,
    token_expires_at  = NULL,
    active            = false,
    disconnected_at   = now(),
    updated_at        = now()
WHERE account_id = $1 AND provider = $2 AND active
"""

_LIST_ACTIVE_SQL = """
SELECT account_id, provider
FROM credential_records
WHERE active AND ($1::text IS NULL OR provider = $1::text)
ORDER BY account_id, provider
"""


def _row_to_record(row: Any) -> CredentialRecord:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return CredentialRecord(
        account_id=row["account_id"],
        provider=row["provider"],
        access_token_enc=row["access_token_enc"],
        refresh_token_enc=row["refresh_token_enc"],
        token_expires_at=row["token_expires_at"],
        scope=row["scope"],
        external_account_id=row["external_account_id"],
        metadata=metadata or {},
        active=row["active"],
        connected_at=row["connected_at"],
        last_connected_at=row["last_connected_at"],
        disconnected_at=row["disconnected_at"],
        updated_at=row["updated_at"],
    )


class PostgresCredentialRepository:
    """asyncpg implementation of :class:`CredentialRepository`.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection for
        the duration of one statement.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, account_id: str, provider: str) -> CredentialRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_GET_SQL, account_id, provider)
        return _row_to_record(row) if row is not None else None

    async def upsert(
        self,
        account_id: str,
        provider: str,
        *,
        access_token_enc: str,
        refresh_token_enc: str | None,
        token_expires_at: datetime | None,
        scope: str | None,
        external_account_id: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                _UPSERT_SQL,
                account_id,
                provider,
                access_token_enc,
                refresh_token_enc,
                token_expires_at,
                scope,
                external_account_id,
                json.dumps(metadata or {}),
            )
        logger.info("Stored credentials for account=%s provider=%s", account_id, provider)

    async def update_tokens(
        self,
        account_id: str,
        provider: str,
        *,
        expected_access_token_enc: str,
        access_token_enc: str,
        refresh_token_enc: str | None,
        token_expires_at: datetime | None,
    ) -> bool:
        async with self._pool.acquire() as conn:
            status = await conn.execute(
                _UPDATE_TOKENS_SQL,
                account_id,
                provider,
                expected_access_token_enc,
                access_token_enc,
                refresh_token_enc,
                token_expires_at,
            )
        return rows_affected(status) > 0

    async def deactivate(self, account_id: str, provider: str) -> bool:
        async with self._pool.acquire() as conn:
            status = await conn.execute(_DEACTIVATE_SQL, account_id, provider)
        return rows_affected(status) > 0

    async def list_active(self, provider: str | None = None) -> list[tuple[str, str]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(_LIST_ACTIVE_SQL, provider)
        return [(row["account_id"], row["provider"]) for row in rows]
