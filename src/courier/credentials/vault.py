"""CredentialVault: encrypted OAuth token storage with transparent refresh.

``get_valid_token`` is the only way the sync engine obtains an access token.
It returns ``None`` for a missing or inactive connection, the stored token
when it is comfortably valid, and otherwise refreshes it first.

Refresh policy
--------------
* A token is *expiring soon* when its expiry is within ``refresh_buffer`` of
  now.  A token with no recorded expiry is only treated as expiring when a
  refresh token exists; with neither it is returned as-is.
* When the refresh call fails the previously stored access token is returned
  instead of an error.  A stale token fails downstream with an auth error
  and the next scheduled attempt refreshes again.
* Concurrent callers for the same (account, provider) share one refresh: the
  second caller waits on a per-key lock and re-reads the refreshed record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict

from courier.core.metrics import SyncMetrics
from courier.credentials.errors import (
    OAuthStateError,
    ProviderNotConfiguredError,
    TokenRefreshError,
)
from courier.credentials.oauth import (
    OAuthClient,
    OAuthState,
    TokenResponse,
    generate_state,
    parse_state,
)
from courier.credentials.store import CredentialRecord, CredentialRepository
from courier.crypto import KeyRing, decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


class IntegrationStatus(BaseModel):
    """Connection summary safe to show to a user (no token material)."""

    model_config = ConfigDict(extra="forbid")

    account_id: str
    provider: str
    connected: bool
    expires_at: datetime | None = None
    expiring_soon: bool = False
    scope: str | None = None
    external_account_id: str | None = None
    last_connected_at: datetime | None = None
    disconnected_at: datetime | None = None


class CredentialVault:
    """Owns the lifecycle of OAuth token pairs per (account, provider).

    Parameters
    ----------
    repository:
        Credential record storage.
    keys:
        Master key ring; tokens are sealed under the ``tokens`` key class.
    oauth_clients:
        Token-endpoint clients keyed by provider name.  A provider without a
        client can still serve stored tokens but can never refresh them.
    refresh_buffer:
        How close to expiry a token must be before it is refreshed.
    """

    def __init__(
        self,
        repository: CredentialRepository,
        keys: KeyRing,
        *,
        oauth_clients: Mapping[str, OAuthClient] | None = None,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
        metrics: SyncMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._repository = repository
        self._keys = keys
        self._oauth_clients: dict[str, OAuthClient] = dict(oauth_clients or {})
        self._refresh_buffer = refresh_buffer
        self._metrics = metrics or SyncMetrics()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._refresh_locks: dict[tuple[str, str], asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    async def get_valid_token(self, account_id: str, provider: str) -> str | None:
        """Return a usable access token, or None when not connected.

        Raises
        ------
        courier.crypto.EncryptionError
            If stored ciphertext is malformed or fails authentication.
        """
        record = await self._repository.get(account_id, provider)
        if record is None or not record.usable:
            return None
        if not self.is_expiring_soon(record):
            return await self._decrypt(record.access_token_enc)

        lock = self._refresh_locks.setdefault((account_id, provider), asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited.
            record = await self._repository.get(account_id, provider)
            if record is None or not record.usable:
                return None
            if not self.is_expiring_soon(record):
                return await self._decrypt(record.access_token_enc)
            return await self._refresh(record)

    def is_expiring_soon(self, record: CredentialRecord) -> bool:
        if record.token_expires_at is None:
            return record.refresh_token_enc is not None
        return record.token_expires_at <= self._clock() + self._refresh_buffer

    async def _refresh(self, record: CredentialRecord) -> str | None:
        assert record.access_token_enc is not None
        stale_token = await self._decrypt(record.access_token_enc)

        if record.refresh_token_enc is None:
            # Nothing to refresh with; the provider does not rotate this token.
            return stale_token

        client = self._oauth_clients.get(record.provider)
        if client is None:
            logger.warning(
                "No OAuth client configured for provider=%s; returning stored token",
                record.provider,
            )
            return stale_token

        refresh_token = await self._decrypt(record.refresh_token_enc)
        try:
            response = await client.refresh(refresh_token)
        except TokenRefreshError as exc:
            self._metrics.token_refresh(record.provider, success=False)
            logger.warning(
                "Token refresh failed for account=%s provider=%s; using stored token: %s",
                record.account_id,
                record.provider,
                exc,
            )
            return stale_token

        self._metrics.token_refresh(record.provider, success=True)
        access_enc, refresh_enc = await self._encrypt_pair(response)
        updated = await self._repository.update_tokens(
            record.account_id,
            record.provider,
            expected_access_token_enc=record.access_token_enc,
            access_token_enc=access_enc,
            refresh_token_enc=refresh_enc,
            token_expires_at=response.expires_at(self._clock()),
        )
        if not updated:
            current = await self._repository.get(record.account_id, record.provider)
            if current is None or not current.usable:
                logger.info(
                    "Credential for account=%s provider=%s was disconnected during refresh",
                    record.account_id,
                    record.provider,
                )
                return None
            logger.info(
                "Credential for account=%s provider=%s changed during refresh; "
                "keeping the newer stored tokens",
                record.account_id,
                record.provider,
            )
        else:
            logger.debug(
                "Refreshed access token for account=%s provider=%s",
                record.account_id,
                record.provider,
            )
        return response.access_token

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def store(
        self,
        account_id: str,
        provider: str,
        token_response: TokenResponse,
        *,
        external_account_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Encrypt and persist a token pair, (re)activating the connection.

        A response without a refresh token keeps the one already stored.
        """
        access_enc, refresh_enc = await self._encrypt_pair(token_response)
        await self._repository.upsert(
            account_id,
            provider,
            access_token_enc=access_enc,
            refresh_token_enc=refresh_enc,
            token_expires_at=token_response.expires_at(self._clock()),
            scope=token_response.scope,
            external_account_id=external_account_id,
            metadata=metadata,
        )

    async def disconnect(self, account_id: str, provider: str) -> bool:
        """Clear token fields and deactivate.  The row itself is kept.

        Returns True if an active connection was deactivated.
        """
        deactivated = await self._repository.deactivate(account_id, provider)
        if deactivated:
            logger.info("Disconnected account=%s provider=%s", account_id, provider)
        return deactivated

    async def get_status(self, account_id: str, provider: str) -> IntegrationStatus | None:
        record = await self._repository.get(account_id, provider)
        if record is None:
            return None
        return IntegrationStatus(
            account_id=record.account_id,
            provider=record.provider,
            connected=record.usable,
            expires_at=record.token_expires_at if record.active else None,
            expiring_soon=record.usable and self.is_expiring_soon(record),
            scope=record.scope,
            external_account_id=record.external_account_id,
            last_connected_at=record.last_connected_at,
            disconnected_at=record.disconnected_at,
        )

    async def list_connections(self, provider: str | None = None) -> list[tuple[str, str]]:
        return await self._repository.list_active(provider)

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def authorization_url(self, account_id: str, provider: str) -> str:
        """Consent URL carrying a signed state bound to (account, provider)."""
        client = self._client_for(provider)
        return client.build_authorization_url(generate_state(account_id, provider, self._keys))

    async def complete_authorization(
        self,
        state: str,
        code: str,
        *,
        external_account_id: str | None = None,
    ) -> OAuthState:
        """Verify *state*, exchange *code* and store the resulting tokens.

        Raises
        ------
        OAuthStateError
            If the state is forged, malformed or expired.
        TokenExchangeError
            If the provider rejects the code.
        """
        verified = parse_state(state, self._keys, now=self._clock())
        client = self._client_for(verified.provider)
        if client.provider != verified.provider:
            raise OAuthStateError("OAuth state provider does not match the client")
        response = await client.exchange_code(code)
        await self.store(
            verified.account_id,
            verified.provider,
            response,
            external_account_id=external_account_id,
        )
        return verified

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client_for(self, provider: str) -> OAuthClient:
        client = self._oauth_clients.get(provider)
        if client is None:
            raise ProviderNotConfiguredError(f"No OAuth client configured for {provider!r}")
        return client

    async def _decrypt(self, stored: str) -> str:
        # scrypt key derivation is CPU-bound; keep it off the event loop.
        return await asyncio.to_thread(decrypt_token, stored, self._keys)

    async def _encrypt_pair(self, response: TokenResponse) -> tuple[str, str | None]:
        access_enc = await asyncio.to_thread(encrypt_token, response.access_token, self._keys)
        refresh_enc = None
        if response.refresh_token:
            refresh_enc = await asyncio.to_thread(
                encrypt_token, response.refresh_token, self._keys
            )
        return access_enc, refresh_enc

    async def aclose(self) -> None:
        for client in self._oauth_clients.values():
            await client.aclose()
