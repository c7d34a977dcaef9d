"""Tests for CredentialVault: refresh policy, stale fallback, lifecycle, handshake.

A real OAuthClient talks to an ``httpx.MockTransport`` token endpoint; the
credential table is the in-memory repository from ``tests._doubles``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from courier.config import ProviderConfig
from courier.credentials.errors import (
    OAuthStateError,
    ProviderNotConfiguredError,
    TokenExchangeError,
)
from courier.credentials.oauth import OAuthClient, TokenResponse, generate_state
from courier.credentials.vault import CredentialVault
from courier.crypto import DecryptionError, KeyRing, decrypt_token
from tests._doubles import FrozenClock, InMemoryCredentialRepository

pytestmark = pytest.mark.unit

ACCOUNT = "acct-1"
PROVIDER = "gmail"
TOKEN_URL = "https://oauth.example.test/token"


def _provider_config(name: str = PROVIDER) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://courier.example.test/callback",
        auth_url="https://oauth.example.test/auth",
        token_url=TOKEN_URL,
        scopes=["mail.read"],
    )


class _TokenEndpoint:
    """Scriptable token endpoint recording every form it receives."""

    def __init__(self) -> None:
        self.requests: list[dict[str, list[str]]] = []
        self.status_code = 200
        self.payload: object = {"access_token": "fresh-token", "expires_in": 3600}
        self.on_request: Callable[[], None] | None = None
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(parse_qs(request.content.decode()))
        if self.on_request is not None:
            self.on_request()
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json=self.payload)


class _Fixture:
    def __init__(self, keys: KeyRing, clock: FrozenClock, *, with_client: bool = True) -> None:
        self.keys = keys
        self.clock = clock
        self.repo = InMemoryCredentialRepository()
        self.endpoint = _TokenEndpoint()
        self.http = httpx.AsyncClient(transport=httpx.MockTransport(self.endpoint))
        clients = (
            {PROVIDER: OAuthClient(_provider_config(), http_client=self.http)}
            if with_client
            else {}
        )
        self.vault = CredentialVault(
            self.repo,
            keys,
            oauth_clients=clients,
            refresh_buffer=timedelta(minutes=5),
            clock=clock,
        )

    async def connect(
        self,
        *,
        access_token: str = "stored-token",
        refresh_token: str | None = "refresh-1",
        expires_in: int | None = 3600,
    ) -> None:
        await self.vault.store(
            ACCOUNT,
            PROVIDER,
            TokenResponse(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=expires_in,
                scope="mail.read",
            ),
            external_account_id="user@example.test",
        )

    def stored_access_token(self) -> str:
        record = self.repo.records[(ACCOUNT, PROVIDER)]
        assert record.access_token_enc is not None
        return decrypt_token(record.access_token_enc, self.keys)

    def stored_refresh_token(self) -> str | None:
        record = self.repo.records[(ACCOUNT, PROVIDER)]
        if record.refresh_token_enc is None:
            return None
        return decrypt_token(record.refresh_token_enc, self.keys)


@pytest.fixture
async def fx(key_ring: KeyRing, clock: FrozenClock):
    fixture = _Fixture(key_ring, clock)
    yield fixture
    await fixture.http.aclose()


# ---------------------------------------------------------------------------
# Refresh policy
# ---------------------------------------------------------------------------


class TestGetValidToken:
    async def test_token_expiring_in_four_minutes_is_refreshed(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=4 * 60)

        token = await fx.vault.get_valid_token(ACCOUNT, PROVIDER)

        assert token == "fresh-token"
        assert len(fx.endpoint.requests) == 1
        form = fx.endpoint.requests[0]
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert fx.stored_access_token() == "fresh-token"
        # Provider did not rotate the refresh token; the old one is kept.
        assert fx.stored_refresh_token() == "refresh-1"
        record = fx.repo.records[(ACCOUNT, PROVIDER)]
        assert record.token_expires_at == fx.clock() + timedelta(seconds=3600)

    async def test_token_expiring_in_ten_minutes_is_not_refreshed(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=10 * 60)

        token = await fx.vault.get_valid_token(ACCOUNT, PROVIDER)

        assert token == "stored-token"
        assert fx.endpoint.requests == []
        assert fx.repo.update_calls == 0

    async def test_already_expired_token_is_refreshed(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)
        fx.clock.advance(hours=2)

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "fresh-token"

    async def test_rotated_refresh_token_is_stored(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)
        fx.endpoint.payload = {
            "access_token": "fresh-token",
            "refresh_token": "refresh-2",
            "expires_in": 3600,
        }

        await fx.vault.get_valid_token(ACCOUNT, PROVIDER)

        assert fx.stored_refresh_token() == "refresh-2"

    async def test_refresh_failure_returns_stale_token(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)
        fx.endpoint.status_code = 400
        fx.endpoint.payload = {"error": "invalid_grant", "error_description": "Token revoked"}

        token = await fx.vault.get_valid_token(ACCOUNT, PROVIDER)

        assert token == "stored-token"
        assert fx.repo.update_calls == 0
        assert fx.stored_access_token() == "stored-token"

    async def test_transport_failure_returns_stale_token(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)
        fx.endpoint.error = httpx.ConnectError("connection refused")

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "stored-token"

    async def test_without_refresh_token_returns_stored_token(self, fx: _Fixture) -> None:
        await fx.connect(refresh_token=None, expires_in=60)

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "stored-token"
        assert fx.endpoint.requests == []

    async def test_unknown_expiry_with_refresh_token_is_refreshed(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=None)

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "fresh-token"

    async def test_unknown_expiry_without_refresh_token_is_used_as_is(self, fx: _Fixture) -> None:
        await fx.connect(refresh_token=None, expires_in=None)

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "stored-token"
        assert fx.endpoint.requests == []

    async def test_no_oauth_client_returns_stale_token(
        self, key_ring: KeyRing, clock: FrozenClock
    ) -> None:
        fixture = _Fixture(key_ring, clock, with_client=False)
        try:
            await fixture.connect(expires_in=60)
            assert await fixture.vault.get_valid_token(ACCOUNT, PROVIDER) == "stored-token"
        finally:
            await fixture.http.aclose()

    async def test_concurrent_callers_share_one_refresh(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)

        tokens = await asyncio.gather(
            *(fx.vault.get_valid_token(ACCOUNT, PROVIDER) for _ in range(5))
        )

        assert tokens == ["fresh-token"] * 5
        assert len(fx.endpoint.requests) == 1

    async def test_missing_connection_returns_none(self, fx: _Fixture) -> None:
        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) is None

    async def test_disconnected_connection_returns_none(self, fx: _Fixture) -> None:
        await fx.connect()
        await fx.vault.disconnect(ACCOUNT, PROVIDER)

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) is None

    async def test_disconnect_during_refresh_wins(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=60)

        def _disconnect_mid_refresh() -> None:
            record = fx.repo.records[(ACCOUNT, PROVIDER)]
            record.active = False
            record.access_token_enc = None

        fx.endpoint.on_request = _disconnect_mid_refresh

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) is None
        assert fx.repo.records[(ACCOUNT, PROVIDER)].active is False

    async def test_tampered_ciphertext_raises(self, fx: _Fixture) -> None:
        await fx.connect()
        record = fx.repo.records[(ACCOUNT, PROVIDER)]
        salt, iv, tag, ciphertext = record.access_token_enc.split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]
        record.access_token_enc = ":".join((salt, iv, tag, flipped))

        with pytest.raises(DecryptionError):
            await fx.vault.get_valid_token(ACCOUNT, PROVIDER)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_store_encrypts_tokens(self, fx: _Fixture) -> None:
        await fx.connect()

        record = fx.repo.records[(ACCOUNT, PROVIDER)]
        assert "stored-token" not in record.access_token_enc
        assert len(record.access_token_enc.split(":")) == 4
        assert fx.stored_access_token() == "stored-token"
        assert record.external_account_id == "user@example.test"

    async def test_disconnect_is_soft(self, fx: _Fixture) -> None:
        await fx.connect()

        assert await fx.vault.disconnect(ACCOUNT, PROVIDER) is True
        assert await fx.vault.disconnect(ACCOUNT, PROVIDER) is False

        record = fx.repo.records[(ACCOUNT, PROVIDER)]
        assert record.active is False
        assert record.access_token_enc is None
        assert record.refresh_token_enc is None
        assert record.disconnected_at is not None

    async def test_reconnect_reactivates(self, fx: _Fixture) -> None:
        await fx.connect()
        await fx.vault.disconnect(ACCOUNT, PROVIDER)
        await fx.connect(access_token="second-token")

        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "second-token"

    async def test_status_reports_expiry(self, fx: _Fixture) -> None:
        await fx.connect(expires_in=120)

        status = await fx.vault.get_status(ACCOUNT, PROVIDER)

        assert status is not None
        assert status.connected is True
        assert status.expiring_soon is True
        assert status.expires_at == fx.clock() + timedelta(seconds=120)
        assert status.scope == "mail.read"
        assert "stored-token" not in status.model_dump_json()

    async def test_status_after_disconnect(self, fx: _Fixture) -> None:
        await fx.connect()
        await fx.vault.disconnect(ACCOUNT, PROVIDER)

        status = await fx.vault.get_status(ACCOUNT, PROVIDER)

        assert status is not None
        assert status.connected is False
        assert status.expires_at is None
        assert status.disconnected_at is not None

    async def test_status_unknown_is_none(self, fx: _Fixture) -> None:
        assert await fx.vault.get_status(ACCOUNT, PROVIDER) is None

    async def test_list_connections_skips_inactive(self, fx: _Fixture) -> None:
        await fx.connect()
        await fx.vault.store("acct-2", PROVIDER, TokenResponse(access_token="t2"))
        await fx.vault.disconnect("acct-2", PROVIDER)

        assert await fx.vault.list_connections() == [(ACCOUNT, PROVIDER)]


# ---------------------------------------------------------------------------
# Authorization handshake
# ---------------------------------------------------------------------------


class TestAuthorization:
    def test_authorization_url_carries_signed_state(self, fx: _Fixture) -> None:
        url = fx.vault.authorization_url(ACCOUNT, PROVIDER)

        query = parse_qs(urlsplit(url).query)
        assert url.startswith("https://oauth.example.test/auth?")
        assert query["access_type"] == ["offline"]
        assert "." in query["state"][0]

    def test_authorization_url_unknown_provider(self, fx: _Fixture) -> None:
        with pytest.raises(ProviderNotConfiguredError):
            fx.vault.authorization_url(ACCOUNT, "dropbox")

    async def test_complete_authorization_stores_tokens(self, fx: _Fixture) -> None:
        fx.endpoint.payload = {
            "access_token": "granted-token",
            "refresh_token": "granted-refresh",
            "expires_in": 3600,
            "scope": "mail.read",
        }
        state = generate_state(ACCOUNT, PROVIDER, fx.keys, now=fx.clock())

        verified = await fx.vault.complete_authorization(
            state, "auth-code", external_account_id="user@example.test"
        )

        assert verified.account_id == ACCOUNT
        assert verified.provider == PROVIDER
        assert fx.endpoint.requests[0]["grant_type"] == ["authorization_code"]
        assert fx.endpoint.requests[0]["code"] == ["auth-code"]
        assert await fx.vault.get_valid_token(ACCOUNT, PROVIDER) == "granted-token"
        assert fx.stored_refresh_token() == "granted-refresh"

    async def test_forged_state_is_rejected(self, fx: _Fixture) -> None:
        forged_keys = KeyRing(default="other-secret", tokens="t", pii="p")
        state = generate_state(ACCOUNT, PROVIDER, forged_keys, now=fx.clock())

        with pytest.raises(OAuthStateError):
            await fx.vault.complete_authorization(state, "auth-code")
        assert fx.endpoint.requests == []

    async def test_rejected_code_stores_nothing(self, fx: _Fixture) -> None:
        fx.endpoint.status_code = 400
        fx.endpoint.payload = {"error": "invalid_grant"}
        state = generate_state(ACCOUNT, PROVIDER, fx.keys, now=fx.clock())

        with pytest.raises(TokenExchangeError, match="invalid_grant"):
            await fx.vault.complete_authorization(state, "bad-code")
        assert fx.repo.records == {}

    async def test_state_for_unconfigured_provider(self, fx: _Fixture) -> None:
        state = generate_state(ACCOUNT, "dropbox", fx.keys, now=fx.clock())

        with pytest.raises(ProviderNotConfiguredError):
            await fx.vault.complete_authorization(state, "code")

