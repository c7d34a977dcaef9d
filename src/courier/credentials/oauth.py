"""OAuth 2.0 authorization-code helpers.

Covers the three token-endpoint interactions the vault needs (authorization
URL, code exchange, refresh) plus a signed ``state`` parameter that binds an
authorization callback to the (account, provider) that started it.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from courier.config import ProviderConfig
from courier.credentials.errors import OAuthStateError, TokenExchangeError, TokenRefreshError
from courier.crypto import KeyClass, KeyRing

logger = logging.getLogger(__name__)

STATE_MAX_AGE = timedelta(minutes=10)
DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenResponse(BaseModel):
    """Token endpoint payload, normalized.

    Providers disagree on ``expires_in`` (number, numeric string, zero); any
    value that is present but unusable becomes an hour.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    token_type: str | None = None

    @field_validator("access_token")
    @classmethod
    def _access_token_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("access_token is blank")
        return value.strip()

    @field_validator("refresh_token", "scope", "token_type", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @field_validator("expires_in", mode="before")
    @classmethod
    def _expires_in_seconds(cls, value: Any) -> int | None:
        if value is None:
            return None
        if isinstance(value, str) and value.strip().isdigit():
            value = int(value.strip())
        if isinstance(value, int | float) and not isinstance(value, bool) and value > 0:
            return int(value)
        return DEFAULT_EXPIRES_IN_SECONDS

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)

    def __repr__(self) -> str:
        return (
            "TokenResponse(access_token=<redacted>, "
            f"refresh_token={'<redacted>' if self.refresh_token else None}, "
            f"expires_in={self.expires_in!r}, scope={self.scope!r})"
        )


class OAuthState(BaseModel):
    """Decoded, verified OAuth ``state`` parameter."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    account_id: str
    provider: str
    issued_at: datetime


def _one_line(text: str, limit: int = 200) -> str:
    return " ".join(text.split())[:limit]


def safe_error_message(response: httpx.Response) -> str:
    """Short single-line reason from an error response, never the raw body at length.

    Google nests ``{"error": {"message": ...}}``; OAuth token endpoints use
    ``error_description`` or a bare ``error`` code.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    candidates: list[Any] = []
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            candidates.append(error.get("message"))
        candidates += [payload.get("error_description"), payload.get("message"), error]
    candidates.append(response.text)

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return _one_line(candidate)
    return "unknown error"


class OAuthClient:
    """Token-endpoint client for one provider.

    Parameters
    ----------
    config:
        Provider OAuth settings (client id/secret, endpoints, scopes).
    http_client:
        Optional shared ``httpx.AsyncClient``.  When omitted the client owns
        one and closes it in :meth:`aclose`.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(20.0, connect=10.0))
        )

    @property
    def provider(self) -> str:
        return self._config.name

    def build_authorization_url(self, state: str) -> str:
        """Consent URL requesting offline access so a refresh token is issued."""
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{self._config.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for a token pair.

        Raises
        ------
        TokenExchangeError
            On transport failure, non-2xx status or an unusable payload.
        """
        if not code or not code.strip():
            raise TokenExchangeError("Authorization code must be a non-empty string")
        return await self._token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": code.strip(),
                "redirect_uri": self._config.redirect_uri,
                "grant_type": "authorization_code",
            },
            error_cls=TokenExchangeError,
            action="authorization code exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises
        ------
        TokenRefreshError
            On transport failure, non-2xx status or an unusable payload.
        """
        return await self._token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            error_cls=TokenRefreshError,
            action="token refresh",
        )

    async def _token_request(
        self,
        data: dict[str, str],
        *,
        error_cls: type[TokenRefreshError] | type[TokenExchangeError],
        action: str,
    ) -> TokenResponse:
        provider = self._config.name
        try:
            response = await self._http_client.post(
                self._config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"{provider} {action} request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise error_cls(
                f"{provider} {action} failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(f"{provider} token endpoint returned invalid JSON") from exc

        if not isinstance(payload, dict):
            raise error_cls(f"{provider} token endpoint payload must be a JSON object")

        try:
            return TokenResponse.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(sorted({str(err["loc"][0]) for err in exc.errors() if err["loc"]}))
            raise error_cls(f"{provider} token response rejected: bad {fields}") from exc

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(body: str, keys: KeyRing) -> str:
    secret = keys.master_key(KeyClass.DEFAULT).encode("utf-8")
    return hmac.new(secret, body.encode("ascii"), hashlib.sha256).hexdigest()


def generate_state(
    account_id: str,
    provider: str,
    keys: KeyRing,
    *,
    now: datetime | None = None,
) -> str:
    """Build an HMAC-signed state value for an authorization redirect."""
    issued = now or datetime.now(UTC)
    body = _b64encode(
        json.dumps(
            {
                "account_id": account_id,
                "provider": provider,
                "ts": int(issued.timestamp()),
                "nonce": secrets.token_hex(8),
            },
            separators=(",", ":"),
        ).encode("utf-8")
    )
    return f"{body}.{_sign(body, keys)}"


def parse_state(
    state: str,
    keys: KeyRing,
    *,
    max_age: timedelta = STATE_MAX_AGE,
    now: datetime | None = None,
) -> OAuthState:
    """Verify and decode a state value from :func:`generate_state`.

    Raises
    ------
    OAuthStateError
        If the value is malformed, its signature does not verify, or it is
        older than *max_age*.
    """
    body, sep, signature = (state or "").partition(".")
    if not sep or not body or not signature:
        raise OAuthStateError("Malformed OAuth state")
    if not hmac.compare_digest(_sign(body, keys), signature):
        raise OAuthStateError("OAuth state signature mismatch")
    try:
        payload = json.loads(_b64decode(body))
        issued_at = datetime.fromtimestamp(int(payload["ts"]), tz=UTC)
        account_id = str(payload["account_id"])
        provider = str(payload["provider"])
    except (ValueError, KeyError, TypeError) as exc:
        raise OAuthStateError("Malformed OAuth state payload") from exc

    if (now or datetime.now(UTC)) - issued_at > max_age:
        raise OAuthStateError("OAuth state has expired")
    return OAuthState(account_id=account_id, provider=provider, issued_at=issued_at)
