"""Shared HTTP plumbing for Google API adapters."""

from __future__ import annotations

import logging
from collections.abc import Collection
from typing import Any

import httpx

from courier.credentials.oauth import safe_error_message
from courier.sync.errors import CursorInvalidError, ProviderRequestError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(20.0, connect=10.0)


def as_non_empty_string(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class GoogleApiClient:
    """Authenticated JSON GETs against a Google REST API.

    The access token is supplied per call; this client never refreshes it.
    A 401 surfaces as a :class:`ProviderRequestError` and the next run picks
    up whatever token the vault hands out then.
    """

    def __init__(self, provider: str, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._provider = provider
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client if http_client is not None else httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        )

    async def get_json(
        self,
        url: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        cursor_invalid_statuses: Collection[int] = (),
    ) -> dict[str, Any]:
        """GET *url* and return the decoded JSON object.

        Raises
        ------
        CursorInvalidError
            When the status is one of *cursor_invalid_statuses*.
        ProviderRequestError
            On transport failure, any other non-2xx status or a non-object
            payload.
        """
        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                status_code=0,
                message=f"transport error: {exc}",
                provider=self._provider,
            ) from exc

        if response.status_code in cursor_invalid_statuses:
            raise CursorInvalidError(
                f"{self._provider} rejected the sync cursor "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
                provider=self._provider,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=response.status_code,
                message="invalid JSON payload",
                provider=self._provider,
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                message="payload must be a JSON object",
                provider=self._provider,
            )
        return payload

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
