"""Gmail adapter and applier.

Resources are Gmail label ids (``INBOX`` by default).

* Incremental sync walks ``users.history.list`` from the stored
  ``historyId``.  Gmail answers 404 once that id has aged out, which is
  reported as :class:`CursorInvalidError`.
* Full sync lists messages newer than the full-sync window.  The mailbox
  ``historyId`` is captured from the profile *before* the first page and
  carried through the page tokens, so changes that land during the full
  pass are replayed by the next incremental run instead of being skipped.

Each listed message is fetched on its own.  A failed fetch becomes an item
error on the page; only an authentication failure aborts the page.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from courier.providers._google import GoogleApiClient, as_non_empty_string
from courier.sync.adapter import ProviderAdapter
from courier.sync.applier import SyncedItemApplier
from courier.sync.errors import ProviderRequestError
from courier.sync.models import ChangePage, DeltaItem, ItemError

logger = logging.getLogger(__name__)

PROVIDER_NAME = "gmail"
GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
MAIL_ITEM_TYPE = "mail_message"

_METADATA_HEADERS = ("Subject", "From", "To", "Cc", "Date", "Message-ID")
_HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")

# Full-sync page tokens are "<historyId>:<gmail page token>".
_FULL_TOKEN_SEP = ":"


def _encode_full_page_token(history_id: str, page_token: str) -> str:
    return f"{history_id}{_FULL_TOKEN_SEP}{page_token}"


def _decode_full_page_token(token: str) -> tuple[str, str]:
    history_id, sep, page_token = token.partition(_FULL_TOKEN_SEP)
    if not sep or not history_id or not page_token:
        raise ProviderRequestError(
            status_code=0,
            message="malformed full-sync page token",
            provider=PROVIDER_NAME,
        )
    return history_id, page_token


class GmailAdapter(ProviderAdapter):
    """``ProviderAdapter`` for a Gmail mailbox label."""

    def __init__(
        self,
        *,
        page_size: int = 100,
        full_sync_window: timedelta = timedelta(days=30),
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._page_size = max(1, int(page_size))
        self._full_sync_window = full_sync_window
        self._api = GoogleApiClient(PROVIDER_NAME, http_client=http_client)
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def name(self) -> str:
        return PROVIDER_NAME

    async def list_changes(
        self,
        access_token: str,
        *,
        resource_id: str,
        cursor: str | None = None,
        page_token: str | None = None,
    ) -> ChangePage:
        if cursor is not None:
            return await self._list_history(
                access_token, label_id=resource_id, start_history_id=cursor, page_token=page_token
            )
        return await self._list_messages(access_token, label_id=resource_id, page_token=page_token)

    async def shutdown(self) -> None:
        await self._api.aclose()

    # -- incremental ------------------------------------------------------

    async def _list_history(
        self,
        access_token: str,
        *,
        label_id: str,
        start_history_id: str,
        page_token: str | None,
    ) -> ChangePage:
        params: dict[str, Any] = {
            "startHistoryId": start_history_id,
            "labelId": label_id,
            "maxResults": self._page_size,
            "historyTypes": list(_HISTORY_TYPES),
        }
        if page_token is not None:
            params["pageToken"] = page_token
        payload = await self._api.get_json(
            f"{GMAIL_API_BASE_URL}/history",
            access_token,
            params=params,
            cursor_invalid_statuses=(404,),
        )

        # Last event per message wins within a page.
        removed: dict[str, bool] = {}
        for record in payload.get("history") or []:
            if not isinstance(record, dict):
                continue
            for message_id, is_removed in _history_changes(record, label_id):
                removed.pop(message_id, None)
                removed[message_id] = is_removed

        items: list[DeltaItem] = []
        errors: list[ItemError] = []
        for message_id, is_removed in removed.items():
            if is_removed:
                items.append(_tombstone(message_id))
            else:
                await self._collect_message(access_token, message_id, items, errors)

        next_page_token = as_non_empty_string(payload.get("nextPageToken"))
        next_cursor = None
        if next_page_token is None:
            next_cursor = as_non_empty_string(payload.get("historyId")) or start_history_id
        return ChangePage(
            items=items,
            item_errors=errors,
            next_page_token=next_page_token,
            next_cursor=next_cursor,
        )

    # -- full -------------------------------------------------------------

    async def _list_messages(
        self,
        access_token: str,
        *,
        label_id: str,
        page_token: str | None,
    ) -> ChangePage:
        if page_token is None:
            history_id = await self._current_history_id(access_token)
            gmail_page_token = None
        else:
            history_id, gmail_page_token = _decode_full_page_token(page_token)

        window_start = self._clock() - self._full_sync_window
        params: dict[str, Any] = {
            "q": f"after:{int(window_start.timestamp())}",
            "labelIds": label_id,
            "maxResults": self._page_size,
        }
        if gmail_page_token is not None:
            params["pageToken"] = gmail_page_token
        payload = await self._api.get_json(
            f"{GMAIL_API_BASE_URL}/messages", access_token, params=params
        )

        items: list[DeltaItem] = []
        errors: list[ItemError] = []
        for ref in payload.get("messages") or []:
            message_id = as_non_empty_string(ref.get("id")) if isinstance(ref, dict) else None
            if message_id is None:
                logger.warning("Skipping Gmail message reference without id")
                continue
            await self._collect_message(access_token, message_id, items, errors)

        next_gmail_token = as_non_empty_string(payload.get("nextPageToken"))
        if next_gmail_token is not None:
            return ChangePage(
                items=items,
                item_errors=errors,
                next_page_token=_encode_full_page_token(history_id, next_gmail_token),
            )
        return ChangePage(items=items, item_errors=errors, next_cursor=history_id)

    async def _current_history_id(self, access_token: str) -> str:
        profile = await self._api.get_json(f"{GMAIL_API_BASE_URL}/profile", access_token)
        history_id = as_non_empty_string(str(profile.get("historyId") or ""))
        if history_id is None:
            raise ProviderRequestError(
                status_code=200,
                message="profile response is missing historyId",
                provider=PROVIDER_NAME,
            )
        return history_id

    async def _collect_message(
        self,
        access_token: str,
        message_id: str,
        items: list[DeltaItem],
        errors: list[ItemError],
    ) -> None:
        try:
            items.append(await self._fetch_message(access_token, message_id))
        except ProviderRequestError as exc:
            if exc.status_code == 401:
                raise
            logger.warning("Could not fetch Gmail message %s: %s", message_id, exc)
            errors.append(
                ItemError(external_id=message_id, message=str(exc), retryable=exc.retryable)
            )

    async def _fetch_message(self, access_token: str, message_id: str) -> DeltaItem:
        try:
            payload = await self._api.get_json(
                f"{GMAIL_API_BASE_URL}/messages/{message_id}",
                access_token,
                params={"format": "metadata", "metadataHeaders": list(_METADATA_HEADERS)},
            )
        except ProviderRequestError as exc:
            if exc.status_code == 404:
                # Deleted between listing and fetching.
                return _tombstone(message_id)
            raise
        return DeltaItem(
            external_id=message_id,
            item_type=MAIL_ITEM_TYPE,
            etag=as_non_empty_string(str(payload.get("historyId") or "")),
            payload=payload,
        )


def _tombstone(message_id: str) -> DeltaItem:
    return DeltaItem(external_id=message_id, item_type=MAIL_ITEM_TYPE, deleted=True)


def _history_changes(record: dict[str, Any], label_id: str) -> list[tuple[str, bool]]:
    """Return ``(message_id, removed)`` pairs for one history record.

    A message counts as removed from the resource when it was deleted or when
    the resource label was taken off it.
    """
    changes: list[tuple[str, bool]] = []
    for field, removed in (
        ("messagesAdded", False),
        ("labelsAdded", False),
        ("labelsRemoved", None),
        ("messagesDeleted", True),
    ):
        for entry in record.get(field) or []:
            if not isinstance(entry, dict):
                continue
            message = entry.get("message")
            message_id = (
                as_non_empty_string(message.get("id")) if isinstance(message, dict) else None
            )
            if message_id is None:
                continue
            if removed is None:
                removed_labels = entry.get("labelIds") or []
                changes.append((message_id, label_id in removed_labels))
            else:
                changes.append((message_id, removed))
    return changes


def _header_map(payload: dict[str, Any]) -> dict[str, str]:
    part = payload.get("payload")
    headers = part.get("headers") if isinstance(part, dict) else None
    result: dict[str, str] = {}
    for header in headers or []:
        if not isinstance(header, dict):
            continue
        name = as_non_empty_string(header.get("name"))
        value = header.get("value")
        if name is not None and isinstance(value, str):
            result[name.lower()] = value
    return result


class MailMessageApplier(SyncedItemApplier):
    """Stores Gmail message metadata in ``synced_items``."""

    def project(self, item: DeltaItem) -> dict[str, Any]:
        payload = item.payload
        headers = _header_map(payload)
        internal_date = payload.get("internalDate")
        return {
            "thread_id": payload.get("threadId"),
            "label_ids": sorted(payload.get("labelIds") or []),
            "snippet": payload.get("snippet"),
            "subject": headers.get("subject"),
            "from": headers.get("from"),
            "to": headers.get("to"),
            "cc": headers.get("cc"),
            "date": headers.get("date"),
            "message_id_header": headers.get("message-id"),
            "internal_date": int(internal_date) if internal_date is not None else None,
            "size_estimate": payload.get("sizeEstimate"),
        }
