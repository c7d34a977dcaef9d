"""Google Calendar adapter and applier.

Resources are calendar ids (``primary`` by default).

* Full sync lists single events from ``now - full_sync_window`` onwards and
  ends with a ``nextSyncToken``.
* Incremental sync replays ``events.list`` with that ``syncToken`` and
  ``showDeleted``; Google answers 410 Gone when the token is no longer
  valid, which is reported as :class:`CursorInvalidError`.
* Cancelled events are tombstones.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from courier.providers._google import GoogleApiClient, as_non_empty_string
from courier.sync.adapter import ProviderAdapter
from courier.sync.applier import SyncedItemApplier
from courier.sync.models import ChangeKind, ChangePage, DeltaItem

logger = logging.getLogger(__name__)

PROVIDER_NAME = "google_calendar"
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
EVENT_ITEM_TYPE = "calendar_event"
CANCELLED_STATUS = "cancelled"


class CalendarAdapter(ProviderAdapter):
    """``ProviderAdapter`` for one Google calendar."""

    def __init__(
        self,
        *,
        page_size: int = 250,
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
        # singleEvents must match between the initial and the incremental query.
        params: dict[str, Any] = {
            "maxResults": self._page_size,
            "singleEvents": "true",
        }
        if cursor is not None:
            params["syncToken"] = cursor
            params["showDeleted"] = "true"
        else:
            window_start = self._clock() - self._full_sync_window
            params["timeMin"] = window_start.isoformat()
            params["showDeleted"] = "false"
        if page_token is not None:
            params["pageToken"] = page_token

        payload = await self._api.get_json(
            f"{CALENDAR_API_BASE_URL}/calendars/{quote(resource_id, safe='')}/events",
            access_token,
            params=params,
            cursor_invalid_statuses=(410,) if cursor is not None else (),
        )

        items: list[DeltaItem] = []
        for event in payload.get("items") or []:
            event_id = as_non_empty_string(event.get("id")) if isinstance(event, dict) else None
            if event_id is None:
                logger.warning("Skipping calendar event without id")
                continue
            items.append(
                DeltaItem(
                    external_id=event_id,
                    item_type=EVENT_ITEM_TYPE,
                    etag=as_non_empty_string(event.get("etag")),
                    payload=event,
                )
            )

        return ChangePage(
            items=items,
            next_page_token=as_non_empty_string(payload.get("nextPageToken")),
            next_cursor=as_non_empty_string(payload.get("nextSyncToken")),
        )

    async def shutdown(self) -> None:
        await self._api.aclose()


def _event_time(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, dict):
        return None
    return {
        "date_time": value.get("dateTime"),
        "date": value.get("date"),
        "time_zone": value.get("timeZone"),
    }


class CalendarEventApplier(SyncedItemApplier):
    """Stores calendar events in ``synced_items``; cancelled events are removed."""

    def classify(self, item: DeltaItem) -> ChangeKind:
        if item.deleted or item.payload.get("status") == CANCELLED_STATUS:
            return ChangeKind.TOMBSTONE
        return ChangeKind.UPSERT

    def project(self, item: DeltaItem) -> dict[str, Any]:
        event = item.payload
        organizer = event.get("organizer")
        attendees = [
            {
                "email": attendee.get("email"),
                "response_status": attendee.get("responseStatus"),
                "optional": bool(attendee.get("optional", False)),
            }
            for attendee in event.get("attendees") or []
            if isinstance(attendee, dict)
        ]
        return {
            "summary": event.get("summary"),
            "description": event.get("description"),
            "location": event.get("location"),
            "status": event.get("status"),
            "start": _event_time(event.get("start")),
            "end": _event_time(event.get("end")),
            "organizer": organizer.get("email") if isinstance(organizer, dict) else None,
            "attendees": attendees,
            "recurring_event_id": event.get("recurringEventId"),
            "html_link": event.get("htmlLink"),
            "updated": event.get("updated"),
            "etag": item.etag,
        }
